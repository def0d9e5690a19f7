"""Abstract base class for export delivery channels."""

from abc import ABC, abstractmethod
from typing import Dict, Any


class DeliveryChannelBase(ABC):
    """Base class for delivery channels (email, SFTP, webhook).

    Subclasses implement is_configured and send. ``send`` performs exactly one
    delivery attempt; retries are the dispatcher's job.
    """

    @abstractmethod
    def is_configured(self, tenant) -> bool:
        """Whether the tenant has set this channel up."""
        ...

    @abstractmethod
    def send(self, bundle, tenant, download_urls: Dict[str, Any]) -> Dict[str, Any]:
        """Deliver the bundle once.

        Returns:
            Dict with channel-specific result details.

        Raises:
            DeliveryError (or any I/O error) when the attempt fails.
        """
        ...

    @property
    @abstractmethod
    def channel_type(self) -> str:
        """Return the channel identifier (e.g., 'email', 'webhook')."""
        ...
