"""Request rate limiting for export generation and download-link endpoints."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from cleandoc_export.core.config import settings

limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

EXPORT_RATE_LIMIT = "10/hour"
DOWNLOAD_RATE_LIMIT = "100/hour"
