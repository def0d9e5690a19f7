"""Per-tenant export settings (owned by tenant administration, read-only here)."""

import json

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, func
from cleandoc_export.db.base import Base


class TenantExportSettings(Base):
    """Export configuration for one tenant: retention, report flags, delivery channels."""
    __tablename__ = "tenant_export_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, unique=True, index=True)
    company_name = Column(String(255), nullable=True)
    company_location = Column(String(255), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    export_enabled = Column(Boolean, default=True, nullable=False)
    retention_days = Column(Integer, default=730, nullable=False)
    include_pdf = Column(Boolean, default=True, nullable=False)
    include_csv = Column(Boolean, default=True, nullable=False)

    # Delivery: email
    email_recipients_json = Column(Text, nullable=True)  # JSON list of addresses

    # Delivery: SFTP
    sftp_host = Column(String(255), nullable=True)
    sftp_port = Column(Integer, default=22, nullable=False)
    sftp_user = Column(String(255), nullable=True)
    sftp_password = Column(String(500), nullable=True)
    sftp_private_key = Column(Text, nullable=True)  # PEM
    sftp_path = Column(String(500), nullable=True)
    sftp_host_key = Column(Text, nullable=True)  # "<keytype> <base64>" as in known_hosts

    # Delivery: webhook
    webhook_url = Column(String(1000), nullable=True)
    webhook_secret = Column(String(255), nullable=True)

    delivery_channels_json = Column(Text, nullable=True)  # JSON list: email/sftp/webhook
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def email_recipients(self) -> list:
        return json.loads(self.email_recipients_json) if self.email_recipients_json else []

    @property
    def delivery_channels(self):
        """Preferred channels, or None when every configured channel should be used."""
        return json.loads(self.delivery_channels_json) if self.delivery_channels_json else None

    @classmethod
    def defaults_for(cls, tenant_id: str, retention_days: int = 730) -> "TenantExportSettings":
        """Transient settings used when a tenant has no stored configuration."""
        return cls(
            tenant_id=tenant_id,
            company_name="CleaniDoc Kunde",
            active=True,
            export_enabled=True,
            retention_days=retention_days,
            include_pdf=True,
            include_csv=True,
            sftp_port=22,
        )
