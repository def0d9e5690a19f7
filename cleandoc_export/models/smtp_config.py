"""Outbound SMTP configuration used by email delivery."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, func
from cleandoc_export.db.base import Base


class SmtpConfig(Base):
    """SMTP relay settings; the active row overrides the SMTP_* environment values."""
    __tablename__ = "smtp_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    host = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False, default=587)
    username = Column(String(255), nullable=True)
    password = Column(String(500), nullable=True)
    use_tls = Column(Boolean, default=True, nullable=False)
    from_email = Column(String(255), nullable=False)
    from_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def sender(self) -> str:
        if self.from_name:
            return f"{self.from_name} <{self.from_email}>"
        return self.from_email
