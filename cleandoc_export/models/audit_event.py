"""Audit event model — append-only, hash-chained."""

from sqlalchemy import Column, Integer, String, Text, DateTime, func
from cleandoc_export.db.base import Base


class AuditEvent(Base):
    """Immutable, hash-linked audit trail entry.

    This table is APPEND-ONLY: no UPDATE or DELETE operations should ever
    be performed on it (enforced at application level). ``previous_hash`` is
    unique so two writers racing on the same tail cannot both commit.
    """
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String(64), nullable=True, index=True)  # NULL = system
    action = Column(String(100), nullable=False, index=True)  # e.g. "EXPORT_COMPLETED"
    resource_type = Column(String(50), nullable=False, index=True)
    resource_id = Column(String(100), nullable=True, index=True)
    resource_name = Column(String(255), nullable=True)
    old_values_json = Column(Text, nullable=True)
    new_values_json = Column(Text, nullable=True)
    timestamp = Column(String(40), nullable=False, index=True)  # ISO-8601, exactly as hashed
    previous_hash = Column(String(64), nullable=True, unique=True)
    current_hash = Column(String(64), nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, default="success")
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
