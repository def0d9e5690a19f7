"""Cleaning activity models: logs, ordered steps, step photos, and signatures.

These rows are written by the data-entry applications; the export pipeline
only reads them.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, func
from sqlalchemy.orm import relationship
from cleandoc_export.db.base import Base


class CleaningLog(Base):
    """One cleaning task occurrence for a tenant."""
    __tablename__ = "cleaning_logs"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    cleaning_plan_id = Column(String(36), nullable=True)
    area_name = Column(String(255), nullable=True)
    site_name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="pending")  # pending/in_progress/completed/failed
    started_at = Column(DateTime, nullable=True, index=True)
    completed_at = Column(DateTime, nullable=True)
    created_by = Column(String(64), nullable=True)
    worker_name = Column(String(255), nullable=True)
    approved_by = Column(String(64), nullable=True)
    pdf_s3_key = Column(String(1000), nullable=True)
    pdf_sha256 = Column(String(64), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    steps = relationship(
        "CleaningLogStep",
        back_populates="log",
        order_by="CleaningLogStep.sequence",
        lazy="selectin",
    )
    signatures = relationship(
        "LogSignature",
        back_populates="log",
        order_by="LogSignature.signed_at",
        lazy="selectin",
    )


class CleaningLogStep(Base):
    """A single ordered step within a cleaning log."""
    __tablename__ = "cleaning_log_steps"

    id = Column(String(36), primary_key=True)
    log_id = Column(String(36), ForeignKey("cleaning_logs.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False, default=1)
    name = Column(String(255), nullable=True)
    chemical = Column(String(255), nullable=True)
    dwell_time_seconds = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    notes = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(String(64), nullable=True)
    worker_name = Column(String(255), nullable=True)

    log = relationship("CleaningLog", back_populates="steps")
    photos = relationship(
        "LogStepPhoto",
        back_populates="step",
        order_by="LogStepPhoto.taken_at",
        lazy="selectin",
    )


class LogStepPhoto(Base):
    """Photo evidence metadata attached to a step."""
    __tablename__ = "log_step_photos"

    id = Column(String(36), primary_key=True)
    step_id = Column(String(36), ForeignKey("cleaning_log_steps.id", ondelete="CASCADE"), nullable=False)
    s3_key = Column(String(1000), nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    content_type = Column(String(100), nullable=True)
    sha256_hash = Column(String(64), nullable=True)
    taken_at = Column(DateTime, nullable=True)
    uploaded_by = Column(String(64), nullable=True)

    step = relationship("CleaningLogStep", back_populates="photos")


class LogSignature(Base):
    """Digital sign-off on a cleaning log."""
    __tablename__ = "log_signatures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    log_id = Column(String(36), ForeignKey("cleaning_logs.id", ondelete="CASCADE"), nullable=False)
    signed_role = Column(String(50), nullable=False)  # worker, supervisor, customer
    signed_by_user_id = Column(String(64), nullable=True)
    signer_name = Column(String(255), nullable=True)
    signed_at = Column(DateTime, nullable=False)

    log = relationship("CleaningLog", back_populates="signatures")
