"""GenerationJob model: durable archive of terminal generation jobs."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from vibeforge.db.base import Base


class GenerationJob(Base):
    __tablename__ = "generation_jobs"

    id = Column(String(64), primary_key=True)
    owner_id = Column(String(255), nullable=False, index=True)

    model = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False)  # JobStatus values
    prompt = Column(Text, nullable=False)

    # Result fields
    artifact = Column(Text, nullable=True)
    preview_url = Column(Text, nullable=True)  # https://{port}-{instance_id}.e2b.app
    sandbox_key = Column(String(255), nullable=True)
    error_detail = Column(Text, nullable=True)
    execution_time_ms = Column(Integer, nullable=True)

    # Everything the orchestrator and cancellation path recorded
    job_metadata = Column("metadata", JSONB, nullable=False, default=dict)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    archived_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
