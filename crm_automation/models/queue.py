from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from crm_automation.core.id_utils import generate_shortuuid
from crm_automation.db.base import Base


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DeadLetterJob(Base):
    __tablename__ = "dead_letter_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_shortuuid)
    original_queue: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    original_job_id: Mapped[Optional[str]] = mapped_column(String(160), nullable=True, index=True)
    original_job_name: Mapped[str] = mapped_column(String(80), nullable=False)
    original_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    failed_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_dead_letter_jobs_queue_failed_at", "original_queue", "failed_at"),
    )
