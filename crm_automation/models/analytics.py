from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, Date, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from crm_automation.core.id_utils import generate_shortuuid
from crm_automation.db.base import Base


class PipelineStageStat(Base):
    __tablename__ = "pipeline_stage_stats"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_shortuuid)
    pipeline_id: Mapped[str] = mapped_column(String(36), ForeignKey("pipelines.id"), nullable=False, index=True)
    stage_id: Mapped[str] = mapped_column(String(36), ForeignKey("pipeline_stages.id"), nullable=False)
    deal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0, server_default="0")
    weighted_value: Mapped[float] = mapped_column(Float, nullable=False, default=0, server_default="0")
    refreshed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("pipeline_id", "stage_id", name="uq_pipeline_stage_stats_pipeline_stage"),
    )


class PipelineSnapshot(Base):
    __tablename__ = "pipeline_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_shortuuid)
    pipeline_id: Mapped[str] = mapped_column(String(36), ForeignKey("pipelines.id"), nullable=False, index=True)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    open_deal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    open_value: Mapped[float] = mapped_column(Float, nullable=False, default=0, server_default="0")
    weighted_value: Mapped[float] = mapped_column(Float, nullable=False, default=0, server_default="0")
    won_value: Mapped[float] = mapped_column(Float, nullable=False, default=0, server_default="0")
    stages_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("pipeline_id", "snapshot_date", name="uq_pipeline_snapshots_pipeline_date"),
    )
