from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from crm_automation.models.analytics import PipelineSnapshot, PipelineStageStat
from crm_automation.models.crm import Deal, PipelineStage


@dataclass(frozen=True)
class StageFigures:
    pipeline_id: str
    stage_id: str
    name: str
    probability: int
    is_won: bool
    is_lost: bool
    deal_count: int
    total_value: float

    @property
    def weighted_value(self) -> float:
        return round(self.total_value * self.probability / 100, 2)

    @property
    def is_open(self) -> bool:
        return not self.is_won and not self.is_lost


def _stage_figures(db: Session) -> list[StageFigures]:
    rows = db.execute(
        select(
            PipelineStage.pipeline_id,
            PipelineStage.id,
            PipelineStage.name,
            PipelineStage.probability,
            PipelineStage.is_won,
            PipelineStage.is_lost,
            func.count(Deal.id),
            func.coalesce(func.sum(Deal.value), 0),
        )
        .outerjoin(Deal, Deal.stage_id == PipelineStage.id)
        .group_by(
            PipelineStage.pipeline_id,
            PipelineStage.id,
            PipelineStage.name,
            PipelineStage.probability,
            PipelineStage.is_won,
            PipelineStage.is_lost,
            PipelineStage.position,
        )
        .order_by(PipelineStage.pipeline_id.asc(), PipelineStage.position.asc())
    ).all()
    return [
        StageFigures(
            pipeline_id=pipeline_id,
            stage_id=stage_id,
            name=name,
            probability=int(probability or 0),
            is_won=bool(is_won),
            is_lost=bool(is_lost),
            deal_count=int(deal_count or 0),
            total_value=float(total_value or 0),
        )
        for pipeline_id, stage_id, name, probability, is_won, is_lost, deal_count, total_value in rows
    ]


def refresh_pipeline_stats(db: Session, *, now: datetime | None = None) -> int:
    """Rebuild `pipeline_stage_stats` from live deals. Returns the row count."""
    refreshed_at = now or datetime.now(timezone.utc)
    figures = _stage_figures(db)
    db.execute(delete(PipelineStageStat))
    for item in figures:
        db.add(
            PipelineStageStat(
                pipeline_id=item.pipeline_id,
                stage_id=item.stage_id,
                deal_count=item.deal_count,
                total_value=item.total_value,
                weighted_value=item.weighted_value,
                refreshed_at=refreshed_at,
            )
        )
    db.flush()
    return len(figures)


def take_pipeline_snapshot(db: Session, *, snapshot_date: date | None = None) -> int:
    """Upsert one `pipeline_snapshots` row per pipeline for the day."""
    day = snapshot_date or datetime.now(timezone.utc).date()
    by_pipeline: dict[str, list[StageFigures]] = {}
    for item in _stage_figures(db):
        by_pipeline.setdefault(item.pipeline_id, []).append(item)

    for pipeline_id, stages in by_pipeline.items():
        open_stages = [item for item in stages if item.is_open]
        snapshot = db.execute(
            select(PipelineSnapshot).where(
                PipelineSnapshot.pipeline_id == pipeline_id,
                PipelineSnapshot.snapshot_date == day,
            )
        ).scalar_one_or_none()
        if snapshot is None:
            snapshot = PipelineSnapshot(pipeline_id=pipeline_id, snapshot_date=day)
            db.add(snapshot)

        snapshot.open_deal_count = sum(item.deal_count for item in open_stages)
        snapshot.open_value = round(sum(item.total_value for item in open_stages), 2)
        snapshot.weighted_value = round(sum(item.weighted_value for item in open_stages), 2)
        snapshot.won_value = round(sum(item.total_value for item in stages if item.is_won), 2)
        snapshot.stages_json = [
            {
                "stage_id": item.stage_id,
                "name": item.name,
                "deal_count": item.deal_count,
                "total_value": item.total_value,
                "weighted_value": item.weighted_value,
            }
            for item in stages
        ]
    db.flush()
    return len(by_pipeline)
