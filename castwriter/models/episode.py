"""Episode and per-stage output ORM models."""

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from castwriter.db import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EpisodeStatus(str, enum.Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Episode(Base):
    """A podcast episode whose transcript is turned into written content."""

    __tablename__ = "episodes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    transcript: Mapped[str] = mapped_column(Text, nullable=False)
    episode_context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[EpisodeStatus] = mapped_column(
        Enum(EpisodeStatus), nullable=False, default=EpisodeStatus.DRAFT
    )
    current_stage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_duration_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set by a pause request; the running pipeline honors it at the next phase boundary
    pause_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    stages: Mapped[list["StageRecord"]] = relationship(
        back_populates="episode",
        cascade="all, delete-orphan",
        order_by="StageRecord.stage_number",
    )

    def __repr__(self) -> str:
        return (
            f"<Episode(id='{self.id}', status='{self.status.value}', "
            f"current_stage={self.current_stage})>"
        )


class StageRecord(Base):
    """Durable record of one stage (or one sub-stage) of an episode's pipeline."""

    __tablename__ = "stage_outputs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    episode_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("episodes.id"), nullable=False, index=True
    )
    stage_number: Mapped[int] = mapped_column(Integer, nullable=False)
    sub_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    stage_name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[StageStatus] = mapped_column(
        Enum(StageStatus), nullable=False, default=StageStatus.PENDING
    )
    model_used: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    output_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    output_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    episode: Mapped["Episode"] = relationship(back_populates="stages")

    @property
    def key(self) -> tuple[int, str | None]:
        return (self.stage_number, self.sub_stage)

    def __repr__(self) -> str:
        return (
            f"<StageRecord(episode_id='{self.episode_id}', stage={self.stage_number}, "
            f"sub_stage={self.sub_stage!r}, status='{self.status.value}')>"
        )


# NULL sub_stage values never collide in a plain UNIQUE constraint
Index(
    "uq_stage_key",
    StageRecord.episode_id,
    StageRecord.stage_number,
    func.coalesce(StageRecord.sub_stage, ""),
    unique=True,
)
