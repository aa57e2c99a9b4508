"""Episode and stage persistence.

The orchestrator depends only on the abstract ``EpisodeStore`` and
``StageStore`` interfaces. ``SqlRepository`` implements both on SQLAlchemy;
every method opens its own short-lived session and commits before returning,
so each call is an atomic single-record (or single-batch) update and the
store can be shared between the thread running a pipeline and threads
polling its status.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from castwriter.core.stages import all_record_keys, get_definition, stage_label
from castwriter.errors import InvalidStatusError, NotFoundError, PersistenceError
from castwriter.models.episode import Episode, EpisodeStatus, StageRecord, StageStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back out
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _stage_id(episode_id: str, stage_number: int, sub_stage: str | None) -> str:
    if sub_stage:
        return f"{episode_id}:{stage_number}:{sub_stage}"
    return f"{episode_id}:{stage_number}"


class EpisodeStore(ABC):
    @abstractmethod
    def find_episode(self, episode_id: str) -> Episode: ...

    @abstractmethod
    def update_episode(self, episode_id: str, **fields) -> Episode: ...

    @abstractmethod
    def request_pause(self, episode_id: str) -> bool: ...


class StageStore(ABC):
    @abstractmethod
    def create_stage_records(self, episode_id: str) -> list[StageRecord]: ...

    @abstractmethod
    def find_stage(
        self, episode_id: str, stage_number: int, sub_stage: str | None = None
    ) -> StageRecord: ...

    @abstractmethod
    def update_stage(
        self, episode_id: str, stage_number: int, sub_stage: str | None = None, **fields
    ) -> StageRecord: ...

    @abstractmethod
    def find_all_stages(self, episode_id: str) -> list[StageRecord]: ...

    @abstractmethod
    def reset_all_stages(self, episode_id: str) -> list[StageRecord]: ...

    # Status transitions built on update_stage

    def mark_processing(
        self, episode_id: str, stage_number: int, sub_stage: str | None = None
    ) -> StageRecord:
        return self.update_stage(
            episode_id,
            stage_number,
            sub_stage,
            status=StageStatus.PROCESSING,
            started_at=_utcnow(),
            completed_at=None,
            duration_seconds=None,
            error_message=None,
            error_details=None,
        )

    def mark_completed(self, episode_id: str, stage_number: int, result) -> StageRecord:
        """Persist a StageOutput on a record that is currently processing."""
        sub_stage = result.sub_stage
        stage = self._require_processing(episode_id, stage_number, sub_stage, "completed")
        completed_at = _utcnow()
        started_at = _as_utc(stage.started_at)
        duration = (completed_at - started_at).total_seconds() if started_at else 0.0
        logger.debug(
            "Stage %s: processing -> completed (%.1fs, $%.4f)",
            _stage_id(episode_id, stage_number, sub_stage),
            duration,
            result.cost_usd,
        )
        return self.update_stage(
            episode_id,
            stage_number,
            sub_stage,
            status=StageStatus.COMPLETED,
            completed_at=completed_at,
            duration_seconds=round(duration, 3),
            output_data=result.output_data,
            output_text=result.output_text,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost_usd=result.cost_usd,
        )

    def mark_failed(
        self,
        episode_id: str,
        stage_number: int,
        error_message: str,
        error_details: dict | None = None,
        sub_stage: str | None = None,
        count_retry: bool = True,
    ) -> StageRecord:
        stage = self._require_processing(episode_id, stage_number, sub_stage, "failed")
        retry_count = stage.retry_count + 1 if count_retry else stage.retry_count
        logger.debug(
            "Stage %s: processing -> failed (retry_count=%d): %s",
            _stage_id(episode_id, stage_number, sub_stage),
            retry_count,
            error_message,
        )
        return self.update_stage(
            episode_id,
            stage_number,
            sub_stage,
            status=StageStatus.FAILED,
            completed_at=_utcnow(),
            error_message=error_message,
            error_details=error_details,
            retry_count=retry_count,
        )

    def _require_processing(
        self, episode_id: str, stage_number: int, sub_stage: str | None, target: str
    ) -> StageRecord:
        stage = self.find_stage(episode_id, stage_number, sub_stage)
        if stage.status != StageStatus.PROCESSING:
            raise InvalidStatusError(
                f"Stage {_stage_id(episode_id, stage_number, sub_stage)} cannot move "
                f"from '{stage.status.value}' to '{target}'"
            )
        return stage


class Repository(EpisodeStore, StageStore):
    """Everything the orchestrator needs from persistence."""


class SqlRepository(Repository):
    """SQLAlchemy-backed episode and stage store."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Store operation %s failed: %s", operation, e)
            raise PersistenceError(operation, str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Episodes
    # ------------------------------------------------------------------

    def create_episode(
        self,
        transcript: str,
        episode_context: dict | None = None,
        title: str | None = None,
        episode_id: str | None = None,
    ) -> Episode:
        episode = Episode(
            id=episode_id or uuid.uuid4().hex,
            title=title,
            transcript=transcript,
            episode_context=episode_context or {},
            status=EpisodeStatus.DRAFT,
            current_stage=0,
            total_cost_usd=0.0,
            total_duration_seconds=0.0,
            pause_requested=False,
        )
        with self._session("create_episode") as session:
            session.add(episode)
        logger.info("Episode created: %s (%d chars)", episode.id, len(transcript))
        return episode

    def find_episode(self, episode_id: str) -> Episode:
        with self._session("find_episode") as session:
            episode = session.get(Episode, episode_id)
            if episode is None:
                raise NotFoundError("episode", episode_id)
            return episode

    def list_episodes(self) -> list[Episode]:
        with self._session("list_episodes") as session:
            return session.query(Episode).order_by(Episode.created_at.desc()).all()

    def update_episode(self, episode_id: str, **fields) -> Episode:
        with self._session("update_episode") as session:
            episode = session.get(Episode, episode_id)
            if episode is None:
                raise NotFoundError("episode", episode_id)
            for key, value in fields.items():
                setattr(episode, key, value)
            return episode

    def request_pause(self, episode_id: str) -> bool:
        """Flag a processing episode for pausing. Returns False if it wasn't processing.

        The status itself stays ``processing`` until the run reaches a phase
        boundary and honors the request.
        """
        with self._session("request_pause") as session:
            result = session.execute(
                update(Episode)
                .where(Episode.id == episode_id, Episode.status == EpisodeStatus.PROCESSING)
                .values(pause_requested=True)
            )
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def create_stage_records(self, episode_id: str) -> list[StageRecord]:
        """Create one pending record per (stage, sub_stage). Idempotent."""
        with self._session("create_stage_records") as session:
            if session.get(Episode, episode_id) is None:
                raise NotFoundError("episode", episode_id)

            existing = self._query_stages(session, episode_id)
            if existing:
                logger.info("Stage records already exist for %s, skipping creation", episode_id)
                return existing

            for stage_number, sub_stage in all_record_keys():
                definition = get_definition(stage_number)
                session.add(
                    StageRecord(
                        episode_id=episode_id,
                        stage_number=stage_number,
                        sub_stage=sub_stage,
                        stage_name=stage_label(stage_number, sub_stage),
                        status=StageStatus.PENDING,
                        model_used=definition.model,
                        provider=definition.provider,
                        input_tokens=0,
                        output_tokens=0,
                        cost_usd=0.0,
                        retry_count=0,
                    )
                )
            session.flush()
            records = self._query_stages(session, episode_id)
        logger.info("Created %d stage records for %s", len(records), episode_id)
        return records

    def find_stage(
        self, episode_id: str, stage_number: int, sub_stage: str | None = None
    ) -> StageRecord:
        with self._session("find_stage") as session:
            return self._get_stage(session, episode_id, stage_number, sub_stage)

    def update_stage(
        self, episode_id: str, stage_number: int, sub_stage: str | None = None, **fields
    ) -> StageRecord:
        with self._session("update_stage") as session:
            stage = self._get_stage(session, episode_id, stage_number, sub_stage)
            for key, value in fields.items():
                setattr(stage, key, value)
            return stage

    def find_all_stages(self, episode_id: str) -> list[StageRecord]:
        with self._session("find_all_stages") as session:
            return self._query_stages(session, episode_id)

    def reset_all_stages(self, episode_id: str) -> list[StageRecord]:
        logger.info("Resetting all stages for %s", episode_id)
        with self._session("reset_all_stages") as session:
            stages = self._query_stages(session, episode_id)
            for stage in stages:
                stage.status = StageStatus.PENDING
                stage.output_data = None
                stage.output_text = None
                stage.input_tokens = 0
                stage.output_tokens = 0
                stage.cost_usd = 0.0
                stage.started_at = None
                stage.completed_at = None
                stage.duration_seconds = None
                stage.error_message = None
                stage.error_details = None
                stage.retry_count = 0
            return stages

    @staticmethod
    def _query_stages(session: Session, episode_id: str) -> list[StageRecord]:
        stages = session.query(StageRecord).filter(StageRecord.episode_id == episode_id).all()
        return sorted(stages, key=lambda s: (s.stage_number, s.sub_stage or ""))

    @staticmethod
    def _get_stage(
        session: Session, episode_id: str, stage_number: int, sub_stage: str | None
    ) -> StageRecord:
        query = session.query(StageRecord).filter(
            StageRecord.episode_id == episode_id,
            StageRecord.stage_number == stage_number,
        )
        if sub_stage is None:
            query = query.filter(StageRecord.sub_stage.is_(None))
        else:
            query = query.filter(StageRecord.sub_stage == sub_stage)
        stage = query.first()
        if stage is None:
            raise NotFoundError("stage record", _stage_id(episode_id, stage_number, sub_stage))
        return stage
