"""
Store: durable keyed persistence for pipeline runs, webhook records, metrics,
alerts and configuration.

Each record kind maps to rows of a single ``records`` table. Writes are
last-writer-wins per record; there are no cross-record transactions. Any
database failure is raised as StoreError and aborts the calling operation.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel
from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError

from pipewatch.database import Base, create_engine, create_session_factory
from pipewatch.exceptions import StoreError
from pipewatch.models.record import StoredRecord
from pipewatch.schemas.records import (
    Alert,
    MetricsSnapshot,
    PipelineRun,
    StoredConfig,
    WebhookRecord,
)

logger = logging.getLogger(__name__)


class RecordKind(str, Enum):
    PIPELINE_RUN = "pipeline_run"
    WEBHOOK = "webhook"
    METRICS = "metrics"
    ALERT = "alert"
    CONFIG = "config"


@dataclass(frozen=True)
class _KindSpec:
    model: type[BaseModel]
    record_id: Callable[[Any], str]
    timestamp: Callable[[Any], datetime]
    status: Callable[[Any], str | None]
    record_type: Callable[[Any], str | None]
    run_id: Callable[[Any], str | None]


_KINDS: dict[RecordKind, _KindSpec] = {
    RecordKind.PIPELINE_RUN: _KindSpec(
        model=PipelineRun,
        record_id=lambda r: r.id,
        timestamp=lambda r: r.start_time,
        status=lambda r: r.status,
        record_type=lambda r: r.trigger.type,
        run_id=lambda r: r.id,
    ),
    RecordKind.WEBHOOK: _KindSpec(
        model=WebhookRecord,
        record_id=lambda r: r.id,
        timestamp=lambda r: r.natural_timestamp,
        status=lambda r: "processed" if r.processed else "pending",
        record_type=lambda r: r.source,
        run_id=lambda r: r.run_id,
    ),
    RecordKind.METRICS: _KindSpec(
        model=MetricsSnapshot,
        record_id=lambda r: r.run_id,
        timestamp=lambda r: r.timestamp,
        status=lambda r: None,
        record_type=lambda r: None,
        run_id=lambda r: r.run_id,
    ),
    RecordKind.ALERT: _KindSpec(
        model=Alert,
        record_id=lambda r: r.id,
        timestamp=lambda r: r.timestamp,
        status=lambda r: r.status,
        record_type=lambda r: r.type,
        run_id=lambda r: r.run_id,
    ),
    RecordKind.CONFIG: _KindSpec(
        model=StoredConfig,
        record_id=lambda r: r.id,
        timestamp=lambda r: r.updated_at,
        status=lambda r: None,
        record_type=lambda r: None,
        run_id=lambda r: None,
    ),
}


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Store:
    """Keyed record persistence over an async SQLAlchemy engine."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = create_engine(database_url)
        self.session_factory = create_session_factory(self.engine)

    async def initialize(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            logger.error("Store initialization failed: %s", exc)
            raise StoreError(f"Failed to initialize store: {exc}") from exc
        logger.info("Store ready at %s", self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        await self.engine.dispose()

    async def ping(self) -> None:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise StoreError(f"Store unavailable: {exc}") from exc

    # ── Writes ───────────────────────────────────────────────────────────────

    async def save(self, kind: RecordKind | str, record: BaseModel) -> BaseModel:
        """Upsert a record by its identifier."""
        kind = RecordKind(kind)
        spec = _KINDS[kind]
        if not isinstance(record, spec.model):
            raise TypeError(f"{kind.value} records must be {spec.model.__name__}, got {type(record).__name__}")

        record_id = spec.record_id(record)
        row = StoredRecord(
            kind=kind.value,
            record_id=record_id,
            sort_key=_naive_utc(spec.timestamp(record)),
            status=spec.status(record),
            record_type=spec.record_type(record),
            run_id=spec.run_id(record),
            data=record.model_dump(mode="json"),
        )
        try:
            async with self.session_factory() as session:
                await session.merge(row)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Store save failed for %s %s: %s", kind.value, record_id, exc)
            raise StoreError(f"Failed to save {kind.value} {record_id}: {exc}") from exc
        return record

    async def cleanup(self, keep_count: int) -> dict[str, int]:
        """Truncate every collection except config to its newest ``keep_count`` records."""
        removed: dict[str, int] = {}
        try:
            async with self.session_factory() as session:
                for kind in RecordKind:
                    if kind is RecordKind.CONFIG:
                        continue
                    stale_ids = (await session.execute(
                        select(StoredRecord.record_id)
                        .where(StoredRecord.kind == kind.value)
                        .order_by(StoredRecord.sort_key.desc(), StoredRecord.record_id.desc())
                        .offset(keep_count)
                    )).scalars().all()
                    if stale_ids:
                        await session.execute(
                            delete(StoredRecord).where(
                                StoredRecord.kind == kind.value,
                                StoredRecord.record_id.in_(stale_ids),
                            )
                        )
                    removed[kind.value] = len(stale_ids)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Store cleanup failed: %s", exc)
            raise StoreError(f"Failed to clean up store: {exc}") from exc

        logger.info("Store cleanup kept %d per kind, removed %s", keep_count, removed)
        return removed

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get(self, kind: RecordKind | str, record_id: str) -> BaseModel | None:
        kind = RecordKind(kind)
        try:
            async with self.session_factory() as session:
                data = (await session.execute(
                    select(StoredRecord.data).where(
                        StoredRecord.kind == kind.value,
                        StoredRecord.record_id == record_id,
                    )
                )).scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error("Store get failed for %s %s: %s", kind.value, record_id, exc)
            raise StoreError(f"Failed to read {kind.value} {record_id}: {exc}") from exc

        if data is None:
            return None
        return _KINDS[kind].model.model_validate(data)

    async def list(
        self,
        kind: RecordKind | str,
        *,
        status: str | None = None,
        record_type: str | None = None,
        run_id: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list:
        """Records matching the filters, newest first by the kind's natural timestamp."""
        kind = RecordKind(kind)
        stmt = select(StoredRecord.data).where(StoredRecord.kind == kind.value)
        stmt = self._apply_filters(stmt, status, record_type, run_id, since)
        stmt = stmt.order_by(StoredRecord.sort_key.desc(), StoredRecord.record_id.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            logger.error("Store list failed for %s: %s", kind.value, exc)
            raise StoreError(f"Failed to list {kind.value}: {exc}") from exc

        model = _KINDS[kind].model
        return [model.model_validate(data) for data in rows]

    async def count(
        self,
        kind: RecordKind | str,
        *,
        status: str | None = None,
        record_type: str | None = None,
        run_id: str | None = None,
        since: datetime | None = None,
    ) -> int:
        kind = RecordKind(kind)
        stmt = select(func.count()).select_from(StoredRecord).where(StoredRecord.kind == kind.value)
        stmt = self._apply_filters(stmt, status, record_type, run_id, since)
        try:
            async with self.session_factory() as session:
                return (await session.execute(stmt)).scalar() or 0
        except SQLAlchemyError as exc:
            logger.error("Store count failed for %s: %s", kind.value, exc)
            raise StoreError(f"Failed to count {kind.value}: {exc}") from exc

    @staticmethod
    def _apply_filters(stmt, status, record_type, run_id, since):
        if status is not None:
            stmt = stmt.where(StoredRecord.status == status)
        if record_type is not None:
            stmt = stmt.where(StoredRecord.record_type == record_type)
        if run_id is not None:
            stmt = stmt.where(StoredRecord.run_id == run_id)
        if since is not None:
            stmt = stmt.where(StoredRecord.sort_key >= _naive_utc(since))
        return stmt
