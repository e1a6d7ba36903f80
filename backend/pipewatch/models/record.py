"""
StoredRecord model: one row per persisted record of any kind, JSON payload plus index columns.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from pipewatch.database import Base


class StoredRecord(Base):
    __tablename__ = "records"
    __table_args__ = (
        Index("ix_records_kind_sort_key", "kind", "sort_key"),
    )

    kind: Mapped[str] = mapped_column(String(32), primary_key=True)  # pipeline_run, webhook, metrics, alert, config
    record_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    sort_key: Mapped[datetime] = mapped_column(DateTime)  # naive UTC
    status: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    record_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    data: Mapped[dict] = mapped_column(JSON)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )
