"""
Sync bookkeeping models

SyncLogEntry is the per-run audit row, SyncWatermark the per-stream progress
marker, WarehouseRecord the pass-through store for tables without a
dedicated mapper.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, UniqueConstraint

from app.models.base import Base
from app.utils.helpers import utcnow


class SyncLogEntry(Base):
    """
    One row per sync invocation

    Created with status=running at run start and finalized exactly once with
    completed, partial or failed.
    """
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    integration_id = Column(String, index=True, nullable=True)
    connector_type = Column(String, default="bigquery")
    connector_name = Column(String, default="BigQuery")
    sync_type = Column(String, default="manual")  # manual, sync_all, table

    status = Column(String, index=True, default="running")  # running, completed, partial, failed
    started_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    records_fetched = Column(Integer, default=0)
    records_created = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)
    sync_metadata = Column(JSON, nullable=True)

    @property
    def is_finalized(self) -> bool:
        return self.completed_at is not None

    def finalize(self, status: str, fetched: int = 0, created: int = 0, failed: int = 0,
                 error_message=None, metadata=None):
        if self.is_finalized:
            raise ValueError(f"Sync log {self.id} already finalized as {self.status}")
        if status not in ("completed", "partial", "failed"):
            raise ValueError(f"Invalid terminal status: {status}")

        self.status = status
        self.completed_at = utcnow()
        self.records_fetched = fetched
        self.records_created = created
        self.records_failed = failed
        self.error_message = error_message
        if metadata is not None:
            self.sync_metadata = metadata


class SyncWatermark(Base):
    """
    Progress marker per (tenant, data model)

    last_sync_at, last_record_timestamp and total_records_synced only move
    forward on a successful run. A failed run sets sync_status=failed and
    error_message and leaves them alone.
    """
    __tablename__ = "warehouse_sync_watermarks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "data_model", name="uq_watermark_tenant_model"),
    )

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    data_model = Column(String, index=True, nullable=False)  # orders, order_items, ... or a model_name
    dataset_id = Column(String, nullable=True)
    table_id = Column(String, nullable=True)

    sync_status = Column(String, index=True, default="syncing")  # syncing, completed, failed
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_record_timestamp = Column(String, nullable=True)
    total_records_synced = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "data_model": self.data_model,
            "dataset_id": self.dataset_id,
            "table_id": self.table_id,
            "sync_status": self.sync_status,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_record_timestamp": self.last_record_timestamp,
            "total_records_synced": self.total_records_synced or 0,
            "error_message": self.error_message,
        }


class WarehouseRecord(Base):
    """Rows forwarded unchanged from warehouse tables that have no entity mapper"""
    __tablename__ = "warehouse_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "data_model", "record_key", name="uq_warehouse_records_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    data_model = Column(String, index=True, nullable=False)
    record_key = Column(String, nullable=False)

    target_table = Column(String, nullable=True)
    dataset_id = Column(String, nullable=True)
    table_id = Column(String, nullable=True)

    raw_data = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), default=utcnow)
