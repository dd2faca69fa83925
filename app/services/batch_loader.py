"""
Batch Loader
Idempotent batched upserts of canonical records, keyed by natural key.

Each batch is one INSERT ... ON CONFLICT DO UPDATE statement (PostgreSQL or
SQLite dialect) that overwrites every non-key column, so replaying a batch
converges to the same stored state. A batch that still fails after the
retry budget is counted as failed and the next batch proceeds.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.models import (
    ExternalOrder,
    ExternalOrderItem,
    ChannelSettlement,
    ExternalProduct,
    ExternalCustomer,
    WarehouseRecord,
)
from app.models.base import SessionLocal
from app.utils.helpers import chunk_list, dedupe_by_key
from app.utils.logger import log
from app.utils.retry import RetryContext

settings = get_settings()


class LoadError(Exception):
    """A batch write failed. Retried, then recorded; never escapes the loader."""


# target name -> (model, natural key columns)
TARGETS: Dict[str, Tuple[Any, Tuple[str, ...]]] = {
    "external_orders": (ExternalOrder, ("tenant_id", "integration_id", "external_order_id")),
    "external_order_items": (ExternalOrderItem, ("tenant_id", "external_order_id", "item_id")),
    "channel_settlements": (ChannelSettlement, ("tenant_id", "integration_id", "settlement_id")),
    "external_products": (ExternalProduct, ("tenant_id", "integration_id", "external_product_id")),
    "external_customers": (ExternalCustomer, ("tenant_id", "integration_id", "external_customer_id")),
    "warehouse_records": (WarehouseRecord, ("tenant_id", "data_model", "record_key")),
}

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass
class LoadResult:
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def __add__(self, other: "LoadResult") -> "LoadResult":
        return LoadResult(
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
            errors=self.errors + other.errors,
        )

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": self.errors[:10],
        }


class BatchLoader:
    """Writes canonical records in fixed-size, retried, merge-on-conflict batches"""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.upsert_batch_size
        self.max_attempts = max_attempts or settings.upsert_max_attempts
        self.retry_delay = settings.upsert_retry_delay_seconds if retry_delay is None else retry_delay
        self._sleep = sleep

    async def upsert(
        self,
        target: str,
        records: Sequence[Dict[str, Any]],
        conflict_columns: Optional[Sequence[str]] = None,
    ) -> LoadResult:
        """
        Upsert records into a target collection.

        Args:
            target: Key of TARGETS
            records: Canonical records, all with the same key set
            conflict_columns: Override of the target's natural key

        Returns:
            LoadResult with succeeded / failed record counts
        """
        if target not in TARGETS:
            raise ValueError(f"Unknown upsert target: {target}")

        model, natural_key = TARGETS[target]
        key_columns = tuple(conflict_columns or natural_key)

        result = LoadResult()
        if not records:
            return result

        unique = dedupe_by_key(records, key_columns)
        if len(unique) < len(records):
            log.debug(f"{target}: collapsed {len(records) - len(unique)} duplicate keys before upsert")

        for index, batch in enumerate(chunk_list(unique, self.batch_size), start=1):
            label = f"Upsert {target} batch {index}"
            retry = RetryContext(
                max_attempts=self.max_attempts,
                base_delay=self.retry_delay,
                retryable_exceptions=(LoadError,),
                label=label,
                sleep=self._sleep,
            )
            try:
                async with retry as ctx:
                    written = await ctx.execute(self._write_batch_async, model, key_columns, list(batch))
                result.succeeded += written
            except Exception as e:
                # any failure is confined to this batch
                stats = retry.stats.to_dict()
                log.error(f"{label} failed: {e} (retry stats: {stats})")
                result.failed += len(batch)
                result.errors.append(f"{target} batch {index}: {e} (attempts: {stats['attempts']})")

        log.info(f"{target}: {result.succeeded} upserted, {result.failed} failed")
        return result

    async def _write_batch_async(self, model, key_columns: Tuple[str, ...], batch: List[Dict[str, Any]]) -> int:
        return await asyncio.to_thread(self._write_batch, model, key_columns, batch)

    def _write_batch(self, model, key_columns: Tuple[str, ...], batch: List[Dict[str, Any]]) -> int:
        table = model.__table__
        column_names = [c.name for c in table.columns]

        # Uniform key set restricted to real columns, in table order
        present = set()
        for record in batch:
            present.update(record.keys())
        columns = [name for name in column_names if name in present]
        values = [{name: record.get(name) for name in columns} for record in batch]

        db = self.session_factory()
        try:
            dialect = db.get_bind().dialect.name
            insert = _INSERTS.get(dialect)
            if insert is None:
                raise LoadError(f"Upsert is not supported on dialect {dialect}")

            stmt = insert(table).values(values)
            update_columns = {
                name: stmt.excluded[name]
                for name in columns
                if name not in key_columns and name != "id"
            }
            if update_columns:
                stmt = stmt.on_conflict_do_update(index_elements=list(key_columns), set_=update_columns)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=list(key_columns))

            db.execute(stmt)
            db.commit()
            return len(values)
        except SQLAlchemyError as e:
            db.rollback()
            raise LoadError(str(e).split("\n")[0]) from e
        finally:
            db.close()
