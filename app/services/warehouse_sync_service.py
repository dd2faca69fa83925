"""
Warehouse Sync Service
Drives one sync invocation end to end: credentials, per-channel paging,
mapping, batched upserts, the audit log and watermarks.

Run lifecycle (channel mode):
    INIT      resolve the integration, insert a running SyncLogEntry
    RUNNING   authenticate, then process channels one after another
    COMPLETED no channel has more rows
    PARTIAL   at least one channel has more rows; resume from next_offset
    FAILED    setup failure (credentials, token exchange, bad identifiers) or an
              unexpected error after the log was opened

Channel- and batch-level failures are recorded in the channel's result and
never abort sibling channels.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field, replace
from functools import reduce
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from app.config import get_settings
from app.connectors.channel_registry import ChannelConfig, get_channel
from app.connectors.warehouse_auth import AuthError, CredentialBroker
from app.connectors.warehouse_client import (
    QueryError,
    WarehouseQueryClient,
    incremental_query,
    page_query,
    validate_identifier,
)
from app.models import Integration, SyncLogEntry, SyncWatermark
from app.models.base import SessionLocal
from app.services.batch_loader import BatchLoader, LoadResult
from app.services.record_mapper import (
    ENTITY_MAPPERS,
    NATURAL_ID_FIELDS,
    MappingContext,
    map_order,
    parse_timestamp,
)
from app.utils.credentials import resolve_project_id, resolve_service_account
from app.utils.helpers import utcnow
from app.utils.logger import log
from app.utils.retry import RetryContext

settings = get_settings()

ACTIONS = ("sync", "count", "sync_all")

# entity, request flag, registry table attr, registry id attr, load target, result counter
AUXILIARY_ENTITIES: Tuple[Tuple[str, str, str, str, str, str], ...] = (
    ("settlement", "sync_settlements", "settlements_table", "settlement_id_field",
     "channel_settlements", "settlements_synced"),
    ("product", "sync_products", "products_table", "product_id_field",
     "external_products", "products_synced"),
    ("customer", "sync_customers", "customers_table", "customer_id_field",
     "external_customers", "customers_synced"),
)

# watermark data model per request flag (None = always)
CHANNEL_DATA_MODELS: Tuple[Tuple[str, Optional[str]], ...] = (
    ("orders", None),
    ("order_items", "sync_items"),
    ("settlements", "sync_settlements"),
    ("products", "sync_products"),
    ("customers", "sync_customers"),
)


@dataclass
class SyncOptions:
    """Validated, defaulted view of an inbound sync request"""
    tenant_id: str
    integration_id: Optional[str] = None
    channels: List[str] = field(default_factory=list)
    days_back: int = 30
    action: str = "sync"
    batch_size: int = 2000
    offset: int = 0
    single_channel: Optional[str] = None
    sync_items: bool = True
    sync_settlements: bool = True
    sync_products: bool = True
    sync_customers: bool = True
    model_name: Optional[str] = None
    dataset: Optional[str] = None
    table: Optional[str] = None
    target_table: Optional[str] = None
    primary_key_field: Optional[str] = None
    timestamp_field: Optional[str] = None
    service_account_key: Any = None
    project_id: Optional[str] = None

    @classmethod
    def from_request(cls, data: Dict[str, Any]) -> "SyncOptions":
        data = {k: v for k, v in (data or {}).items() if v is not None}

        tenant_id = str(data.get("tenant_id") or "").strip()
        if not tenant_id:
            raise ValueError("tenant_id is required")

        action = data.get("action") or "sync"
        if action not in ACTIONS:
            raise ValueError(f"Unknown action: {action}")

        batch_size = int(data.get("batch_size", settings.default_batch_size))
        offset = int(data.get("offset", 0))
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if offset < 0:
            raise ValueError("offset must be >= 0")

        if data.get("single_channel"):
            channels = [data["single_channel"]]
        else:
            channels = list(data.get("channels") or settings.default_channels)
        channels = list(dict.fromkeys(str(c).strip().lower() for c in channels if str(c).strip()))

        known = {f for f in cls.__dataclass_fields__}
        extra = {k: v for k, v in data.items() if k in known}
        extra.update(
            tenant_id=tenant_id,
            action=action,
            batch_size=batch_size,
            offset=offset,
            channels=channels,
            days_back=int(data.get("days_back", 30)),
        )
        return cls(**extra)


@dataclass(frozen=True)
class ChannelResult:
    """Outcome of one channel page. Immutable; combined with +."""
    channel: str
    orders_synced: int = 0
    items_synced: int = 0
    settlements_synced: int = 0
    products_synced: int = 0
    customers_synced: int = 0
    fetched: int = 0
    errors: int = 0
    skipped: int = 0
    has_more: bool = False
    error_messages: Tuple[str, ...] = ()

    @property
    def synced(self) -> int:
        return (self.orders_synced + self.items_synced + self.settlements_synced
                + self.products_synced + self.customers_synced)

    def __add__(self, other: "ChannelResult") -> "ChannelResult":
        return ChannelResult(
            channel=self.channel,
            orders_synced=self.orders_synced + other.orders_synced,
            items_synced=self.items_synced + other.items_synced,
            settlements_synced=self.settlements_synced + other.settlements_synced,
            products_synced=self.products_synced + other.products_synced,
            customers_synced=self.customers_synced + other.customers_synced,
            fetched=self.fetched + other.fetched,
            errors=self.errors + other.errors,
            skipped=self.skipped + other.skipped,
            has_more=self.has_more or other.has_more,
            error_messages=self.error_messages + other.error_messages,
        )

    def to_dict(self) -> dict:
        return {
            "orders_synced": self.orders_synced,
            "items_synced": self.items_synced,
            "settlements_synced": self.settlements_synced,
            "products_synced": self.products_synced,
            "customers_synced": self.customers_synced,
            "synced": self.synced,
            "fetched": self.fetched,
            "errors": self.errors,
            "skipped": self.skipped,
            "has_more": self.has_more,
            "error_messages": list(self.error_messages[:10]),
        }


def summarize(results: Sequence[ChannelResult]) -> ChannelResult:
    """Fold channel results into run totals"""
    return reduce(lambda a, b: a + b, results, ChannelResult(channel="total"))


class WarehouseSyncService:
    """Syncs marketplace data from the warehouse into the canonical tables"""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        loader: Optional[BatchLoader] = None,
        client_factory: Callable = WarehouseQueryClient,
        broker_factory: Callable = CredentialBroker,
        sleep: Callable = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.loader = loader or BatchLoader(session_factory)
        self.client_factory = client_factory
        self.broker_factory = broker_factory
        self._sleep = sleep

    # ────────────────────────────────────────────
    # ENTRY POINT
    # ────────────────────────────────────────────

    async def run(self, request: Dict[str, Any]) -> Dict:
        """Dispatch a request: count, generic table sync, or channel sync."""
        try:
            options = SyncOptions.from_request(request)
        except (TypeError, ValueError) as e:
            return {"success": False, "error": str(e)}

        if options.action == "count":
            return await self.count_channels(options)
        if options.dataset and options.table:
            return await self.sync_table(options)
        return await self.sync_channels(options)

    async def _authenticate(self, options: SyncOptions):
        service_account = resolve_service_account(options.service_account_key)
        project_id = resolve_project_id(options.project_id, service_account)
        broker = self.broker_factory(service_account)
        access_token = await broker.fetch_access_token()
        return self.client_factory(access_token, project_id)

    # ────────────────────────────────────────────
    # COUNT
    # ────────────────────────────────────────────

    async def count_channels(self, options: SyncOptions) -> Dict:
        """Row counts of each channel's orders table"""
        try:
            client = await self._authenticate(options)
        except (AuthError, ValueError) as e:
            log.error(f"Count failed for tenant {options.tenant_id}: {e}")
            return {"success": False, "error": str(e)}

        channels: Dict[str, dict] = {}
        total = 0
        for name in options.channels:
            config = get_channel(name)
            if config is None:
                channels[name] = {"count": 0, "error": f"Unknown channel: {name}"}
                continue
            try:
                count = await client.count(config.dataset, config.orders_table)
            except (QueryError, ValueError) as e:
                log.warning(f"Count failed for {name}: {e}")
                channels[name] = {"count": 0, "error": str(e)}
                continue
            channels[name] = {"count": count}
            total += count

        return {"success": True, "data": {"total_count": total, "channels": channels}}

    # ────────────────────────────────────────────
    # CHANNEL MODE
    # ────────────────────────────────────────────

    async def sync_channels(self, options: SyncOptions) -> Dict:
        """One (or, for sync_all, several) pages of every requested channel."""
        start_time = time.time()
        sync_type = "sync_all" if options.action == "sync_all" else "manual"
        data_models = [
            model for model, flag in CHANNEL_DATA_MODELS
            if flag is None or getattr(options, flag)
        ]

        try:
            sync_log_id, integration_id = self._start_run(options, sync_type)
        except ValueError as e:
            log.error(f"Warehouse sync rejected for tenant {options.tenant_id}: {e}")
            return {"success": False, "error": str(e)}
        log.info(
            f"Warehouse sync {sync_log_id} started for tenant {options.tenant_id}: "
            f"channels={options.channels} offset={options.offset} batch_size={options.batch_size}"
        )

        try:
            client = await self._authenticate(options)
        except (AuthError, ValueError) as e:
            return self._fail_run(sync_log_id, integration_id, options.tenant_id, data_models, str(e))

        try:
            return await self._sync_pages(client, options, sync_log_id, integration_id, data_models, start_time)
        except Exception as e:
            # the run log must never be left running
            log.exception(f"Warehouse sync {sync_log_id} aborted")
            return self._fail_run(sync_log_id, integration_id, options.tenant_id, data_models,
                                  f"{type(e).__name__}: {e}")

    async def _sync_pages(self, client, options: SyncOptions, sync_log_id: int, integration_id: str,
                          data_models: List[str], start_time: float) -> Dict:
        """RUNNING through COMPLETED / PARTIAL"""
        max_pages = max(1, settings.sync_all_max_pages) if options.action == "sync_all" else 1
        results: Dict[str, ChannelResult] = {}
        pending = list(options.channels)
        offset = options.offset
        pages = 0

        while True:
            page: Dict[str, ChannelResult] = {}
            for name in pending:
                page[name] = await self._sync_channel(client, name, offset, options, integration_id)

            for name, result in page.items():
                if name in results:
                    # the latest page decides whether the channel still has rows
                    result = replace(results[name] + result, has_more=result.has_more)
                results[name] = result

            pages += 1
            pending = [name for name, result in page.items() if result.has_more]
            if not pending or pages >= max_pages:
                break
            offset += options.batch_size

        totals = summarize(list(results.values()))
        has_more = bool(pending)
        next_offset = offset + options.batch_size if has_more else None
        status = "partial" if has_more else "completed"

        data = {
            "total_orders_synced": totals.orders_synced,
            "total_items_synced": totals.items_synced,
            "total_settlements_synced": totals.settlements_synced,
            "total_products_synced": totals.products_synced,
            "total_customers_synced": totals.customers_synced,
            "total_synced": totals.synced,
            "total_fetched": totals.fetched,
            "total_errors": totals.errors,
            "total_skipped": totals.skipped,
            "has_more": has_more,
            "next_offset": next_offset,
            "status": status,
            "sync_log_id": sync_log_id,
            "channels": {name: result.to_dict() for name, result in results.items()},
        }

        synced_by_model = {
            "orders": totals.orders_synced,
            "order_items": totals.items_synced,
            "settlements": totals.settlements_synced,
            "products": totals.products_synced,
            "customers": totals.customers_synced,
        }
        self._finish_run(
            sync_log_id,
            integration_id,
            status=status,
            totals=totals,
            metadata={
                "has_more": has_more,
                "next_offset": next_offset,
                "pages": pages,
                "duration_seconds": round(time.time() - start_time, 2),
                "channels": data["channels"],
            },
            watermarks=[(options.tenant_id, model, synced_by_model[model], not has_more) for model in data_models],
        )

        log.info(
            f"Warehouse sync {sync_log_id} {status}: fetched={totals.fetched} synced={totals.synced} "
            f"errors={totals.errors} has_more={has_more} next_offset={next_offset}"
        )
        return {"success": True, "data": data}

    async def _fetch_rows(self, client, dataset: str, table: str, order_by: str,
                          limit: int, offset: int = 0) -> List[Dict[str, Any]]:
        """One page, retried only on transient warehouse errors"""
        sql = page_query(client.project_id, dataset, table, order_by, limit, offset)
        async with RetryContext(
            max_attempts=settings.query_max_attempts,
            base_delay=settings.query_retry_delay_seconds,
            label=f"Query {dataset}.{table}",
            sleep=self._sleep,
        ) as ctx:
            return await ctx.execute(client.query, sql, max_results=limit)

    async def _sync_channel(self, client, name: str, offset: int, options: SyncOptions,
                            integration_id: str) -> ChannelResult:
        """Process one page of a channel. Never raises; failures land in the result."""
        try:
            return await self._process_channel(client, name, offset, options, integration_id)
        except Exception as e:
            log.exception(f"{name}: page at offset {offset} failed")
            return ChannelResult(channel=name, errors=1, error_messages=(f"{name}: {type(e).__name__}: {e}",))

    async def _process_channel(self, client, name: str, offset: int, options: SyncOptions,
                               integration_id: str) -> ChannelResult:
        config = get_channel(name)
        if config is None:
            log.warning(f"Skipping unknown channel {name}")
            return ChannelResult(channel=name, errors=1, error_messages=(f"Unknown channel: {name}",))

        synced_at = utcnow()
        ctx = MappingContext(
            channel=config.name,
            integration_id=integration_id,
            tenant_id=options.tenant_id,
            id_field=config.order_id_field,
        )

        try:
            rows = await self._fetch_rows(
                client, config.dataset, config.orders_table, config.order_id_field,
                options.batch_size, offset,
            )
        except Exception as e:
            log.error(f"{name}: orders query failed at offset {offset}: {e}")
            return ChannelResult(channel=name, errors=1, error_messages=(f"{name} orders: {e}",))

        has_more = len(rows) == options.batch_size
        log.info(f"{name}: fetched {len(rows)} orders at offset {offset} (has_more={has_more})")

        mapped = [map_order(row, ctx, synced_at) for row in rows]
        keyed = [m for m in mapped if m.order["external_order_id"]]
        skipped = len(mapped) - len(keyed)
        if skipped:
            log.warning(f"{name}: skipped {skipped} order rows without {config.order_id_field}")

        counters = {
            "orders_synced": 0,
            "items_synced": 0,
            "settlements_synced": 0,
            "products_synced": 0,
            "customers_synced": 0,
        }
        fetched = len(rows)
        errors = 0
        messages: List[str] = []

        loads: List[Tuple[str, str, List[Dict[str, Any]]]] = [
            ("orders_synced", "external_orders", [m.order for m in keyed]),
        ]
        if options.sync_items:
            loads.append(("items_synced", "external_order_items", [item for m in keyed for item in m.items]))

        for counter, target, records in loads:
            outcome = await self._load(target, records)
            counters[counter] += outcome.succeeded
            errors += outcome.failed
            messages.extend(outcome.errors)

        if offset == 0:
            for entity, flag, table_attr, id_attr, target, counter in AUXILIARY_ENTITIES:
                table = getattr(config, table_attr)
                if not getattr(options, flag) or not table:
                    continue
                try:
                    loaded, entity_fetched, entity_skipped = await self._sync_entity(
                        client, config, entity, table, getattr(config, id_attr), target, ctx, synced_at,
                    )
                except Exception as e:
                    log.error(f"{name}: {entity} sync failed: {e}")
                    errors += 1
                    messages.append(f"{name} {entity}: {e}")
                    continue
                counters[counter] += loaded.succeeded
                fetched += entity_fetched
                skipped += entity_skipped
                errors += loaded.failed
                messages.extend(loaded.errors)

        return ChannelResult(
            channel=name,
            fetched=fetched,
            errors=errors,
            skipped=skipped,
            has_more=has_more,
            error_messages=tuple(messages),
            **counters,
        )

    async def _sync_entity(self, client, config: ChannelConfig, entity: str, table: str, id_field: str,
                           target: str, ctx: MappingContext, synced_at) -> Tuple[LoadResult, int, int]:
        """Settlements / products / customers: first rows only, capped"""
        rows = await self._fetch_rows(client, config.dataset, table, id_field, settings.auxiliary_row_limit)
        mapper = ENTITY_MAPPERS[entity]
        entity_ctx = replace(ctx, id_field=id_field)
        id_key = NATURAL_ID_FIELDS[entity]

        records = [mapper(row, entity_ctx, synced_at) for row in rows]
        keyed = [record for record in records if record[id_key]]
        log.info(f"{config.name}: fetched {len(rows)} {entity} rows")
        return await self._load(target, keyed), len(rows), len(records) - len(keyed)

    async def _load(self, target: str, records: List[Dict[str, Any]]) -> LoadResult:
        if not records:
            return LoadResult()
        return await self.loader.upsert(target, records)

    # ────────────────────────────────────────────
    # GENERIC TABLE MODE
    # ────────────────────────────────────────────

    async def sync_table(self, options: SyncOptions) -> Dict:
        """
        Forward rows of an arbitrary warehouse table, tracked by a watermark.

        With timestamp_field the query is incremental (rows newer than the
        watermark's last_record_timestamp); otherwise LIMIT/OFFSET paging.
        Rows are stored unchanged in warehouse_records when target_table is
        given, otherwise only counted.
        """
        model_name = options.model_name or options.table
        try:
            validate_identifier(options.dataset, "dataset")
            validate_identifier(options.table, "table")
            if options.primary_key_field:
                validate_identifier(options.primary_key_field, "column")
            if options.timestamp_field:
                validate_identifier(options.timestamp_field, "column")
        except ValueError as e:
            return {"success": False, "error": str(e)}

        if not options.primary_key_field:
            return {"success": False, "error": "primary_key_field is required for table sync"}

        try:
            sync_log_id, integration_id = self._start_run(options, "table")
        except ValueError as e:
            log.error(f"Table sync rejected for tenant {options.tenant_id}: {e}")
            return {"success": False, "error": str(e)}
        previous_timestamp = self._begin_watermark(options, model_name)

        try:
            client = await self._authenticate(options)
        except (AuthError, ValueError) as e:
            return self._fail_run(sync_log_id, integration_id, options.tenant_id, [model_name], str(e))

        try:
            return await self._forward_rows(client, options, sync_log_id, integration_id,
                                            model_name, previous_timestamp)
        except Exception as e:
            log.exception(f"Table sync {sync_log_id} aborted")
            return self._fail_run(sync_log_id, integration_id, options.tenant_id, [model_name],
                                  f"{type(e).__name__}: {e}")

    async def _forward_rows(self, client, options: SyncOptions, sync_log_id: int, integration_id: str,
                            model_name: str, previous_timestamp: Optional[str]) -> Dict:
        limit = min(options.batch_size, settings.generic_row_limit)
        offset = 0 if options.timestamp_field else options.offset
        try:
            if options.timestamp_field:
                since = parse_timestamp(previous_timestamp) if previous_timestamp else None
                sql = incremental_query(
                    client.project_id, options.dataset, options.table, options.timestamp_field,
                    limit, since_param="since" if since else None,
                )
                params = {"since": ("TIMESTAMP", since.isoformat())} if since else None
                async with RetryContext(
                    max_attempts=settings.query_max_attempts,
                    base_delay=settings.query_retry_delay_seconds,
                    label=f"Query {options.dataset}.{options.table}",
                    sleep=self._sleep,
                ) as ctx:
                    rows = await ctx.execute(client.query, sql, max_results=limit, parameters=params)
            else:
                rows = await self._fetch_rows(
                    client, options.dataset, options.table, options.primary_key_field, limit, offset,
                )
        except (QueryError, ValueError) as e:
            return self._fail_run(sync_log_id, integration_id, options.tenant_id, [model_name], str(e))

        synced_at = utcnow()
        has_more = len(rows) == limit

        records = []
        for row in rows:
            key = row.get(options.primary_key_field)
            if key is None or key == "":
                continue
            records.append({
                "tenant_id": options.tenant_id,
                "data_model": model_name,
                "record_key": str(key),
                "target_table": options.target_table,
                "dataset_id": options.dataset,
                "table_id": options.table,
                "raw_data": row,
                "last_synced_at": synced_at,
            })
        skipped = len(rows) - len(records)

        loaded = LoadResult()
        if options.target_table:
            loaded = await self._load("warehouse_records", records)
        processed = loaded.succeeded if options.target_table else len(records)

        newest = None
        if options.timestamp_field:
            stamps = [parse_timestamp(row.get(options.timestamp_field)) for row in rows]
            stamps = [s for s in stamps if s is not None]
            newest = max(stamps) if stamps else None

        next_offset = None
        if has_more and not options.timestamp_field:
            next_offset = offset + limit

        totals = ChannelResult(
            channel=model_name,
            fetched=len(rows),
            errors=loaded.failed,
            skipped=skipped,
            has_more=has_more,
            error_messages=tuple(loaded.errors),
        )
        watermark = self._finish_run(
            sync_log_id,
            integration_id,
            status="partial" if has_more else "completed",
            totals=totals,
            created=processed,
            metadata={"model_name": model_name, "has_more": has_more, "next_offset": next_offset},
            watermarks=[(options.tenant_id, model_name, processed, True)],
            newest_timestamp=newest,
        )

        log.info(f"Table sync {model_name}: fetched={len(rows)} synced={loaded.succeeded} skipped={skipped}")
        return {
            "success": True,
            "data": {
                "model_name": model_name,
                "fetched": len(rows),
                "synced": loaded.succeeded,
                "skipped": skipped,
                "errors": loaded.failed,
                "has_more": has_more,
                "next_offset": next_offset,
                "sync_log_id": sync_log_id,
                "watermark": watermark,
            },
        }

    # ────────────────────────────────────────────
    # BOOKKEEPING
    # ────────────────────────────────────────────

    def _resolve_integration(self, db, options: SyncOptions) -> Integration:
        integration = None
        if options.integration_id:
            integration = db.get(Integration, options.integration_id)
            if integration is not None and integration.tenant_id != options.tenant_id:
                raise ValueError(f"Integration {options.integration_id} belongs to another tenant")
        if integration is None:
            integration = db.query(Integration).filter(
                Integration.tenant_id == options.tenant_id,
                Integration.connector_type == "bigquery",
            ).order_by(Integration.created_at).first()
        if integration is None:
            integration = Integration(
                id=options.integration_id or str(uuid.uuid4()),
                tenant_id=options.tenant_id,
                connector_type="bigquery",
                connector_name="BigQuery",
                status="pending",
                settings={"channels": options.channels},
            )
            db.add(integration)
            db.flush()
            log.info(f"Created BigQuery integration {integration.id} for tenant {options.tenant_id}")
        return integration

    def _start_run(self, options: SyncOptions, sync_type: str) -> Tuple[int, str]:
        """INIT: integration + running SyncLogEntry. Returns (log id, integration id)."""
        db = self.session_factory()
        try:
            integration = self._resolve_integration(db, options)
            sync_log = SyncLogEntry(
                tenant_id=options.tenant_id,
                integration_id=integration.id,
                connector_type="bigquery",
                connector_name=integration.connector_name or "BigQuery",
                sync_type=sync_type,
                status="running",
                started_at=utcnow(),
                sync_metadata={
                    "action": options.action,
                    "channels": options.channels,
                    "offset": options.offset,
                    "batch_size": options.batch_size,
                    "days_back": options.days_back,
                    "dataset": options.dataset,
                    "table": options.table,
                },
            )
            db.add(sync_log)
            db.commit()
            return sync_log.id, integration.id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _get_watermark(self, db, tenant_id: str, data_model: str) -> SyncWatermark:
        watermark = db.query(SyncWatermark).filter(
            SyncWatermark.tenant_id == tenant_id,
            SyncWatermark.data_model == data_model,
        ).first()
        if watermark is None:
            watermark = SyncWatermark(tenant_id=tenant_id, data_model=data_model, total_records_synced=0)
            db.add(watermark)
        return watermark

    def _begin_watermark(self, options: SyncOptions, data_model: str) -> Optional[str]:
        """Mark a table stream as syncing; returns its last_record_timestamp."""
        db = self.session_factory()
        try:
            watermark = self._get_watermark(db, options.tenant_id, data_model)
            watermark.dataset_id = options.dataset
            watermark.table_id = options.table
            watermark.sync_status = "syncing"
            previous = watermark.last_record_timestamp
            db.commit()
            return previous
        finally:
            db.close()

    def _finish_run(self, sync_log_id: int, integration_id: str, status: str, totals: ChannelResult,
                    metadata: dict, watermarks: List[Tuple[str, str, int, bool]],
                    created: Optional[int] = None, newest_timestamp=None) -> Optional[dict]:
        """
        COMPLETED / PARTIAL: finalize the log, touch the integration, advance watermarks.

        Each watermark tuple is (tenant_id, data_model, records_synced, complete).
        Returns the last watermark as a dict.
        """
        now = utcnow()
        db = self.session_factory()
        try:
            sync_log = db.get(SyncLogEntry, sync_log_id)
            sync_log.finalize(
                status,
                fetched=totals.fetched,
                created=totals.synced if created is None else created,
                failed=totals.errors,
                error_message="; ".join(totals.error_messages[:5]) or None,
                metadata={**(sync_log.sync_metadata or {}), **metadata},
            )

            integration = db.get(Integration, integration_id)
            if integration is not None:
                integration.last_sync_at = now
                integration.status = "active"
                integration.error_message = None

            watermark = None
            for tenant_id, data_model, synced, complete in watermarks:
                watermark = self._get_watermark(db, tenant_id, data_model)
                watermark.total_records_synced = (watermark.total_records_synced or 0) + synced
                watermark.error_message = None
                if complete:
                    watermark.sync_status = "completed"
                    watermark.last_sync_at = now
                else:
                    watermark.sync_status = "syncing"
                if newest_timestamp is not None:
                    previous = parse_timestamp(watermark.last_record_timestamp)
                    if previous is None or newest_timestamp > previous:
                        watermark.last_record_timestamp = newest_timestamp.isoformat()

            db.commit()
            return watermark.to_dict() if watermark is not None else None
        finally:
            db.close()

    def _fail_run(self, sync_log_id: int, integration_id: str, tenant_id: str,
                  data_models: List[str], message: str) -> Dict:
        """FAILED: finalize the log and flag watermarks without moving them."""
        log.error(f"Warehouse sync {sync_log_id} failed for tenant {tenant_id}: {message}")
        db = self.session_factory()
        try:
            sync_log = db.get(SyncLogEntry, sync_log_id)
            sync_log.finalize("failed", error_message=message)

            integration = db.get(Integration, integration_id)
            if integration is not None:
                integration.status = "error"
                integration.error_message = message

            for data_model in data_models:
                watermark = self._get_watermark(db, tenant_id, data_model)
                watermark.sync_status = "failed"
                watermark.error_message = message

            db.commit()
        finally:
            db.close()

        return {"success": False, "error": message, "sync_log_id": sync_log_id}
