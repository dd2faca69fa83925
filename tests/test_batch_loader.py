"""
Batch loader tests against a throwaway SQLite database.

Covers idempotent upserts, in-batch de-duplication, batching, bounded retry
and failed-batch isolation.
"""
import asyncio
from collections import Counter

import pytest

from app.models import ExternalOrder, ExternalOrderItem, WarehouseRecord
from app.services.batch_loader import BatchLoader, LoadError, LoadResult
from app.services.record_mapper import MappingContext, map_order

CTX = MappingContext(channel="shopee", integration_id="int-1", tenant_id="tenant-1", id_field="order_sn")


def _run(coro):
    return asyncio.run(coro)


async def _no_sleep(_delay):
    return None


def _orders(*specs):
    """(order_sn, total_amount) pairs -> mapped order records"""
    return [map_order({"order_sn": sn, "total_amount": str(total)}, CTX).order for sn, total in specs]


def _count(session_factory, model):
    db = session_factory()
    try:
        return db.query(model).count()
    finally:
        db.close()


class FlakyLoader(BatchLoader):
    """Fails writes for selected order ids a given number of times"""

    def __init__(self, *args, fail_ids=(), failures_per_id=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_ids = set(fail_ids)
        self.failures_per_id = failures_per_id
        self.attempts = Counter()

    def _write_batch(self, model, key_columns, batch):
        poisoned = [r["external_order_id"] for r in batch if r.get("external_order_id") in self.fail_ids]
        for order_id in poisoned:
            self.attempts[order_id] += 1
            if self.failures_per_id is None or self.attempts[order_id] <= self.failures_per_id:
                raise LoadError(f"write failed for {order_id}")
        return super()._write_batch(model, key_columns, batch)


def test_upsert_inserts_records(session_factory):
    loader = BatchLoader(session_factory, batch_size=100, sleep=_no_sleep)
    result = _run(loader.upsert("external_orders", _orders(("A", 10), ("B", 20), ("C", 30))))

    assert result.succeeded == 3
    assert result.failed == 0
    assert _count(session_factory, ExternalOrder) == 3


def test_upsert_is_idempotent(session_factory):
    loader = BatchLoader(session_factory, batch_size=2, sleep=_no_sleep)
    records = _orders(("A", 10), ("B", 20), ("C", 30))

    for _ in range(3):
        _run(loader.upsert("external_orders", records))

    db = session_factory()
    try:
        rows = db.query(ExternalOrder).order_by(ExternalOrder.external_order_id).all()
        assert [(r.external_order_id, r.total_amount) for r in rows] == [("A", 10), ("B", 20), ("C", 30)]
    finally:
        db.close()


def test_upsert_overwrites_non_key_columns(session_factory):
    loader = BatchLoader(session_factory, sleep=_no_sleep)
    _run(loader.upsert("external_orders", _orders(("A", 10))))
    _run(loader.upsert("external_orders", _orders(("A", 99))))

    db = session_factory()
    try:
        row = db.query(ExternalOrder).one()
        assert row.total_amount == 99
        assert row.net_revenue == 99
    finally:
        db.close()


def test_duplicate_keys_in_one_call_last_wins(session_factory):
    loader = BatchLoader(session_factory, sleep=_no_sleep)
    result = _run(loader.upsert("external_orders", _orders(("A", 1), ("B", 2), ("A", 3))))

    assert result.succeeded == 2
    db = session_factory()
    try:
        assert db.query(ExternalOrder).filter_by(external_order_id="A").one().total_amount == 3
    finally:
        db.close()


def test_items_keyed_by_order_and_item(session_factory):
    loader = BatchLoader(session_factory, sleep=_no_sleep)
    mapped = map_order({
        "order_sn": "A",
        "items": [{"item_id": "1", "quantity": 1, "price": 5}, {"item_id": "2", "quantity": 2, "price": 5}],
    }, CTX)

    _run(loader.upsert("external_order_items", mapped.items))
    _run(loader.upsert("external_order_items", mapped.items))

    assert _count(session_factory, ExternalOrderItem) == 2


def test_failed_batch_does_not_stop_later_batches(session_factory):
    loader = FlakyLoader(session_factory, batch_size=2, max_attempts=3, retry_delay=0,
                         sleep=_no_sleep, fail_ids={"C"})
    records = _orders(("A", 1), ("B", 2), ("C", 3), ("D", 4), ("E", 5))

    result = _run(loader.upsert("external_orders", records))

    # batches: [A, B] ok, [C, D] fails every attempt, [E] ok
    assert result.succeeded == 3
    assert result.failed == 2
    assert len(result.errors) == 1
    assert "attempts: 3" in result.errors[0]
    assert loader.attempts["C"] == 3
    assert _count(session_factory, ExternalOrder) == 3


def test_transient_failure_is_retried(session_factory):
    sleeps = []

    async def record_sleep(delay):
        sleeps.append(delay)

    loader = FlakyLoader(session_factory, batch_size=10, max_attempts=3, retry_delay=0.5,
                         sleep=record_sleep, fail_ids={"A"}, failures_per_id=1)

    result = _run(loader.upsert("external_orders", _orders(("A", 1), ("B", 2))))

    assert result.succeeded == 2
    assert result.failed == 0
    assert loader.attempts["A"] == 2
    assert sleeps == [0.5]


def test_warehouse_records_target(session_factory):
    loader = BatchLoader(session_factory, sleep=_no_sleep)
    records = [
        {"tenant_id": "t", "data_model": "events", "record_key": str(i), "raw_data": {"n": i}}
        for i in range(3)
    ]
    result = _run(loader.upsert("warehouse_records", records))

    assert result.succeeded == 3
    assert _count(session_factory, WarehouseRecord) == 3


def test_empty_input(session_factory):
    result = _run(BatchLoader(session_factory).upsert("external_orders", []))
    assert result == LoadResult()


def test_unknown_target(session_factory):
    with pytest.raises(ValueError):
        _run(BatchLoader(session_factory).upsert("nope", [{"a": 1}]))


def test_load_results_add():
    total = LoadResult(2, 1, ["x"]) + LoadResult(3, 0, [])
    assert (total.succeeded, total.failed, total.errors) == (5, 1, ["x"])


def test_unexpected_error_is_confined_to_its_batch(session_factory):
    class BrokenWrites(BatchLoader):
        def _write_batch(self, model, key_columns, batch):
            if any(r["external_order_id"] == "B" for r in batch):
                raise OverflowError("Python int too large to convert to SQLite INTEGER")
            return super()._write_batch(model, key_columns, batch)

    loader = BrokenWrites(session_factory, batch_size=1, max_attempts=3, retry_delay=0, sleep=_no_sleep)
    result = _run(loader.upsert("external_orders", _orders(("A", 1), ("B", 2), ("C", 3))))

    assert result.succeeded == 2
    assert result.failed == 1
    # not a LoadError, so no retry
    assert "attempts: 1" in result.errors[0]
    assert _count(session_factory, ExternalOrder) == 2
