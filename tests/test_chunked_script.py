"""
Chunk driver tests: follows next_offset, narrows to channels with more rows,
stops on failure.
"""
import asyncio
import importlib.util
from pathlib import Path

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "chunked_warehouse_sync.py"
_spec = importlib.util.spec_from_file_location("chunked_warehouse_sync", SCRIPT)
chunked_warehouse_sync = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(chunked_warehouse_sync)


def _run(coro):
    return asyncio.run(coro)


class ScriptedService:
    """Replays canned results and records each request"""

    def __init__(self, results):
        self.results = list(results)
        self.requests = []

    async def run(self, request):
        self.requests.append(request)
        return self.results.pop(0)


def _page(synced, has_more, next_offset=None, channels=None):
    return {
        "success": True,
        "data": {
            "total_synced": synced,
            "total_fetched": synced,
            "total_errors": 0,
            "has_more": has_more,
            "next_offset": next_offset,
            "channels": channels or {},
        },
    }


def test_follows_offsets_until_done():
    service = ScriptedService([
        _page(4, True, 2, {"shopee": {"has_more": True}, "lazada": {"has_more": False}}),
        _page(2, True, 4, {"shopee": {"has_more": True}}),
        _page(1, False),
    ])

    summary = _run(chunked_warehouse_sync.run_chunked(service, {"tenant_id": "t", "channels": ["shopee", "lazada"]}))

    assert summary["success"] is True
    assert summary["chunks"] == 3
    assert summary["total_synced"] == 7
    assert summary["next_offset"] is None
    assert [r["offset"] for r in service.requests] == [0, 2, 4]
    assert service.requests[1]["channels"] == ["shopee"]


def test_failure_reports_resume_offset():
    service = ScriptedService([
        _page(2, True, 2, {"shopee": {"has_more": True}}),
        {"success": False, "error": "Token endpoint returned 400"},
    ])

    summary = _run(chunked_warehouse_sync.run_chunked(service, {"tenant_id": "t"}))

    assert summary["success"] is False
    assert summary["next_offset"] == 2
    assert "400" in summary["error"]


def test_max_chunks_bound():
    service = ScriptedService([_page(1, True, n + 1, {"shopee": {"has_more": True}}) for n in range(5)])

    summary = _run(chunked_warehouse_sync.run_chunked(service, {"tenant_id": "t"}, max_chunks=2))

    assert summary["chunks"] == 2
    assert summary["next_offset"] == 2
