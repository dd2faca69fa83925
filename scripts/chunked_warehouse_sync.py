#!/usr/bin/env python3
"""
Chunked warehouse sync: keeps re-invoking the sync with next_offset until
every channel reports has_more = false.

Usage:
    python scripts/chunked_warehouse_sync.py --tenant-id TENANT [--channels shopee lazada] [--batch-size 2000]
"""
import asyncio
import argparse
import json
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.models.base import init_db
from app.services.warehouse_sync_service import WarehouseSyncService
from app.utils.logger import log


async def run_chunked(service, request: dict, max_chunks: int = 1000, delay: float = 0.0) -> dict:
    """Drive the offset/has_more protocol. Returns the aggregated summary."""
    offset = int(request.get("offset") or 0)
    summary = {"chunks": 0, "total_synced": 0, "total_fetched": 0, "total_errors": 0, "success": True}

    while summary["chunks"] < max_chunks:
        result = await service.run({**request, "offset": offset})
        summary["chunks"] += 1

        if not result.get("success"):
            log.error(f"Chunk at offset {offset} failed: {result.get('error')}")
            summary["success"] = False
            summary["error"] = result.get("error")
            summary["next_offset"] = offset
            return summary

        data = result["data"]
        summary["total_synced"] += data.get("total_synced", 0)
        summary["total_fetched"] += data.get("total_fetched", 0)
        summary["total_errors"] += data.get("total_errors", 0)
        log.info(
            f"Chunk {summary['chunks']} (offset {offset}): synced {data.get('total_synced', 0)}, "
            f"errors {data.get('total_errors', 0)}, has_more={data.get('has_more')}"
        )

        if not data.get("has_more"):
            summary["next_offset"] = None
            return summary

        offset = data["next_offset"]
        # Only channels that still have rows need another page
        request = {
            **request,
            "channels": [name for name, ch in data.get("channels", {}).items() if ch.get("has_more")],
        }
        if delay:
            await asyncio.sleep(delay)

    log.warning(f"Stopped after {max_chunks} chunks; resume from offset {offset}")
    summary["next_offset"] = offset
    return summary


def main():
    parser = argparse.ArgumentParser(description="Chunked warehouse sync")
    parser.add_argument("--tenant-id", required=True, help="Tenant to sync")
    parser.add_argument("--integration-id", default=None)
    parser.add_argument("--channels", nargs="*", default=None, help="Channels (default: configured set)")
    parser.add_argument("--batch-size", type=int, default=2000, help="Rows per channel page (default: 2000)")
    parser.add_argument("--offset", type=int, default=0, help="Resume from this offset")
    parser.add_argument("--max-chunks", type=int, default=1000)
    parser.add_argument("--delay", type=float, default=1.0, help="Seconds between chunks (default: 1.0)")
    parser.add_argument("--skip-items", action="store_true")
    parser.add_argument("--skip-settlements", action="store_true")
    parser.add_argument("--skip-products", action="store_true")
    parser.add_argument("--skip-customers", action="store_true")
    parser.add_argument("--key-file", default=None, help="Service account JSON file")
    args = parser.parse_args()

    service_account_key = None
    if args.key_file:
        with open(args.key_file) as f:
            service_account_key = json.load(f)

    request = {
        "tenant_id": args.tenant_id,
        "integration_id": args.integration_id,
        "channels": args.channels,
        "batch_size": args.batch_size,
        "offset": args.offset,
        "sync_items": not args.skip_items,
        "sync_settlements": not args.skip_settlements,
        "sync_products": not args.skip_products,
        "sync_customers": not args.skip_customers,
        "service_account_key": service_account_key,
    }

    init_db()
    summary = asyncio.run(run_chunked(WarehouseSyncService(), request, args.max_chunks, args.delay))
    print(json.dumps(summary, indent=2))
    sys.exit(0 if summary["success"] else 1)


if __name__ == "__main__":
    main()
