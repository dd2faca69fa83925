"""
Warehouse synchronization endpoints
"""
from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional, Union

from app.models.base import get_db
from app.models.data_sync import SyncLogEntry, SyncWatermark
from app.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])

# Lazy-init so importing the router doesn't build HTTP/DB collaborators
_sync_service = None


def get_sync_service():
    global _sync_service
    if _sync_service is None:
        from app.services.warehouse_sync_service import WarehouseSyncService
        _sync_service = WarehouseSyncService()
    return _sync_service


class SyncRequest(BaseModel):
    """Warehouse sync invocation. The caller resumes with next_offset while has_more."""
    tenant_id: str = Field(..., min_length=1)
    integration_id: Optional[str] = None
    channels: Optional[List[str]] = None
    days_back: int = 30
    action: Literal["sync", "count", "sync_all"] = "sync"
    batch_size: Optional[int] = Field(None, ge=1)
    offset: int = Field(0, ge=0)
    single_channel: Optional[str] = None
    sync_items: bool = True
    sync_settlements: bool = True
    sync_products: bool = True
    sync_customers: bool = True

    # Generic table mode
    model_name: Optional[str] = None
    dataset: Optional[str] = None
    table: Optional[str] = None
    target_table: Optional[str] = None
    primary_key_field: Optional[str] = None
    timestamp_field: Optional[str] = None

    # Credentials (fall back to server configuration)
    service_account_key: Optional[Union[Dict[str, Any], str]] = None
    project_id: Optional[str] = None


def _log_to_dict(entry: SyncLogEntry) -> dict:
    return {
        "id": entry.id,
        "integration_id": entry.integration_id,
        "sync_type": entry.sync_type,
        "status": entry.status,
        "started_at": entry.started_at.isoformat() if entry.started_at else None,
        "completed_at": entry.completed_at.isoformat() if entry.completed_at else None,
        "records_fetched": entry.records_fetched or 0,
        "records_created": entry.records_created or 0,
        "records_failed": entry.records_failed or 0,
        "error_message": entry.error_message,
        "metadata": entry.sync_metadata,
    }


@router.post("/warehouse")
async def sync_warehouse(request: SyncRequest, service=Depends(get_sync_service)):
    """
    Sync marketplace data from the warehouse.

    Processes one page per channel (or pages until done for action=sync_all).
    Re-invoke with offset=next_offset while has_more is true.
    """
    try:
        result = await service.run(request.model_dump())
    except Exception as e:
        log.error(f"Warehouse sync error for tenant {request.tenant_id}: {str(e)}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    status_code = 200 if result.get("success") else 500
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))


@router.get("/logs")
def get_sync_logs(
    tenant_id: str = Query(..., description="Tenant to list runs for"),
    limit: int = Query(20, ge=1, le=200),
    db=Depends(get_db),
):
    """Most recent sync runs, newest first"""
    entries = (
        db.query(SyncLogEntry)
        .filter(SyncLogEntry.tenant_id == tenant_id)
        .order_by(SyncLogEntry.id.desc())
        .limit(limit)
        .all()
    )
    return {"tenant_id": tenant_id, "logs": [_log_to_dict(e) for e in entries]}


@router.get("/watermarks")
def get_sync_watermarks(
    tenant_id: str = Query(..., description="Tenant to list watermarks for"),
    db=Depends(get_db),
):
    """Per data model progress markers"""
    watermarks = (
        db.query(SyncWatermark)
        .filter(SyncWatermark.tenant_id == tenant_id)
        .order_by(SyncWatermark.data_model)
        .all()
    )
    return {"tenant_id": tenant_id, "watermarks": [w.to_dict() for w in watermarks]}
