"""Database models for the warehouse sync service"""

from app.models.integration import Integration

from app.models.ecommerce import (
    ExternalOrder,
    ExternalOrderItem,
    ChannelSettlement,
    ExternalProduct,
    ExternalCustomer
)

from app.models.data_sync import (
    SyncLogEntry,
    SyncWatermark,
    WarehouseRecord
)

__all__ = [
    "Integration",
    "ExternalOrder",
    "ExternalOrderItem",
    "ChannelSettlement",
    "ExternalProduct",
    "ExternalCustomer",
    "SyncLogEntry",
    "SyncWatermark",
    "WarehouseRecord",
]
