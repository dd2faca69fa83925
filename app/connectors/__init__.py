"""Warehouse connectors"""

from app.connectors.warehouse_auth import AuthError, CredentialBroker
from app.connectors.warehouse_client import QueryError, WarehouseQueryClient
from app.connectors.channel_registry import ChannelConfig, get_channel, known_channels

__all__ = [
    "AuthError",
    "CredentialBroker",
    "QueryError",
    "WarehouseQueryClient",
    "ChannelConfig",
    "get_channel",
    "known_channels",
]
