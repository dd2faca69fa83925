"""
Connector integration records

One row per tenant connector. The BigQuery integration is created lazily on
the first sync run for a tenant.
"""
import uuid

from sqlalchemy import Column, String, DateTime, JSON, Text

from app.models.base import Base
from app.utils.helpers import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class Integration(Base):
    """Per-tenant connector configuration"""
    __tablename__ = "connector_integrations"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String, index=True, nullable=False)

    connector_type = Column(String, index=True, nullable=False)  # bigquery
    connector_name = Column(String, nullable=True)
    status = Column(String, index=True, default="pending")  # pending, active, error
    settings = Column(JSON, nullable=True)  # {project_id, channels, ...}
    error_message = Column(Text, nullable=True)

    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
