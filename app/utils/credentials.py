"""Resolve warehouse service-account credentials.

The key can come from three places, checked in order:

    1. The request payload (service_account_key), as a JSON object or text
    2. settings.google_service_account_json (.env / environment)
    3. GOOGLE_SERVICE_ACCOUNT_JSON, then the shared GOOGLE_SA_JSON env var

Key material is never logged; only the source it was taken from.
"""
import os
from typing import Any, Dict, Optional, Union

from app.config import get_settings
from app.connectors.warehouse_auth import AuthError, load_service_account
from app.utils.logger import log

_ENV_VARS = ("GOOGLE_SERVICE_ACCOUNT_JSON", "GOOGLE_SA_JSON")


def _is_json(value: str) -> bool:
    """Check if a string looks like JSON content (not a file path)."""
    stripped = value.strip()
    return stripped.startswith("{") and stripped.endswith("}")


def resolve_service_account(request_value: Union[str, Dict[str, Any], None] = None) -> Dict[str, Any]:
    """Return the first available service account key as a dict."""
    if request_value:
        log.debug("Using service account key from request")
        return load_service_account(request_value)

    configured = get_settings().google_service_account_json
    if configured:
        log.debug("Using service account key from settings")
        return load_service_account(configured)

    for var in _ENV_VARS:
        value = os.environ.get(var, "")
        if value and _is_json(value):
            log.debug(f"Using service account key from {var}")
            return load_service_account(value)

    raise AuthError(
        "No service account key: pass service_account_key or set GOOGLE_SERVICE_ACCOUNT_JSON"
    )


def resolve_project_id(request_project: Optional[str], service_account: Dict[str, Any]) -> str:
    """Request value, then the key's project_id, then settings.warehouse_project_id"""
    project_id = request_project or service_account.get("project_id") or get_settings().warehouse_project_id
    if not project_id:
        raise AuthError("No warehouse project id: pass project_id or include it in the service account key")
    return project_id
