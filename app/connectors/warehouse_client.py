"""
BigQuery SQL-over-HTTP client

Runs standard-SQL queries through the jobs.query endpoint, follows pageToken
through jobs.getQueryResults and decodes the column-oriented response
(schema.fields + rows[].f[].v) into plain dicts.

SQL is only ever assembled from registry values and validated identifiers;
request values are never interpolated as literals. Retry policy belongs to
the caller.
"""
import re
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from app.config import get_settings
from app.utils.logger import log

settings = get_settings()

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


class QueryError(Exception):
    """Warehouse-side query failure, carrying the vendor message"""

    def __init__(self, message: str, status: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.reason = reason


def validate_identifier(value: str, kind: str = "identifier") -> str:
    """Reject anything that is not a bare project/dataset/table/column name."""
    if not isinstance(value, str) or not _IDENTIFIER_RE.match(value):
        raise ValueError(f"Invalid {kind}: {value!r}")
    return value


def table_ref(project_id: str, dataset: str, table: str) -> str:
    """Fully qualified, backtick-quoted table reference"""
    return "`{}.{}.{}`".format(
        validate_identifier(project_id, "project id"),
        validate_identifier(dataset, "dataset"),
        validate_identifier(table, "table"),
    )


def page_query(project_id: str, dataset: str, table: str, order_by: str,
               limit: int, offset: int = 0) -> str:
    """SELECT * page ordered by a stable key"""
    return (
        f"SELECT * FROM {table_ref(project_id, dataset, table)} "
        f"ORDER BY `{validate_identifier(order_by, 'column')}` "
        f"LIMIT {int(limit)} OFFSET {int(offset)}"
    )


def count_query(project_id: str, dataset: str, table: str) -> str:
    return f"SELECT COUNT(*) AS total_count FROM {table_ref(project_id, dataset, table)}"


def incremental_query(project_id: str, dataset: str, table: str, timestamp_field: str,
                      limit: int, since_param: Optional[str] = None) -> str:
    """
    Rows ordered by a timestamp column, optionally newer than @<since_param>.

    The watermark value itself is bound as a query parameter, never inlined.
    """
    column = f"`{validate_identifier(timestamp_field, 'column')}`"
    where = ""
    if since_param:
        where = f"WHERE SAFE_CAST({column} AS TIMESTAMP) > @{validate_identifier(since_param, 'parameter')} "
    return (
        f"SELECT * FROM {table_ref(project_id, dataset, table)} "
        f"{where}ORDER BY {column} LIMIT {int(limit)}"
    )


def _decode_value(value: Any, field: Optional[Dict[str, Any]]) -> Any:
    if value is None or field is None:
        return value

    if field.get("mode") == "REPEATED" and isinstance(value, list):
        inner = dict(field, mode="NULLABLE")
        return [_decode_value(item.get("v") if isinstance(item, dict) else item, inner) for item in value]

    if field.get("type") in ("RECORD", "STRUCT") and isinstance(value, dict):
        subfields = field.get("fields") or []
        cells = value.get("f") or []
        return {
            (subfields[i].get("name") if i < len(subfields) else f"col_{i}"):
                _decode_value(cell.get("v"), subfields[i] if i < len(subfields) else None)
            for i, cell in enumerate(cells)
        }

    return value


def decode_rows(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Turn a jobs.query response into a list of dicts keyed by field name.

    Scalars are returned as the API sends them (strings); numeric coercion is
    the mapper's job.
    """
    fields = (payload.get("schema") or {}).get("fields") or []
    rows = payload.get("rows") or []

    decoded = []
    for row in rows:
        cells = row.get("f") or []
        obj = {}
        for index, cell in enumerate(cells):
            field = fields[index] if index < len(fields) else None
            name = field.get("name") if field else f"col_{index}"
            obj[name] = _decode_value(cell.get("v"), field)
        decoded.append(obj)
    return decoded


class WarehouseQueryClient:
    """Thin async client for BigQuery jobs.query and jobs.getQueryResults"""

    def __init__(
        self,
        access_token: str,
        project_id: str,
        session: Optional[aiohttp.ClientSession] = None,
        api_base: Optional[str] = None,
    ):
        self.access_token = access_token
        self.project_id = validate_identifier(project_id, "project id")
        self.api_base = (api_base or settings.warehouse_api_base).rstrip("/")
        self._session = session

    @property
    def query_url(self) -> str:
        return f"{self.api_base}/projects/{self.project_id}/queries"

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def query(
        self,
        sql: str,
        max_results: int = 10000,
        parameters: Optional[Dict[str, Tuple[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Execute SQL and return at most max_results decoded rows.

        parameters maps name -> (BigQuery type, value) and is sent as NAMED
        query parameters, referenced in the SQL as @name. When the first
        response is cut short by the API's byte limit, the remaining pages
        are read from jobs.getQueryResults.
        """
        body = {
            "query": sql,
            "useLegacySql": False,
            "maxResults": int(max_results),
            "timeoutMs": settings.query_timeout_ms,
        }
        if parameters:
            body["parameterMode"] = "NAMED"
            body["queryParameters"] = [
                {
                    "name": name,
                    "parameterType": {"type": param_type},
                    "parameterValue": {"value": None if value is None else str(value)},
                }
                for name, (param_type, value) in parameters.items()
            ]
        log.debug(f"Executing warehouse query: {sql[:300]}")

        if self._session is not None:
            return await self._collect(self._session, body, int(max_results))
        timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            return await self._collect(session, body, int(max_results))

    async def count(self, dataset: str, table: str) -> int:
        rows = await self.query(count_query(self.project_id, dataset, table), max_results=1)
        if not rows:
            return 0
        try:
            return int(rows[0].get("total_count") or 0)
        except (TypeError, ValueError):
            return 0

    async def _collect(self, session, body: Dict[str, Any], limit: int) -> List[Dict[str, Any]]:
        payload = await self._request(session.post, self.query_url, json=body)
        schema = payload.get("schema")
        rows = decode_rows(payload)

        job = payload.get("jobReference") or {}
        token = payload.get("pageToken")
        while token and job.get("jobId") and len(rows) < limit:
            params = {
                "pageToken": token,
                "maxResults": str(limit - len(rows)),
                "timeoutMs": str(settings.query_timeout_ms),
            }
            if job.get("location"):
                params["location"] = job["location"]
            log.debug(f"Fetching next result page of job {job['jobId']}")
            payload = await self._request(session.get, f"{self.query_url}/{job['jobId']}", params=params)
            if not payload.get("schema"):
                payload = dict(payload, schema=schema)
            rows.extend(decode_rows(payload))
            token = payload.get("pageToken")

        return rows[:limit]

    async def _request(self, send, url: str, **kwargs) -> Dict[str, Any]:
        """One round trip; vendor errors and unfinished jobs raise QueryError"""
        try:
            async with send(url, headers=self.headers, **kwargs) as response:
                status = response.status
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = {"error": {"message": (await response.text())[:500]}}
        except aiohttp.ClientError as e:
            raise QueryError(f"Warehouse request failed: {e}") from e

        if not isinstance(payload, dict):
            payload = {"error": {"message": str(payload)[:500]}}

        error = payload.get("error")
        if error or status < 200 or status >= 300:
            if isinstance(error, dict):
                message = error.get("message") or str(error)
                reason = ((error.get("errors") or [{}])[0]).get("reason")
            else:
                message = str(error or payload)
                reason = None
            raise QueryError(f"BigQuery error: {message}", status=status, reason=reason)

        if payload.get("jobComplete") is False:
            raise QueryError("BigQuery error: query did not complete within timeout", status=status, reason="timeout")

        return payload
