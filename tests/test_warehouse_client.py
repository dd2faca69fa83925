"""
Warehouse query client tests: SQL assembly, response decoding and vendor
error handling. HTTP is stubbed with an in-memory session.
"""
import asyncio

import aiohttp
import pytest

from app.connectors.warehouse_client import (
    QueryError,
    WarehouseQueryClient,
    count_query,
    decode_rows,
    incremental_query,
    page_query,
    validate_identifier,
)


def _run(coro):
    return asyncio.run(coro)


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def json(self, content_type=None):
        return self._body

    async def text(self):
        return str(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """post answers jobs.query; get replays later result pages in order"""

    def __init__(self, response=None, error=None, pages=()):
        self.response = response
        self.error = error
        self.pages = list(pages)
        self.calls = []
        self.page_calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def get(self, url, **kwargs):
        self.page_calls.append((url, kwargs))
        return self.pages.pop(0)


ORDERS_PAYLOAD = {
    "kind": "bigquery#queryResponse",
    "jobComplete": True,
    "schema": {
        "fields": [
            {"name": "order_sn", "type": "STRING", "mode": "NULLABLE"},
            {"name": "total_amount", "type": "NUMERIC", "mode": "NULLABLE"},
            {
                "name": "items",
                "type": "RECORD",
                "mode": "REPEATED",
                "fields": [
                    {"name": "sku", "type": "STRING"},
                    {"name": "quantity", "type": "INTEGER"},
                ],
            },
            {"name": "tags", "type": "STRING", "mode": "REPEATED"},
        ]
    },
    "rows": [
        {"f": [
            {"v": "A1"},
            {"v": "150000"},
            {"v": [{"v": {"f": [{"v": "TS-01"}, {"v": "2"}]}}]},
            {"v": [{"v": "gift"}, {"v": "cod"}]},
        ]},
        {"f": [{"v": "A2"}, {"v": None}, {"v": []}, {"v": []}]},
    ],
    "totalRows": "2",
}


def _client(session):
    return WarehouseQueryClient("token-123", "menstay-analytics", session=session,
                                api_base="https://bq.example.test/v2")


# ────────────────────────────────────────────
# SQL
# ────────────────────────────────────────────


def test_page_query():
    sql = page_query("menstay-analytics", "menstaysimplicity_shopee", "shopee_Orders", "order_sn", 2000, 4000)
    assert sql == (
        "SELECT * FROM `menstay-analytics.menstaysimplicity_shopee.shopee_Orders` "
        "ORDER BY `order_sn` LIMIT 2000 OFFSET 4000"
    )


def test_count_query():
    assert count_query("p", "d", "t") == "SELECT COUNT(*) AS total_count FROM `p.d.t`"


def test_incremental_query_binds_watermark():
    sql = incremental_query("p", "d", "t", "updated_at", 500, since_param="since")
    assert "@since" in sql
    assert sql.endswith("ORDER BY `updated_at` LIMIT 500")
    assert "WHERE" not in incremental_query("p", "d", "t", "updated_at", 500)


@pytest.mark.parametrize("value", ["a.b", "x`; DROP TABLE y", "", "a b", None])
def test_invalid_identifiers_rejected(value):
    with pytest.raises(ValueError):
        validate_identifier(value)


# ────────────────────────────────────────────
# DECODING
# ────────────────────────────────────────────


def test_decode_rows_nested_and_repeated():
    rows = decode_rows(ORDERS_PAYLOAD)
    assert rows[0] == {
        "order_sn": "A1",
        "total_amount": "150000",
        "items": [{"sku": "TS-01", "quantity": "2"}],
        "tags": ["gift", "cod"],
    }
    assert rows[1]["total_amount"] is None
    assert rows[1]["items"] == []


def test_decode_rows_without_schema_uses_positions():
    rows = decode_rows({"rows": [{"f": [{"v": "x"}, {"v": "y"}]}]})
    assert rows == [{"col_0": "x", "col_1": "y"}]


def test_decode_empty():
    assert decode_rows({"jobComplete": True}) == []


# ────────────────────────────────────────────
# QUERY
# ────────────────────────────────────────────


def test_query_request_and_rows():
    session = FakeSession(FakeResponse(200, ORDERS_PAYLOAD))
    rows = _run(_client(session).query("SELECT 1", max_results=10))

    assert [r["order_sn"] for r in rows] == ["A1", "A2"]
    url, kwargs = session.calls[0]
    assert url == "https://bq.example.test/v2/projects/menstay-analytics/queries"
    assert kwargs["json"]["useLegacySql"] is False
    assert kwargs["json"]["maxResults"] == 10
    assert kwargs["headers"]["Authorization"] == "Bearer token-123"
    assert "queryParameters" not in kwargs["json"]


def test_query_truncates_to_max_results():
    session = FakeSession(FakeResponse(200, ORDERS_PAYLOAD))
    assert len(_run(_client(session).query("SELECT 1", max_results=1))) == 1


def _page(order_sn, token=None, schema=True):
    payload = {"jobComplete": True, "rows": [{"f": [{"v": order_sn}]}]}
    if schema:
        payload["schema"] = {"fields": [{"name": "order_sn", "type": "STRING"}]}
        payload["jobReference"] = {"projectId": "menstay-analytics", "jobId": "job_42", "location": "asia-southeast1"}
    if token:
        payload["pageToken"] = token
    return payload


def test_query_follows_page_tokens():
    session = FakeSession(
        FakeResponse(200, _page("A1", token="tok-1")),
        pages=[FakeResponse(200, _page("A2", schema=False))],
    )

    rows = _run(_client(session).query("SELECT 1", max_results=10))

    assert [r["order_sn"] for r in rows] == ["A1", "A2"]
    url, kwargs = session.page_calls[0]
    assert url == "https://bq.example.test/v2/projects/menstay-analytics/queries/job_42"
    assert kwargs["params"]["pageToken"] == "tok-1"
    assert kwargs["params"]["maxResults"] == "9"
    assert kwargs["params"]["location"] == "asia-southeast1"
    assert kwargs["headers"]["Authorization"] == "Bearer token-123"


def test_query_stops_paging_at_max_results():
    session = FakeSession(
        FakeResponse(200, _page("A1", token="tok-1")),
        pages=[FakeResponse(200, _page("A2", token="tok-2", schema=False))],
    )

    rows = _run(_client(session).query("SELECT 1", max_results=2))

    assert [r["order_sn"] for r in rows] == ["A1", "A2"]
    assert len(session.page_calls) == 1


def test_error_on_a_later_page():
    session = FakeSession(
        FakeResponse(200, _page("A1", token="tok-1")),
        pages=[FakeResponse(500, {"error": {"message": "backendError"}})],
    )
    with pytest.raises(QueryError, match="backendError") as exc:
        _run(_client(session).query("SELECT 1"))
    assert exc.value.status == 500


def test_query_parameters_are_sent_named():
    session = FakeSession(FakeResponse(200, {"jobComplete": True}))
    _run(_client(session).query("SELECT 1", parameters={"since": ("TIMESTAMP", "2024-01-01T00:00:00+00:00")}))

    body = session.calls[0][1]["json"]
    assert body["parameterMode"] == "NAMED"
    assert body["queryParameters"] == [{
        "name": "since",
        "parameterType": {"type": "TIMESTAMP"},
        "parameterValue": {"value": "2024-01-01T00:00:00+00:00"},
    }]


def test_vendor_error_raises_query_error():
    body = {"error": {"code": 404, "message": "Not found: Dataset menstay-analytics:nope",
                      "errors": [{"reason": "notFound"}]}}
    session = FakeSession(FakeResponse(404, body))

    with pytest.raises(QueryError) as exc:
        _run(_client(session).query("SELECT 1"))

    assert "Not found" in str(exc.value)
    assert exc.value.status == 404
    assert exc.value.reason == "notFound"


def test_error_object_with_200_status():
    session = FakeSession(FakeResponse(200, {"error": {"message": "quota exceeded"}}))
    with pytest.raises(QueryError, match="quota exceeded"):
        _run(_client(session).query("SELECT 1"))


def test_incomplete_job():
    session = FakeSession(FakeResponse(200, {"jobComplete": False}))
    with pytest.raises(QueryError, match="did not complete"):
        _run(_client(session).query("SELECT 1"))


def test_transport_error():
    session = FakeSession(error=aiohttp.ClientConnectionError("reset by peer"))
    with pytest.raises(QueryError, match="reset by peer"):
        _run(_client(session).query("SELECT 1"))


def test_count():
    payload = {
        "jobComplete": True,
        "schema": {"fields": [{"name": "total_count", "type": "INTEGER"}]},
        "rows": [{"f": [{"v": "12345"}]}],
    }
    session = FakeSession(FakeResponse(200, payload))
    assert _run(_client(session).count("menstaysimplicity_shopee", "shopee_Orders")) == 12345
    assert "COUNT(*) AS total_count" in session.calls[0][1]["json"]["query"]


def test_invalid_project_id():
    with pytest.raises(ValueError):
        WarehouseQueryClient("t", "bad project")
