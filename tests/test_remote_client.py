"""HTTP-level tests for the catalog client using ``httpx.MockTransport``."""

from __future__ import annotations

import json

import httpx
import pytest

from shopsync.errors import (
    PermanentRemoteError,
    RateLimitError,
    RemoteNotFoundError,
    TransientRemoteError,
)
from shopsync.remote_client import CatalogClient, unwrap_collection

BASE_URL = "https://catalog.test/api/"


def make_client(handler, **kwargs) -> CatalogClient:
    return CatalogClient(BASE_URL, "secret-key", transport=httpx.MockTransport(handler), **kwargs)


def test_requests_carry_key_headers_without_bearer_prefix():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    with make_client(handler) as client:
        client.get("products")

    assert seen[0].headers["Authorization"] == "secret-key"
    assert seen[0].headers["X-API-Key"] == "secret-key"
    assert seen[0].headers["Accept"] == "application/json"
    assert str(seen[0].url) == "https://catalog.test/api/products"


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (429, RateLimitError),
        (500, TransientRemoteError),
        (503, TransientRemoteError),
        (404, RemoteNotFoundError),
        (401, PermanentRemoteError),
        (422, PermanentRemoteError),
    ],
)
def test_status_codes_are_classified(status, expected):
    client = make_client(lambda request: httpx.Response(status, json={"error": "x"}))

    with pytest.raises(expected) as excinfo:
        client.get("products")

    assert excinfo.value.status == status
    assert excinfo.value.path == "products"


def test_rate_limit_reads_numeric_retry_after():
    client = make_client(lambda request: httpx.Response(429, headers={"Retry-After": "20"}))

    with pytest.raises(RateLimitError) as excinfo:
        client.get("products")

    assert excinfo.value.retry_after == 20.0


def test_network_failures_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientRemoteError):
        make_client(handler).get("products")


def test_timeouts_are_transient():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(TransientRemoteError):
        make_client(handler).get("products")


def test_non_json_bodies_are_returned_as_text():
    client = make_client(lambda request: httpx.Response(200, text="KEY-1\nKEY-2"))

    assert client.get("anything") == "KEY-1\nKEY-2"


@pytest.mark.parametrize(
    "body",
    [
        [{"id": 1}],
        {"data": [{"id": 1}]},
        {"data": {"products": [{"id": 1}]}},
        {"products": [{"id": 1}]},
    ],
)
def test_unwrap_collection_envelopes(body):
    assert unwrap_collection(body, "products") == [{"id": 1}]


def test_unwrap_collection_prefers_data_array_over_resource_key():
    body = {"data": [{"id": "from-data"}], "products": [{"id": "from-key"}]}

    assert unwrap_collection(body, "products") == [{"id": "from-data"}]


def test_unwrap_collection_returns_none_for_unknown_shapes():
    assert unwrap_collection({"total": 3}, "products") is None
    assert unwrap_collection("text", "products") is None


def test_get_all_pages_stops_on_first_empty_page():
    pages = {1: 100, 2: 100, 3: 0}
    seen = []

    def handler(request):
        page = int(request.url.params["page"])
        seen.append((page, int(request.url.params["perPage"])))
        return httpx.Response(200, json={"data": [{"id": f"{page}-{i}"} for i in range(pages[page])]})

    items = make_client(handler).get_all_pages("products", page_size=100)

    assert len(items) == 200
    assert seen == [(1, 100), (2, 100), (3, 100)]
    assert items[0] == {"id": "1-0"}
    assert items[-1] == {"id": "2-99"}


def test_get_all_pages_honours_end_marker():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"data": [{"id": 1}], "next_page_url": None})

    items = make_client(handler).get_all_pages("invoices")

    assert items == [{"id": 1}]
    assert len(calls) == 1


def test_get_all_pages_respects_page_budget():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=[{"id": len(calls)}])

    items = make_client(handler).get_all_pages("products", max_pages=3)

    assert len(calls) == 3
    assert items == [{"id": 1}, {"id": 2}, {"id": 3}]


def test_get_all_pages_propagates_errors():
    with pytest.raises(PermanentRemoteError):
        make_client(lambda request: httpx.Response(403)).get_all_pages("products")


def test_shop_scoped_collection_path():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json=[])

    make_client(handler, shop_id="77").list_products()

    assert seen == ["/api/shops/77/products"]


def test_fetch_deliverables_falls_back_through_layouts():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        if request.url.path.endswith("/variants/V1/deliverables"):
            return httpx.Response(200, json={"items": ["a", "b"]})
        return httpx.Response(404)

    items = make_client(handler, shop_id="77").fetch_deliverables("P1", "V1")

    assert items == ["a", "b"]
    assert seen == [
        "/api/shops/77/products/P1/deliverables/V1",
        "/api/products/P1/deliverables/V1",
        "/api/shops/77/products/P1/variants/V1/deliverables",
    ]


def test_fetch_deliverables_treats_404_everywhere_as_empty():
    assert make_client(lambda request: httpx.Response(404)).fetch_deliverables("P1", "V1") == []


def test_fetch_deliverables_can_report_unknown_variants():
    with pytest.raises(RemoteNotFoundError):
        make_client(lambda request: httpx.Response(404)).fetch_deliverables("P1", "V1", missing_ok=False)


def test_fetch_deliverables_propagates_other_errors():
    with pytest.raises(RateLimitError):
        make_client(lambda request: httpx.Response(429)).fetch_deliverables("P1", "V1")


def test_overwrite_deliverables_puts_joined_list():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True})

    make_client(handler, shop_id="77").overwrite_deliverables("P1", "V1", ["a", "b"])

    assert seen[0].method == "PUT"
    assert seen[0].url.path == "/api/shops/77/products/P1/deliverables/overwrite/V1"
    assert json.loads(seen[0].content) == {"deliverables": "a\nb"}


def test_base_url_is_required():
    with pytest.raises(ValueError):
        CatalogClient("")
