"""HTTP client for the remote catalog service.

This module is the only place that talks to the catalog over HTTP. It turns
transport failures and status codes into the :mod:`shopsync.errors` taxonomy,
unwraps the several envelope shapes the service uses for collections, and knows
the endpoint layouts used to read and overwrite a variant's deliverables.

The remote answers collection requests in more than one envelope. The matchers
in :data:`ENVELOPE_MATCHERS` are tried in order and the first one producing a
list wins; that order is a compatibility contract with the service.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from . import log
from .constants import DEFAULT_MAX_PAGES, DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT_SECONDS, Resource
from .deliverables import join_deliverables, parse_deliverables
from .errors import (
    PermanentRemoteError,
    RateLimitError,
    RemoteNotFoundError,
    TransientRemoteError,
)


EnvelopeMatcher = Callable[[Any, str], Optional[List[Any]]]


def _bare_array(body: Any, resource: str) -> Optional[List[Any]]:
    return list(body) if isinstance(body, list) else None


def _data_array(body: Any, resource: str) -> Optional[List[Any]]:
    if isinstance(body, Mapping) and isinstance(body.get("data"), list):
        return list(body["data"])
    return None


def _nested_data_array(body: Any, resource: str) -> Optional[List[Any]]:
    if isinstance(body, Mapping):
        data = body.get("data")
        if isinstance(data, Mapping) and isinstance(data.get(resource), list):
            return list(data[resource])
    return None


def _resource_array(body: Any, resource: str) -> Optional[List[Any]]:
    if isinstance(body, Mapping) and isinstance(body.get(resource), list):
        return list(body[resource])
    return None


ENVELOPE_MATCHERS: Tuple[EnvelopeMatcher, ...] = (
    _bare_array,
    _data_array,
    _nested_data_array,
    _resource_array,
)


def unwrap_collection(body: Any, resource: str) -> Optional[List[Any]]:
    """Return the list carried by ``body`` or ``None`` when no envelope matches."""

    for matcher in ENVELOPE_MATCHERS:
        items = matcher(body, resource)
        if items is not None:
            return items
    return None


def _is_last_page(body: Any) -> bool:
    # Laravel style paginators report the end with an empty next_page_url.
    return isinstance(body, Mapping) and "next_page_url" in body and not body["next_page_url"]


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class CatalogClient:
    """Synchronous client for the catalog's REST API.

    Args:
        base_url (str): Root of the API, e.g. ``https://shop.example/api/``.
        api_key (str): Key sent in both ``Authorization`` and ``X-API-Key``
            headers (the service expects it without a ``Bearer`` prefix).
        shop_id (str): Optional shop identifier. Shop-scoped endpoint layouts
            are only used when it is set.
        timeout_seconds (float): Per-request timeout.
        transport (httpx.BaseTransport | None): Optional transport override,
            mainly for tests with :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        shop_id: str = "",
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/") + "/"
        self.shop_id = str(shop_id or "")
        self.timeout_seconds = timeout_seconds

        headers: Dict[str, str] = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if api_key:
            headers["Authorization"] = api_key
            headers["X-API-Key"] = api_key

        self._http = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    def __enter__(self) -> "CatalogClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    # -- raw verbs --

    def get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """GET ``path`` and return the decoded body.

        Raises:
            TransientRemoteError: On timeouts, network failures and 5xx.
            RateLimitError: On 429.
            RemoteNotFoundError: On 404.
            PermanentRemoteError: On any other non-success status.
        """
        return self._request("GET", path, params=params)

    def put(self, path: str, body: Any) -> Any:
        """PUT a JSON ``body`` to ``path``; errors are classified as for :meth:`get`."""
        return self._request("PUT", path, json=body)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        try:
            response = self._http.request(method, path, params=params, json=json)
        except httpx.TimeoutException as exc:
            log.warning("%s %s timed out after %.1fs", method, path, self.timeout_seconds)
            raise TransientRemoteError(f"{method} {path} timed out", path=path) from exc
        except httpx.TransportError as exc:
            log.warning("%s %s failed: %s", method, path, exc)
            raise TransientRemoteError(f"{method} {path} failed: {exc}", path=path) from exc

        log.debug("%s %s -> %d", method, path, response.status_code)
        self._raise_for_status(method, path, response)
        return self._decode(response)

    @staticmethod
    def _raise_for_status(method: str, path: str, response: httpx.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        message = f"{method} {path} returned HTTP {status}"
        if status == 429:
            raise RateLimitError(
                message,
                path=path,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise TransientRemoteError(message, status=status, path=path)
        if status == 404:
            raise RemoteNotFoundError(message, status=status, path=path)
        raise PermanentRemoteError(message, status=status, path=path)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            # Some deliverable endpoints answer with plain text.
            return response.text

    # -- collections --

    def resource_path(self, resource: str) -> str:
        if self.shop_id:
            return f"shops/{self.shop_id}/{resource}"
        return resource

    def get_all_pages(
        self,
        resource: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Any]:
        """Fetch every page of a collection and concatenate them in server order.

        Pages are requested as ``page=1, 2, ...`` with ``perPage=page_size``.
        The loop stops on the first empty page, on an explicit end marker, or
        once ``max_pages`` pages have been read, whichever comes first.

        Args:
            resource (str): Collection name, e.g. ``"products"``.
            page_size (int): Requested items per page.
            max_pages (int): Hard cap on the number of requests.
            params (Mapping[str, Any] | None): Extra query parameters.

        Returns:
            list[Any]: Raw collection items.

        Raises:
            RemoteError: Any page failure propagates to the caller.
        """

        path = self.resource_path(resource)
        items: List[Any] = []
        for page in range(1, max_pages + 1):
            query: Dict[str, Any] = dict(params or {})
            query.update(page=page, perPage=page_size)
            body = self.get(path, query)
            page_items = unwrap_collection(body, resource) or []
            if not page_items:
                log.debug("%s page %d is empty; stopping", resource, page)
                break
            items.extend(page_items)
            log.debug("%s page %d: +%d items (total %d)", resource, page, len(page_items), len(items))
            if _is_last_page(body):
                break
        else:
            log.warning("Stopped reading %s after the %d page budget", resource, max_pages)
        log.info("Fetched %d %s", len(items), resource)
        return items

    def list_products(self, page_size: int = DEFAULT_PAGE_SIZE, max_pages: int = DEFAULT_MAX_PAGES) -> List[Any]:
        return self.get_all_pages(Resource.PRODUCTS.value, page_size, max_pages)

    def list_invoices(self, page_size: int = DEFAULT_PAGE_SIZE, max_pages: int = DEFAULT_MAX_PAGES) -> List[Any]:
        return self.get_all_pages(Resource.INVOICES.value, page_size, max_pages)

    # -- deliverables --

    def deliverable_paths(self, product_id: str, variant_id: str) -> Sequence[str]:
        """Endpoint layouts for reading a variant's deliverables, in priority order."""

        paths: List[str] = []
        if self.shop_id:
            paths.append(f"shops/{self.shop_id}/products/{product_id}/deliverables/{variant_id}")
        paths.append(f"products/{product_id}/deliverables/{variant_id}")
        if self.shop_id:
            paths.append(f"shops/{self.shop_id}/products/{product_id}/variants/{variant_id}/deliverables")
        return paths

    def overwrite_path(self, product_id: str, variant_id: str) -> str:
        prefix = f"shops/{self.shop_id}/" if self.shop_id else ""
        return f"{prefix}products/{product_id}/deliverables/overwrite/{variant_id}"

    def fetch_deliverables(self, product_id: str, variant_id: str, *, missing_ok: bool = True) -> List[str]:
        """Read the authoritative deliverable list of one variant.

        Endpoint layouts are tried in order and the first successful answer is
        parsed. A 404 from every layout is reported as an empty list: the
        service answers 404 for variants that have never been stocked.

        Note:
            This leniency cannot tell an empty variant from a wrong endpoint or
            a permission problem. It is kept for compatibility with the service.

        Args:
            product_id (str): Product identifier.
            variant_id (str): Variant identifier.
            missing_ok (bool): When ``False``, a 404 from every layout raises
                :class:`RemoteNotFoundError` instead of returning ``[]``.

        Raises:
            RemoteNotFoundError: If every layout answered 404 and
                ``missing_ok`` is ``False``.
            RemoteError: Any failure other than 404 propagates immediately.
        """

        paths = self.deliverable_paths(product_id, variant_id)
        for path in paths:
            try:
                body = self.get(path)
            except RemoteNotFoundError:
                log.debug("No deliverables at %s", path)
                continue
            return parse_deliverables(body)
        if not missing_ok:
            raise RemoteNotFoundError(
                f"No deliverables endpoint knows {product_id}/{variant_id}",
                status=404,
                path=paths[-1],
            )
        log.info("Every deliverables endpoint answered 404 for %s/%s; treating as zero stock", product_id, variant_id)
        return []

    def overwrite_deliverables(self, product_id: str, variant_id: str, items: Sequence[str]) -> Any:
        """Replace the full deliverable list of one variant.

        The service has no partial delete, so the complete remaining list is
        always resubmitted.
        """

        path = self.overwrite_path(product_id, variant_id)
        result = self.put(path, {"deliverables": join_deliverables(items)})
        log.info("Overwrote deliverables of %s/%s with %d items", product_id, variant_id, len(items))
        return result


__all__ = ["CatalogClient", "ENVELOPE_MATCHERS", "unwrap_collection"]
