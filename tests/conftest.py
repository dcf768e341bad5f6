"""Shared pytest fixtures and utilities for shopsync tests."""

from __future__ import annotations

import json
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import httpx
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from shopsync import constants, core_logic, data_manager  # noqa: E402
from shopsync.data_manager import CacheEntry, VariantEntry  # noqa: E402

BASE_URL = "https://catalog.test/api/"
_BASE_PATH = "/api/"
_CONFIG_TEMPLATE = (
    "[Remote]\n"
    "BaseUrl = {base_url}\n"
    "ApiKey = {api_key}\n"
    "ShopId = {shop_id}\n"
    "Timeout = 5\n\n"
    "[Storage]\n"
    "CacheFile = {cache_file}\n"
    "LedgerFile = {ledger_file}\n\n"
    "[Sync]\n"
    "RequestDelay = {request_delay}\n"
    "RateLimitBackoff = {rate_limit_backoff}\n"
    "MaxRetries = {max_retries}\n"
    "PageSize = {page_size}\n"
    "MaxPages = 50\n"
    "ProgressInterval = 0\n"
)


@dataclass
class FakeCatalogServer:
    """In-memory stand-in for the remote catalog, served via ``httpx.MockTransport``.

    Only the unscoped endpoint layouts are routed. ``fail`` queues error
    statuses for a ``(method, path)`` pair; each matching request consumes
    one before normal routing.
    """

    products: List[Dict[str, Any]] = field(default_factory=list)
    invoices: List[Dict[str, Any]] = field(default_factory=list)
    deliverables: Dict[Tuple[str, str], List[str]] = field(default_factory=dict)
    requests: List[httpx.Request] = field(default_factory=list)
    failures: Dict[Tuple[str, str], List[int]] = field(default_factory=dict)

    def fail(self, method: str, path: str, status: int, times: int = 1) -> None:
        self.failures.setdefault((method, path), []).extend([status] * times)

    def stock(self, product_id: str, variant_id: str, items: List[str]) -> None:
        self.deliverables[(product_id, variant_id)] = list(items)

    def requested_paths(self, method: Optional[str] = None) -> List[str]:
        return [
            request.url.path[len(_BASE_PATH):]
            for request in self.requests
            if method is None or request.method == method
        ]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path[len(_BASE_PATH):]
        queued = self.failures.get((request.method, path))
        if queued:
            return httpx.Response(queued.pop(0), json={"error": "injected"})

        parts = path.split("/")
        if request.method == "GET" and path in ("products", "invoices"):
            return self._page(request, self.products if path == "products" else self.invoices)
        if request.method == "GET" and len(parts) == 4 and parts[0] == "products" and parts[2] == "deliverables":
            items = self.deliverables.get((parts[1], parts[3]))
            if items is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json={"deliverables": "\n".join(items)})
        if request.method == "PUT" and len(parts) == 5 and parts[3] == "overwrite":
            body = json.loads(request.content)
            self.deliverables[(parts[1], parts[4])] = [
                line for line in body["deliverables"].split("\n") if line.strip()
            ]
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"error": "unknown route"})

    @staticmethod
    def _page(request: httpx.Request, collection: List[Dict[str, Any]]) -> httpx.Response:
        page = int(request.url.params["page"])
        per_page = int(request.url.params["perPage"])
        start = (page - 1) * per_page
        return httpx.Response(200, json={"data": collection[start:start + per_page]})


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    cache_path: Path
    ledger_path: Path


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(autouse=True)
def _clear_api_key_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(constants.API_KEY_ENV_VAR, raising=False)


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes ``config.ini`` bundles on demand."""

    def _create_config(
        *,
        base_url: str = BASE_URL,
        api_key: str = "secret-key",
        shop_id: str = "",
        request_delay: float = 5,
        rate_limit_backoff: float = 15,
        max_retries: int = 3,
        page_size: int = 100,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                base_url=base_url,
                api_key=api_key,
                shop_id=shop_id,
                cache_file="variantsData.json",
                ledger_file="replaceHistory.json",
                request_delay=request_delay,
                rate_limit_backoff=rate_limit_backoff,
                max_retries=max_retries,
                page_size=page_size,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            cache_path=bundle_dir / "variantsData.json",
            ledger_path=bundle_dir / "replaceHistory.json",
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    return config_factory()


@pytest.fixture
def catalog_server() -> FakeCatalogServer:
    return FakeCatalogServer()


@pytest.fixture
def sleep_calls() -> List[float]:
    return []


@pytest.fixture
def runtime_context(
    config_bundle: ConfigBundle,
    catalog_server: FakeCatalogServer,
    sleep_calls: List[float],
) -> Iterator[core_logic.RuntimeContext]:
    """Load a runtime context wired to the in-memory catalog."""

    context = core_logic.load_runtime_context(
        config_bundle.config_path,
        transport=catalog_server.transport(),
        sleep=sleep_calls.append,
    )
    try:
        yield context
    finally:
        core_logic.close_context(context)


@pytest.fixture
def seed_cache(runtime_context: core_logic.RuntimeContext) -> Callable[..., None]:
    """Write one cached variant directly through the cache store."""

    def _seed(product_id: str, variant_id: str, stock: Any, *, product_name: str = "Game Keys", variant_name: str = "Steam") -> None:
        entries = runtime_context.cache.load()
        entry = entries.get(product_id, CacheEntry(product_id=product_id, product_name=product_name))
        variants = dict(entry.variants)
        variants[variant_id] = VariantEntry(variant_id=variant_id, variant_name=variant_name, stock=stock)
        entries[product_id] = CacheEntry(product_id=product_id, product_name=entry.product_name, variants=variants)
        runtime_context.cache.save(entries)

    return _seed


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


@pytest.fixture
def make_ledger_record() -> Callable[..., data_manager.LedgerRecord]:
    def _make(
        items: Tuple[str, ...] = ("a", "b"),
        *,
        product_id: str = "P1",
        variant_id: str = "V1",
        timestamp: str = "2024-01-01T00:00:00+00:00",
    ) -> data_manager.LedgerRecord:
        return data_manager.LedgerRecord(
            timestamp=timestamp,
            product_id=product_id,
            product_name="Game Keys",
            variant_id=variant_id,
            variant_name="Steam",
            removed_items=tuple(items),
        )

    return _make
