"""Full reconciliation of the stock cache against the remote catalog.

A sync run lists every product, normalises its variants, adds variants that
only appear in past invoices (for example delisted products), and then reads
the authoritative deliverable list of every variant one at a time. The stock
cache is replaced in one write at the end, so a crash or a fatal listing error
leaves the previous cache untouched.

Requests are spaced by a fixed delay because the catalog rate limits
aggressively. Rate-limit and transient failures on a single variant are
retried with an incrementing backoff; when retries run out, or on any other
per-variant error, that variant is recorded with zero stock and the run
carries on.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from . import log
from .data_manager import CacheEntry, ConfigSettings, LocalCache, ResourceLocks, VariantEntry
from .constants import LockName
from .errors import RemoteNotFoundError, ShopSyncError, SyncInProgressError
from .remote_client import CatalogClient
from .retry_policy import RetryPolicy, sync_policy


_INVOICE_LINE_KEYS = ("items", "products", "line_items", "cart")


@dataclass(frozen=True)
class VariantRef:
    """A (product, variant) pair scheduled for a stock read."""

    product_id: str
    product_name: str
    variant_id: str
    variant_name: str


@dataclass(frozen=True)
class SyncProgress:
    """Snapshot handed to the progress sink."""

    processed: int
    total: int
    elapsed_seconds: float

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 100
        return round(self.processed * 100 / self.total)


ProgressSink = Callable[[SyncProgress], None]


@dataclass(frozen=True)
class SyncFailure:
    """A variant whose stock could not be read and was recorded as zero."""

    product_id: str
    variant_id: str
    reason: str


@dataclass
class SyncReport:
    """Summary of a completed sync run."""

    products: int = 0
    products_without_variants: int = 0
    variants: int = 0
    discovered: int = 0
    empty_variants: int = 0
    failures: List[SyncFailure] = field(default_factory=list)
    elapsed_seconds: float = 0.0


def _first_present(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def normalize_variant(raw: Any) -> Optional[Tuple[str, str]]:
    """Return ``(variant_id, variant_name)`` for a bare id or a variant object.

    Any stock figure embedded in a variant object is ignored: it is a listing
    hint, not the deliverable count.
    """

    if isinstance(raw, bool):
        return None
    if isinstance(raw, (str, int)):
        variant_id = str(raw).strip()
        return (variant_id, variant_id) if variant_id else None
    if isinstance(raw, Mapping):
        variant_id = _first_present(raw, "id", "variant_id", "variantId")
        if variant_id is None:
            return None
        name = _first_present(raw, "name", "title")
        return str(variant_id), str(name if name is not None else variant_id)
    return None


def normalize_product(raw: Any) -> Optional[Tuple[str, str, List[Tuple[str, str]]]]:
    """Return ``(product_id, product_name, variants)`` or ``None`` if unusable."""

    if not isinstance(raw, Mapping):
        return None
    product_id = _first_present(raw, "id", "product_id", "productId")
    if product_id is None:
        return None
    name = _first_present(raw, "name", "title")
    variants: List[Tuple[str, str]] = []
    raw_variants = raw.get("variants")
    if isinstance(raw_variants, list):
        for candidate in raw_variants:
            normalized = normalize_variant(candidate)
            if normalized is not None:
                variants.append(normalized)
    return str(product_id), str(name if name is not None else product_id), variants


def _ref_from_line(line: Mapping[str, Any]) -> Optional[VariantRef]:
    product = line.get("product") if isinstance(line.get("product"), Mapping) else {}
    variant = line.get("variant") if isinstance(line.get("variant"), Mapping) else {}

    product_id = _first_present(line, "product_id", "productId") or _first_present(product, "id")
    variant_id = _first_present(line, "variant_id", "variantId") or _first_present(variant, "id")
    if product_id is None or variant_id is None:
        return None

    product_name = _first_present(line, "product_name", "productName") or _first_present(product, "name", "title")
    variant_name = _first_present(line, "variant_name", "variantName") or _first_present(variant, "name", "title")
    return VariantRef(
        product_id=str(product_id),
        product_name=str(product_name or product_id),
        variant_id=str(variant_id),
        variant_name=str(variant_name or variant_id),
    )


def extract_invoice_refs(invoice: Any) -> List[VariantRef]:
    """Collect the (product, variant) pairs referenced by one invoice.

    Invoices either name the product and variant at the top level or carry a
    list of line items under one of a few well-known keys; both are scanned.
    """

    if not isinstance(invoice, Mapping):
        return []
    candidates: List[Mapping[str, Any]] = [invoice]
    for key in _INVOICE_LINE_KEYS:
        lines = invoice.get(key)
        if isinstance(lines, list):
            candidates.extend(line for line in lines if isinstance(line, Mapping))

    refs: List[VariantRef] = []
    for candidate in candidates:
        ref = _ref_from_line(candidate)
        if ref is not None:
            refs.append(ref)
    return refs


class SyncEngine:
    """Rebuild the stock cache from the remote catalog.

    Only one run can be active per engine; a concurrent :meth:`run` raises
    :class:`SyncInProgressError` instead of queueing.

    Args:
        client (CatalogClient): Remote catalog access.
        cache (LocalCache): Cache replaced at the end of every run.
        locks (ResourceLocks): Shared lock registry; the ``cache`` lock is held
            while saving.
        retry_policy (RetryPolicy): Policy for per-variant fetches.
        request_delay (float): Seconds to wait between variant reads.
        page_size (int): Page size for product and invoice listings.
        max_pages (int): Page budget for each listing.
        progress_interval (float): Minimum seconds between progress reports.
        discover_from_invoices (bool): Scan invoice history for extra variants.
        sleep (Callable[[float], None]): Delay function, injectable for tests.
        clock (Callable[[], float]): Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        client: CatalogClient,
        cache: LocalCache,
        locks: ResourceLocks,
        *,
        retry_policy: RetryPolicy,
        request_delay: float,
        page_size: int,
        max_pages: int,
        progress_interval: float,
        discover_from_invoices: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.cache = cache
        self.locks = locks
        self.retry_policy = retry_policy
        self.request_delay = request_delay
        self.page_size = page_size
        self.max_pages = max_pages
        self.progress_interval = progress_interval
        self.discover_from_invoices = discover_from_invoices
        self._sleep = sleep
        self._clock = clock
        self._running = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: ConfigSettings,
        client: CatalogClient,
        cache: LocalCache,
        locks: ResourceLocks,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> "SyncEngine":
        return cls(
            client,
            cache,
            locks,
            retry_policy=sync_policy(settings.rate_limit_backoff, settings.max_retries),
            request_delay=settings.request_delay,
            page_size=settings.page_size,
            max_pages=settings.max_pages,
            progress_interval=settings.progress_interval,
            sleep=sleep,
            clock=clock,
        )

    @property
    def in_progress(self) -> bool:
        return self._running.locked()

    def run(self, progress: Optional[ProgressSink] = None) -> SyncReport:
        """Execute one full sync and return its report.

        Raises:
            SyncInProgressError: If another run is active on this engine.
            RemoteError: If the product listing itself cannot be fetched. The
                cache is not touched in that case.
            PersistenceError: If the rebuilt cache cannot be saved.
        """

        if not self._running.acquire(blocking=False):
            raise SyncInProgressError("A sync is already running")
        try:
            return self._run(progress)
        finally:
            self._running.release()

    def _run(self, progress: Optional[ProgressSink]) -> SyncReport:
        started = self._clock()
        report = SyncReport()
        log.info("Sync started")

        raw_products = self.client.list_products(self.page_size, self.max_pages)
        entries, targets = self._plan_catalog(raw_products, report)
        discovered: Dict[Tuple[str, str], Any] = {}
        if self.discover_from_invoices:
            discovered = self._plan_discovered(entries, targets, report)

        total = len(targets)
        last_emit: Optional[float] = None
        for index, ref in enumerate(targets.values()):
            if index:
                self._sleep(self.request_delay)
            key = (ref.product_id, ref.variant_id)
            if key in discovered:
                stock = self._read_stock(ref, report, delisted=True, last_known=discovered[key])
            else:
                stock = self._read_stock(ref, report)
            if stock == 0:
                report.empty_variants += 1
            entry = entries[ref.product_id]
            entry.variants[ref.variant_id] = VariantEntry(
                variant_id=ref.variant_id,
                variant_name=ref.variant_name,
                stock=stock,
            )
            last_emit = self._emit(progress, index + 1, total, started, last_emit)
        self._emit(progress, total, total, started, None)

        with self.locks.lock_for(LockName.CACHE.value):
            self.cache.save(entries)

        report.variants = total
        report.elapsed_seconds = self._clock() - started
        log.info(
            "Sync complete: %d products, %d variants (%d discovered, %d empty, %d failed) in %.1fs",
            report.products,
            report.variants,
            report.discovered,
            report.empty_variants,
            len(report.failures),
            report.elapsed_seconds,
        )
        return report

    def _plan_catalog(
        self,
        raw_products: Iterable[Any],
        report: SyncReport,
    ) -> Tuple[Dict[str, CacheEntry], Dict[Tuple[str, str], VariantRef]]:
        entries: Dict[str, CacheEntry] = {}
        targets: Dict[Tuple[str, str], VariantRef] = {}
        for raw in raw_products:
            normalized = normalize_product(raw)
            if normalized is None:
                log.warning("Skipping unrecognised product payload: %r", raw)
                continue
            product_id, product_name, variants = normalized
            report.products += 1
            if not variants:
                report.products_without_variants += 1
                continue
            entries.setdefault(product_id, CacheEntry(product_id=product_id, product_name=product_name))
            for variant_id, variant_name in variants:
                targets.setdefault(
                    (product_id, variant_id),
                    VariantRef(product_id, product_name, variant_id, variant_name),
                )
        return entries, targets

    def _plan_discovered(
        self,
        entries: Dict[str, CacheEntry],
        targets: Dict[Tuple[str, str], VariantRef],
        report: SyncReport,
    ) -> Dict[Tuple[str, str], Any]:
        """Queue invoice-only variants and return them with their last known stock."""

        try:
            invoices = self.client.list_invoices(self.page_size, self.max_pages)
        except ShopSyncError as exc:
            log.warning("Invoice discovery skipped: %s", exc)
            return {}

        with self.locks.lock_for(LockName.CACHE.value):
            previous = self.cache.load()
        discovered: Dict[Tuple[str, str], Any] = {}
        for invoice in invoices:
            for ref in extract_invoice_refs(invoice):
                key = (ref.product_id, ref.variant_id)
                if key in targets:
                    continue
                targets[key] = ref
                known = previous.get(ref.product_id)
                last = known.variants.get(ref.variant_id) if known else None
                discovered[key] = last.stock if last else None
                entries.setdefault(ref.product_id, CacheEntry(product_id=ref.product_id, product_name=ref.product_name))
                report.discovered += 1
                log.info("Discovered %s/%s from invoice history", ref.product_id, ref.variant_id)
        return discovered

    def _read_stock(self, ref: VariantRef, report: SyncReport, *, delisted: bool = False, last_known: Any = None) -> int:
        """Return the authoritative count of ``ref``.

        Invoice-only variants keep ``last_known`` when no endpoint knows them
        any more; everything else reads a 404 as zero.
        """

        try:
            items = self.retry_policy.call(
                self.client.fetch_deliverables,
                ref.product_id,
                ref.variant_id,
                missing_ok=not delisted,
                sleep=self._sleep,
            )
        except RemoteNotFoundError:
            if isinstance(last_known, bool) or not isinstance(last_known, int) or last_known < 0:
                last_known = 0
            log.info("Keeping last known stock %d for delisted %s/%s", last_known, ref.product_id, ref.variant_id)
            return last_known
        except ShopSyncError as exc:
            log.error("Recording zero stock for %s/%s: %s", ref.product_id, ref.variant_id, exc)
            report.failures.append(SyncFailure(ref.product_id, ref.variant_id, str(exc)))
            return 0
        return len(items)

    def _emit(
        self,
        sink: Optional[ProgressSink],
        processed: int,
        total: int,
        started: float,
        last_emit: Optional[float],
    ) -> Optional[float]:
        if sink is None:
            return last_emit
        now = self._clock()
        if last_emit is not None and now - last_emit < self.progress_interval:
            return last_emit
        try:
            sink(SyncProgress(processed=processed, total=total, elapsed_seconds=now - started))
        except Exception:  # sink errors never abort a sync
            log.warning("Progress sink raised; continuing", exc_info=True)
        return now
