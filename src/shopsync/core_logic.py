"""Business logic layer for shopsync.

This module turns the remote client and the on-disk stores into the three
operations callers use: ``sync``, ``withdraw`` and ``restore``, plus a few
read helpers. Every function takes a :class:`RuntimeContext` built by
:func:`load_runtime_context`.

Withdrawals and restores never trust the cache for the deliverables
themselves. The cache only gates the request; the authoritative list is
re-read from the remote store immediately before it is overwritten, and the
remote write always happens before the cache and ledger are touched.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from . import attach_log_file, data_manager, log
from .constants import MAX_STOCK_BATCH, LockName
from .data_manager import CacheEntry, LedgerRecord, VariantEntry
from .errors import (
    ConsistencyError,
    MissingReferenceError,
    PersistenceError,
    RemoteError,
    RestoreError,
    ValidationError,
)
from .remote_client import CatalogClient
from .retry_policy import NO_RETRY
from .sync_engine import ProgressSink, SyncEngine, SyncReport


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, stores and the remote client."""

    settings: data_manager.ConfigSettings
    client: CatalogClient
    cache: data_manager.LocalCache
    ledger: data_manager.Ledger
    locks: data_manager.ResourceLocks
    sync_engine: SyncEngine


@dataclass(frozen=True)
class WithdrawalResult:
    """Outcome of a successful withdrawal.

    ``items`` always holds exactly the requested quantity. ``cache_updated``
    and ``ledger_recorded`` are ``False`` when the corresponding best-effort
    write failed after the remote store had already been changed.
    """

    items: Tuple[str, ...]
    remaining: int
    record: LedgerRecord
    cache_updated: bool
    ledger_recorded: bool


@dataclass(frozen=True)
class StockAdjustment:
    """Outcome of an operator stock change that bypasses the ledger."""

    items: Tuple[str, ...]
    previous: int
    current: int
    cache_updated: bool


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    transport: Optional[httpx.BaseTransport] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RuntimeContext:
    """Load configuration and wire the stores, client and sync engine.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        transport (httpx.BaseTransport | None): Optional HTTP transport, used by
            tests to replace the network.
        sleep (Callable[[float], None]): Delay function for the sync engine.

    Returns:
        RuntimeContext: Fully populated context ready for the operations below.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    if settings.log_dir is not None:
        attach_log_file(settings.log_dir, settings.log_level)

    client = CatalogClient(
        settings.base_url,
        settings.api_key,
        settings.shop_id,
        timeout_seconds=settings.timeout_seconds,
        transport=transport,
    )
    cache = data_manager.LocalCache(settings.cache_file)
    ledger = data_manager.Ledger(settings.ledger_file)
    locks = data_manager.ResourceLocks()
    engine = SyncEngine.from_settings(settings, client, cache, locks, sleep=sleep)
    log.info("Loaded runtime context for '%s'", settings.base_url)
    return RuntimeContext(
        settings=settings,
        client=client,
        cache=cache,
        ledger=ledger,
        locks=locks,
        sync_engine=engine,
    )


def close_context(context: RuntimeContext) -> None:
    """Release the HTTP connection pool held by ``context``."""

    context.client.close()


def sync(context: RuntimeContext, progress: Optional[ProgressSink] = None) -> SyncReport:
    """Rebuild the stock cache from the remote catalog.

    See :class:`shopsync.sync_engine.SyncEngine` for the procedure.
    """

    return context.sync_engine.run(progress)


def require_positive_quantity(quantity: object) -> int:
    """Validate that a withdrawal quantity is a strictly positive integer.

    ``bool`` is rejected even though it subclasses ``int``.

    Raises:
        ValidationError: If ``quantity`` is not a positive ``int``.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError(f"Quantity must be a positive integer, got {quantity!r}")
    return quantity


def require_cached_stock(variant: VariantEntry) -> int:
    """Return the cached stock of ``variant`` once it is known to be sane.

    Raises:
        ValidationError: If the cached value is not a non-negative integer.
    """
    stock = variant.stock
    if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
        log.error("Cached stock of variant '%s' is invalid: %r", variant.variant_id, stock)
        raise ValidationError(
            f"Cached stock for variant {variant.variant_id} is invalid ({stock!r}); run a sync"
        )
    return stock


def list_cached_stock(context: RuntimeContext) -> Dict[str, CacheEntry]:
    """Return the stock cache keyed by product id."""

    with context.locks.lock_for(LockName.CACHE.value):
        return context.cache.load()


def get_cached_variant(context: RuntimeContext, product_id: str, variant_id: str) -> Tuple[CacheEntry, VariantEntry]:
    """Resolve a product and one of its variants from the stock cache.

    Args:
        context (RuntimeContext): Runtime context providing the cache.
        product_id (str): Product identifier as stored in the cache.
        variant_id (str): Variant identifier under that product.

    Returns:
        tuple[CacheEntry, VariantEntry]: The cached product and variant.

    Raises:
        MissingReferenceError: If either identifier is unknown to the cache.
    """
    entries = list_cached_stock(context)
    entry = entries.get(product_id)
    if entry is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    variant = entry.variants.get(variant_id)
    if variant is None:
        log.warning("Variant lookup failed for '%s/%s'", product_id, variant_id)
        raise MissingReferenceError(f"Unknown variant id {variant_id} for product {product_id}")
    return entry, variant


def inspect_variant(context: RuntimeContext, product_id: str, variant_id: str) -> List[str]:
    """Return the authoritative deliverable list of one variant. Read only."""

    return NO_RETRY.call(context.client.fetch_deliverables, str(product_id), str(variant_id))


def list_history(context: RuntimeContext, limit: Optional[int] = None) -> List[LedgerRecord]:
    """Return outstanding ledger records, newest first.

    Raises:
        ValidationError: If ``limit`` is given and is not a positive integer.
        PersistenceError: If the ledger file is corrupt.
    """
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise ValidationError(f"History limit must be a positive integer, got {limit!r}")
    with context.locks.lock_for(LockName.LEDGER.value):
        records = context.ledger.load()
    records.reverse()
    return records if limit is None else records[:limit]


def _update_cached_stock(context: RuntimeContext, product_id: str, variant_id: str, stock: int) -> bool:
    try:
        with context.locks.lock_for(LockName.CACHE.value):
            updated = context.cache.update_stock(product_id, variant_id, stock)
    except PersistenceError as exc:
        log.error("Remote store changed but cached stock of %s/%s was not updated: %s", product_id, variant_id, exc)
        return False
    if not updated:
        log.warning("Variant %s/%s is no longer cached; stock not updated", product_id, variant_id)
    return updated


def _append_ledger(context: RuntimeContext, record: LedgerRecord) -> bool:
    try:
        with context.locks.lock_for(LockName.LEDGER.value):
            context.ledger.append(record)
    except PersistenceError as exc:
        log.critical(
            "Withdrawal from %s/%s cannot be undone, ledger write failed (%s). Items: %s",
            record.product_id,
            record.variant_id,
            exc,
            list(record.removed_items),
        )
        return False
    return True


def withdraw(
    context: RuntimeContext,
    product_id: str,
    variant_id: str,
    quantity: int,
    *,
    timestamp: Optional[datetime] = None,
) -> WithdrawalResult:
    """Take the oldest ``quantity`` deliverables from a variant.

    The cached stock gates the request, then the authoritative list is read
    and the remainder written back. Only after the remote write succeeds are
    the cache and the ledger updated; failures there are logged and reported
    on the result, never raised, because the remote change cannot be undone
    automatically.

    Args:
        context (RuntimeContext): Active runtime context.
        product_id (str): Product to withdraw from.
        variant_id (str): Variant to withdraw from.
        quantity (int): Number of deliverables to take.
        timestamp (datetime | None): Ledger timestamp; defaults to now (UTC).

    Returns:
        WithdrawalResult: The taken items and the bookkeeping outcome.

    Raises:
        ValidationError: If the quantity or the cached stock rejects the
            request. Nothing is changed.
        MissingReferenceError: If the product or variant is not cached.
        ConsistencyError: If the remote store holds fewer items than
            requested. Nothing is changed; a sync is needed.
        RemoteError: If reading or overwriting the remote list fails. Nothing
            is changed.
    """
    product_id, variant_id = str(product_id), str(variant_id)
    require_positive_quantity(quantity)

    with context.locks.lock_for(data_manager.ResourceLocks.variant_key(product_id, variant_id)):
        entry, variant = get_cached_variant(context, product_id, variant_id)
        cached_stock = require_cached_stock(variant)
        if cached_stock == 0:
            raise ValidationError(f"Variant {variant_id} of product {product_id} is out of stock")
        if cached_stock < quantity:
            raise ValidationError(
                f"Requested {quantity} items but only {cached_stock} are cached for variant {variant_id}"
            )

        current = NO_RETRY.call(context.client.fetch_deliverables, product_id, variant_id)
        if len(current) < quantity:
            log.error(
                "Cache out of date for %s/%s: cached %d, remote %d",
                product_id,
                variant_id,
                cached_stock,
                len(current),
            )
            raise ConsistencyError(
                f"Remote store holds {len(current)} items but the cache says {cached_stock}; run a sync",
                cached_stock=cached_stock,
                authoritative_stock=len(current),
            )

        taken, remaining = current[:quantity], current[quantity:]
        NO_RETRY.call(context.client.overwrite_deliverables, product_id, variant_id, remaining)
        log.info("Withdrew %d items from %s/%s; %d remain", quantity, product_id, variant_id, len(remaining))

        cache_updated = _update_cached_stock(context, product_id, variant_id, len(remaining))
        record = LedgerRecord(
            timestamp=_resolve_timestamp(timestamp).isoformat(),
            product_id=product_id,
            product_name=entry.product_name,
            variant_id=variant_id,
            variant_name=variant.variant_name,
            removed_items=tuple(taken),
        )
        ledger_recorded = _append_ledger(context, record)

    return WithdrawalResult(
        items=tuple(taken),
        remaining=len(remaining),
        record=record,
        cache_updated=cache_updated,
        ledger_recorded=ledger_recorded,
    )


def require_restore_count(count: object, available: int) -> int:
    """Validate a restore count against the number of outstanding records.

    Raises:
        ValidationError: If ``count`` is not an integer between 1 and
            ``available``.
    """
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ValidationError(f"Restore count must be a positive integer, got {count!r}")
    if count > available:
        raise ValidationError(f"Cannot restore {count} withdrawals; only {available} recorded")
    return count


def _restore_record(context: RuntimeContext, record: LedgerRecord) -> int:
    with context.locks.lock_for(data_manager.ResourceLocks.variant_key(record.product_id, record.variant_id)):
        current = NO_RETRY.call(context.client.fetch_deliverables, record.product_id, record.variant_id)
        combined = list(record.removed_items) + current
        NO_RETRY.call(context.client.overwrite_deliverables, record.product_id, record.variant_id, combined)
        log.info(
            "Restored %d items to %s/%s; %d now available",
            len(record.removed_items),
            record.product_id,
            record.variant_id,
            len(combined),
        )
        _update_cached_stock(context, record.product_id, record.variant_id, len(combined))
    return len(combined)


def _drop_from_ledger(context: RuntimeContext, records: List[LedgerRecord]) -> None:
    try:
        with context.locks.lock_for(LockName.LEDGER.value):
            context.ledger.remove(records)
    except PersistenceError as exc:
        log.critical("Restored records could not be removed from the ledger (%s); remove them by hand", exc)


def restore(context: RuntimeContext, count: int = 1) -> List[LedgerRecord]:
    """Put the deliverables of the newest ``count`` withdrawals back.

    Records are processed newest first. Each record's items are prepended to
    the variant's current remote list in their original order, so a
    withdraw followed by a restore leaves the remote list unchanged.

    Processing stops at the first failure. Every record taken for the call is
    removed from the ledger either way; the ones not restored are logged at
    CRITICAL with their items. Remote failures are reported as
    :class:`RestoreError`; anything else propagates unchanged once the ledger
    has been trimmed.

    Args:
        context (RuntimeContext): Active runtime context.
        count (int): Number of withdrawals to undo. Defaults to one.

    Returns:
        list[LedgerRecord]: The restored records, newest first.

    Raises:
        ValidationError: If ``count`` is out of range. Nothing is changed.
        PersistenceError: If the ledger cannot be read.
        RestoreError: If a record could not be restored.
    """
    with context.locks.lock_for(LockName.RESTORE.value):
        with context.locks.lock_for(LockName.LEDGER.value):
            outstanding = context.ledger.load()
        require_restore_count(count, len(outstanding))

        taken = list(reversed(outstanding[-count:]))
        restored: List[LedgerRecord] = []
        try:
            for record in taken:
                _restore_record(context, record)
                restored.append(record)
        except Exception as exc:
            # A record whose overwrite already landed must never be restored twice.
            abandoned = taken[len(restored):]
            for lost in abandoned:
                log.critical(
                    "Restore abandoned for %s/%s (withdrawn %s): items %s",
                    lost.product_id,
                    lost.variant_id,
                    lost.timestamp,
                    list(lost.removed_items),
                )
            _drop_from_ledger(context, taken)
            if not isinstance(exc, RemoteError):
                raise
            raise RestoreError(
                f"Restore stopped after {len(restored)} of {len(taken)} records: {exc}",
                restored=restored,
                abandoned=abandoned,
            ) from exc

        _drop_from_ledger(context, taken)
    return restored


def require_batch_size(quantity: object) -> int:
    """Validate an add-stock or delete-stock quantity (1 to ``MAX_STOCK_BATCH``)."""
    require_positive_quantity(quantity)
    if quantity > MAX_STOCK_BATCH:
        raise ValidationError(f"At most {MAX_STOCK_BATCH} items can be changed at once, got {quantity}")
    return quantity


def add_stock(context: RuntimeContext, product_id: str, variant_id: str, item: str, quantity: int = 1) -> StockAdjustment:
    """Append ``quantity`` copies of ``item`` to the end of a variant's list.

    New deliverables go behind the existing ones, so withdrawals keep taking
    the oldest first.

    Raises:
        ValidationError: If ``item`` is blank or spans several lines, or the
            quantity is out of range.
        MissingReferenceError: If the variant is not cached.
        RemoteError: If reading or overwriting the remote list fails.
    """
    product_id, variant_id = str(product_id), str(variant_id)
    require_batch_size(quantity)
    if not isinstance(item, str) or not item.strip():
        raise ValidationError("Deliverable text must not be empty")
    if "\n" in item or "\r" in item:
        raise ValidationError("Deliverable text must fit on one line")

    with context.locks.lock_for(data_manager.ResourceLocks.variant_key(product_id, variant_id)):
        get_cached_variant(context, product_id, variant_id)
        current = NO_RETRY.call(context.client.fetch_deliverables, product_id, variant_id)
        added = [item] * quantity
        combined = current + added
        NO_RETRY.call(context.client.overwrite_deliverables, product_id, variant_id, combined)
        log.info("Added %d items to %s/%s; %d now available", quantity, product_id, variant_id, len(combined))
        cache_updated = _update_cached_stock(context, product_id, variant_id, len(combined))

    return StockAdjustment(
        items=tuple(added),
        previous=len(current),
        current=len(combined),
        cache_updated=cache_updated,
    )


def delete_stock(context: RuntimeContext, product_id: str, variant_id: str, quantity: int) -> StockAdjustment:
    """Permanently drop the newest ``quantity`` deliverables of a variant.

    Deleted items are not recorded in the ledger and cannot be restored; they
    are logged at WARNING and returned.

    Raises:
        ValidationError: If the quantity is out of range or the remote list
            holds fewer items. Nothing is changed.
        MissingReferenceError: If the variant is not cached.
        RemoteError: If reading or overwriting the remote list fails.
    """
    product_id, variant_id = str(product_id), str(variant_id)
    require_batch_size(quantity)

    with context.locks.lock_for(data_manager.ResourceLocks.variant_key(product_id, variant_id)):
        get_cached_variant(context, product_id, variant_id)
        current = NO_RETRY.call(context.client.fetch_deliverables, product_id, variant_id)
        if not current:
            raise ValidationError(f"Variant {variant_id} of product {product_id} has no deliverables to delete")
        if len(current) < quantity:
            raise ValidationError(f"Cannot delete {quantity} items; only {len(current)} available")

        remaining, deleted = current[:-quantity], current[-quantity:]
        NO_RETRY.call(context.client.overwrite_deliverables, product_id, variant_id, remaining)
        log.warning("Deleted %d items from %s/%s: %s", quantity, product_id, variant_id, deleted)
        cache_updated = _update_cached_stock(context, product_id, variant_id, len(remaining))

    return StockAdjustment(
        items=tuple(deleted),
        previous=len(current),
        current=len(remaining),
        cache_updated=cache_updated,
    )
