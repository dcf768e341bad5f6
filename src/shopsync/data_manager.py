"""Data access layer for shopsync.

This module owns every byte shopsync keeps on disk. Business logic belongs
elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. The stock cache: a JSON object mapping product ids to their variants and
   last known stock, replaced as a whole on every save.
3. The withdrawal ledger: a JSON array of withdrawal records, oldest first.
4. Resource locks that serialise writers of the files above and of individual
   remote variants inside one process.

Both files are written with a write-temporary-then-rename sequence so readers
never observe a truncated document.
"""


from __future__ import annotations

import configparser
import contextlib
import json
import os
import tempfile
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import (
    API_KEY_ENV_VAR,
    CONFIG_FILE_NAME,
    DEFAULT_LOG_DIR,
    DEFAULT_MAX_PAGES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PAGE_SIZE,
    DEFAULT_PROGRESS_INTERVAL,
    DEFAULT_RATE_LIMIT_BACKOFF,
    DEFAULT_REQUEST_DELAY,
    DEFAULT_TIMEOUT_SECONDS,
    FALLBACK_VARIANT_ID,
    FALLBACK_VARIANT_NAME,
    LEDGER_ACTION_REMOVED,
)
from .errors import PersistenceError


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    base_url: str
    api_key: str
    shop_id: str
    cache_file: Path
    ledger_file: Path
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    request_delay: float = DEFAULT_REQUEST_DELAY
    rate_limit_backoff: float = DEFAULT_RATE_LIMIT_BACKOFF
    max_retries: int = DEFAULT_MAX_RETRIES
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_PAGES
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    log_dir: Optional[Path] = None
    log_level: str = ""


@dataclass(frozen=True)
class VariantEntry:
    """Cached view of one variant.

    ``stock`` is kept exactly as read from disk. Withdrawals validate it
    before trusting it, so a hand-edited or corrupted value is rejected rather
    than silently coerced.
    """

    variant_id: str
    variant_name: str
    stock: Any


@dataclass(frozen=True)
class CacheEntry:
    """Cached view of one product and its variants."""

    product_id: str
    product_name: str
    variants: Dict[str, VariantEntry] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerRecord:
    """One withdrawal, with the exact tokens it took from the remote store."""

    timestamp: str
    product_id: str
    product_name: str
    variant_id: str
    variant_name: str
    removed_items: Tuple[str, ...]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how shopsync behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.
            Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def _resolve_path(raw: str, base_path: Optional[Path]) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        path = base_path / path
    return path.resolve()


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[Remote] BaseUrl`` and both ``[Storage]`` files are required. The API key
    is read from the ``SHOPSYNC_API_KEY`` environment variable when set, so it
    does not have to live in the file. Every ``[Sync]`` knob falls back to the
    defaults in :mod:`shopsync.constants`. The optional ``[Logging]`` section
    names the log directory (``.logs`` by default) and level. Relative paths
    are anchored to ``base_path`` (normally the directory holding
    ``config.ini``).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative storage paths. Defaults to
            :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric option cannot be parsed.
    """

    try:
        base_url = parser.get("Remote", "BaseUrl")
        cache_raw = parser.get("Storage", "CacheFile")
        ledger_raw = parser.get("Storage", "LedgerFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    api_key = os.getenv(API_KEY_ENV_VAR) or parser.get("Remote", "ApiKey", fallback="")

    return ConfigSettings(
        base_url=base_url.strip(),
        api_key=api_key.strip(),
        shop_id=parser.get("Remote", "ShopId", fallback="").strip(),
        cache_file=_resolve_path(cache_raw, base_path),
        ledger_file=_resolve_path(ledger_raw, base_path),
        timeout_seconds=parser.getfloat("Remote", "Timeout", fallback=DEFAULT_TIMEOUT_SECONDS),
        request_delay=parser.getfloat("Sync", "RequestDelay", fallback=DEFAULT_REQUEST_DELAY),
        rate_limit_backoff=parser.getfloat("Sync", "RateLimitBackoff", fallback=DEFAULT_RATE_LIMIT_BACKOFF),
        max_retries=parser.getint("Sync", "MaxRetries", fallback=DEFAULT_MAX_RETRIES),
        page_size=parser.getint("Sync", "PageSize", fallback=DEFAULT_PAGE_SIZE),
        max_pages=parser.getint("Sync", "MaxPages", fallback=DEFAULT_MAX_PAGES),
        progress_interval=parser.getfloat("Sync", "ProgressInterval", fallback=DEFAULT_PROGRESS_INTERVAL),
        log_dir=_resolve_path(parser.get("Logging", "Directory", fallback=DEFAULT_LOG_DIR), base_path),
        log_level=parser.get("Logging", "Level", fallback="").strip(),
    )


def write_json_atomic(destination: Path, payload: Any) -> None:
    """Replace ``destination`` with ``payload`` serialised as indented JSON.

    The document is written to a temporary file in the same directory, flushed
    to disk, and moved over the destination with :func:`os.replace`, which is
    atomic on POSIX and Windows. Parent directories are created on demand.

    Args:
        destination (Path): Final location of the document.
        payload (Any): JSON-serialisable value.

    Raises:
        PersistenceError: If any filesystem step fails. The previous document,
            if any, is left untouched.
    """

    dest = Path(destination).expanduser()
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".tmp", dir=dest.parent)
    except OSError as exc:
        raise PersistenceError(f"Unable to prepare {dest}: {exc}") from exc

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, dest)
    except OSError as exc:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise PersistenceError(f"Unable to write {dest}: {exc}") from exc


def serialize_cache_entry(entry: CacheEntry) -> Dict[str, Any]:
    """Convert a cache entry into its on-disk JSON shape."""

    return {
        "productId": entry.product_id,
        "productName": entry.product_name,
        "variants": {
            variant_id: {
                "id": variant.variant_id,
                "name": variant.variant_name,
                "stock": variant.stock,
            }
            for variant_id, variant in entry.variants.items()
        },
    }


def deserialize_cache_entry(key: str, raw: Any) -> CacheEntry:
    """Convert one on-disk cache object into a :class:`CacheEntry`.

    Identifiers are normalised to ``str`` because the remote service mixes
    numeric and textual ids. Variant objects that are not JSON objects are
    dropped.

    Raises:
        ValueError: If ``raw`` is not a JSON object.
    """

    if not isinstance(raw, Mapping):
        raise ValueError(f"Cache entry '{key}' is not an object")

    variants: Dict[str, VariantEntry] = {}
    raw_variants = raw.get("variants")
    if isinstance(raw_variants, Mapping):
        for variant_key, variant_raw in raw_variants.items():
            if not isinstance(variant_raw, Mapping):
                log.warning("Dropping malformed cached variant '%s' of product '%s'", variant_key, key)
                continue
            variant_id = str(variant_raw.get("id") or variant_key)
            variants[str(variant_key)] = VariantEntry(
                variant_id=variant_id,
                variant_name=str(variant_raw.get("name") or variant_id),
                stock=variant_raw.get("stock"),
            )

    product_id = str(raw.get("productId") or key)
    return CacheEntry(
        product_id=product_id,
        product_name=str(raw.get("productName") or product_id),
        variants=variants,
    )


def serialize_ledger_record(record: LedgerRecord) -> Dict[str, Any]:
    """Convert a ledger record into its on-disk JSON shape."""

    return {
        "timestamp": record.timestamp,
        "productId": record.product_id,
        "productName": record.product_name,
        "variantId": record.variant_id,
        "variantName": record.variant_name,
        "removedItems": list(record.removed_items),
        "action": LEDGER_ACTION_REMOVED,
    }


def deserialize_ledger_record(raw: Any) -> LedgerRecord:
    """Convert one on-disk ledger object into a :class:`LedgerRecord`.

    Records written before variants existed carry no variant fields; they are
    mapped to the fallback variant ``"0"``.

    Raises:
        ValueError: If ``raw`` is not an object or lacks a product id.
    """

    if not isinstance(raw, Mapping):
        raise ValueError("Ledger record is not an object")
    if raw.get("productId") in (None, ""):
        raise ValueError("Ledger record has no productId")

    removed = raw.get("removedItems") or []
    if not isinstance(removed, list):
        raise ValueError("Ledger record removedItems is not a list")

    return LedgerRecord(
        timestamp=str(raw.get("timestamp") or ""),
        product_id=str(raw["productId"]),
        product_name=str(raw.get("productName") or raw["productId"]),
        variant_id=str(raw.get("variantId") or FALLBACK_VARIANT_ID),
        variant_name=str(raw.get("variantName") or FALLBACK_VARIANT_NAME),
        removed_items=tuple(str(item) for item in removed),
    )


class LocalCache:
    """Whole-file JSON store for the stock cache.

    The cache is advisory: every destructive operation re-reads the remote
    store first. It therefore degrades to empty instead of failing when the
    file is missing or damaged, and a fresh sync rebuilds it. The class does no
    locking of its own; writers hold the ``cache`` lock from
    :class:`ResourceLocks`.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Dict[str, CacheEntry]:
        """Return the cached products keyed by product id. Never raises."""

        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError) as exc:
            log.warning("Unable to read stock cache '%s': %s", self.path, exc)
            return {}

        try:
            raw = json.loads(text)
        except ValueError as exc:
            log.warning("Stock cache '%s' is not valid JSON (%s); treating as empty", self.path, exc)
            return {}
        if not isinstance(raw, Mapping):
            log.warning("Stock cache '%s' is not a JSON object; treating as empty", self.path)
            return {}

        entries: Dict[str, CacheEntry] = {}
        for key, value in raw.items():
            try:
                entries[str(key)] = deserialize_cache_entry(str(key), value)
            except ValueError as exc:
                log.warning("Skipping cache entry: %s", exc)
        return entries

    def save(self, entries: Mapping[str, CacheEntry]) -> None:
        """Atomically replace the cache file with ``entries``.

        Raises:
            PersistenceError: If the file cannot be written.
        """

        payload = {key: serialize_cache_entry(entry) for key, entry in entries.items()}
        write_json_atomic(self.path, payload)
        log.debug("Saved stock cache '%s' with %d products", self.path, len(payload))

    def update_stock(self, product_id: str, variant_id: str, stock: int) -> bool:
        """Set the cached stock of one variant and save the whole cache.

        Returns:
            bool: ``False`` when the variant is not in the cache; nothing is
                written in that case.

        Raises:
            PersistenceError: If the file cannot be written.
        """

        entries = self.load()
        entry = entries.get(product_id)
        if entry is None or variant_id not in entry.variants:
            return False
        variants = dict(entry.variants)
        variants[variant_id] = replace(variants[variant_id], stock=stock)
        entries[product_id] = replace(entry, variants=variants)
        self.save(entries)
        return True


class Ledger:
    """Append-only JSON array of :class:`LedgerRecord`, oldest first.

    Unlike the cache, a damaged ledger is an error: silently resetting it would
    destroy the only copy of withdrawn tokens.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> List[LedgerRecord]:
        """Return every outstanding record, oldest first.

        Raises:
            PersistenceError: If the file exists but cannot be read or parsed.
        """

        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as exc:
            raise PersistenceError(f"Unable to read ledger '{self.path}': {exc}") from exc

        if not text.strip():
            return []
        try:
            raw = json.loads(text)
        except ValueError as exc:
            raise PersistenceError(f"Ledger '{self.path}' is not valid JSON: {exc}") from exc
        if not isinstance(raw, list):
            raise PersistenceError(f"Ledger '{self.path}' is not a JSON array")

        try:
            return [deserialize_ledger_record(item) for item in raw]
        except ValueError as exc:
            raise PersistenceError(f"Ledger '{self.path}' holds a malformed record: {exc}") from exc

    def save(self, records: Sequence[LedgerRecord]) -> None:
        write_json_atomic(self.path, [serialize_ledger_record(record) for record in records])

    def append(self, record: LedgerRecord) -> None:
        records = self.load()
        records.append(record)
        self.save(records)
        log.debug("Ledger '%s' now holds %d records", self.path, len(records))

    def peek(self, count: int) -> List[LedgerRecord]:
        """Return the newest ``count`` records, newest first."""

        if count <= 0:
            return []
        return list(reversed(self.load()[-count:]))

    def remove(self, records: Iterable[LedgerRecord]) -> None:
        """Drop ``records`` from the ledger and save it.

        Each record is matched from the newest end, so records appended after
        ``records`` were read are preserved.
        """

        current = self.load()
        for record in records:
            for index in range(len(current) - 1, -1, -1):
                if current[index] == record:
                    del current[index]
                    break
            else:
                log.warning(
                    "Ledger record for %s/%s at %s was already gone",
                    record.product_id,
                    record.variant_id,
                    record.timestamp,
                )
        self.save(current)


class ResourceLocks:
    """Hand out one process-wide lock per named resource.

    Keys are plain strings: ``"cache"``, ``"ledger"``, ``"restore"``, or a
    variant key from :meth:`variant_key`. Callers take them in the order
    ``restore`` -> variant -> ``cache``/``ledger`` and never hold the last two
    together.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @staticmethod
    def variant_key(product_id: str, variant_id: str) -> str:
        return f"variant:{product_id}:{variant_id}"
