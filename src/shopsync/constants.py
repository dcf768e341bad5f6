"""Enumerations and defaults shared across shopsync modules.

Centralises the remote resource names, the on-disk lock keys, and the tuning
knobs of the synchronization loop so the data layer, the engines, and the CLI
agree on a single source of truth.
"""

from __future__ import annotations

from enum import Enum


CONFIG_FILE_NAME = "config.ini"
API_KEY_ENV_VAR = "SHOPSYNC_API_KEY"

# Sync tuning defaults, overridable from the [Sync] section of config.ini.
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_REQUEST_DELAY = 5.0
DEFAULT_RATE_LIMIT_BACKOFF = 15.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 50
DEFAULT_PROGRESS_INTERVAL = 2.0

# Largest batch add-stock and delete-stock accept in one call.
MAX_STOCK_BATCH = 1000

# [Logging] defaults; the directory is relative to config.ini.
DEFAULT_LOG_DIR = ".logs"

# Ledger entries written before variants existed carry no variant fields.
FALLBACK_VARIANT_ID = "0"
FALLBACK_VARIANT_NAME = "Unknown"
LEDGER_ACTION_REMOVED = "removed"


class Resource(str, Enum):
    """Enumerate the paginated collections exposed by the remote catalog."""

    PRODUCTS = "products"
    INVOICES = "invoices"


class LockName(str, Enum):
    """Enumerate the process-wide locks guarding shared state."""

    CACHE = "cache"
    LEDGER = "ledger"
    RESTORE = "restore"


__all__ = [
    "API_KEY_ENV_VAR",
    "CONFIG_FILE_NAME",
    "DEFAULT_LOG_DIR",
    "DEFAULT_MAX_PAGES",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_PROGRESS_INTERVAL",
    "DEFAULT_RATE_LIMIT_BACKOFF",
    "DEFAULT_REQUEST_DELAY",
    "DEFAULT_TIMEOUT_SECONDS",
    "FALLBACK_VARIANT_ID",
    "FALLBACK_VARIANT_NAME",
    "LEDGER_ACTION_REMOVED",
    "MAX_STOCK_BATCH",
    "LockName",
    "Resource",
]
