"""Integration tests describing the end-to-end shopsync workflows.

These scenarios drive the real client, stores and engines against the
in-memory catalog, so every request crosses ``httpx`` and every state change
lands in the JSON files named by ``config.ini``.
"""

from __future__ import annotations

import json

import pytest

from shopsync import cli, core_logic
from shopsync.errors import ConsistencyError


def _load(bundle, server, sleeps):
    return core_logic.load_runtime_context(bundle.config_path, transport=server.transport(), sleep=sleeps.append)


def test_sync_withdraw_restore_lifecycle_flow(config_factory, catalog_server):
    """Sync a paginated catalog, withdraw, reload from disk and restore."""

    bundle = config_factory(page_size=2)
    catalog_server.products = [
        {"id": "P1", "name": "Game Keys", "variants": [{"id": "V1", "name": "Steam"}]},
        {"id": "P2", "name": "Gift Cards", "variants": ["10", "20"]},
        {"id": "P3", "name": "Bundles", "variants": []},
    ]
    catalog_server.stock("P1", "V1", [f"key-{n}" for n in range(10)])
    catalog_server.stock("P2", "10", ["gc-1"])
    sleeps = []

    context = _load(bundle, catalog_server, sleeps)
    report = core_logic.sync(context)
    core_logic.close_context(context)

    # Two full pages and one empty page of products, plus one empty page of invoices.
    assert catalog_server.requested_paths().count("products") == 3
    assert report.variants == 3
    assert report.products_without_variants == 1
    assert sleeps == [5, 5]

    context = _load(bundle, catalog_server, sleeps)
    result = core_logic.withdraw(context, "P1", "V1", 3)
    core_logic.close_context(context)
    assert result.items == ("key-0", "key-1", "key-2")

    ledger = json.loads(bundle.ledger_path.read_text(encoding="utf-8"))
    assert [entry["removedItems"] for entry in ledger] == [["key-0", "key-1", "key-2"]]
    cache = json.loads(bundle.cache_path.read_text(encoding="utf-8"))
    assert cache["P1"]["variants"]["V1"]["stock"] == 7

    context = _load(bundle, catalog_server, sleeps)
    restored = core_logic.restore(context)
    core_logic.close_context(context)

    assert [record.removed_items for record in restored] == [("key-0", "key-1", "key-2")]
    assert catalog_server.deliverables[("P1", "V1")] == [f"key-{n}" for n in range(10)]
    assert json.loads(bundle.ledger_path.read_text(encoding="utf-8")) == []
    cache = json.loads(bundle.cache_path.read_text(encoding="utf-8"))
    assert cache["P1"]["variants"]["V1"]["stock"] == 10


def test_external_consumption_requires_resync_flow(runtime_context, catalog_server):
    """Sales made outside the cache are caught before anything is overwritten."""

    catalog_server.products = [{"id": "P1", "name": "Game Keys", "variants": ["V1"]}]
    catalog_server.stock("P1", "V1", list("abcde"))
    core_logic.sync(runtime_context)

    # The storefront sells three items behind our back.
    catalog_server.deliverables[("P1", "V1")] = list("de")

    with pytest.raises(ConsistencyError):
        core_logic.withdraw(runtime_context, "P1", "V1", 4)
    assert catalog_server.deliverables[("P1", "V1")] == list("de")

    core_logic.sync(runtime_context)
    result = core_logic.withdraw(runtime_context, "P1", "V1", 2)

    assert result.items == ("d", "e")
    assert result.remaining == 0


def test_restore_after_new_stock_arrives_flow(runtime_context, catalog_server):
    """Restored items go back in front of stock added since the withdrawal."""

    catalog_server.products = [{"id": "P1", "name": "Game Keys", "variants": ["V1"]}]
    catalog_server.stock("P1", "V1", ["old-1", "old-2"])
    core_logic.sync(runtime_context)
    core_logic.withdraw(runtime_context, "P1", "V1", 2)

    catalog_server.deliverables[("P1", "V1")] = ["fresh-1"]
    core_logic.restore(runtime_context)

    assert catalog_server.deliverables[("P1", "V1")] == ["old-1", "old-2", "fresh-1"]
    assert core_logic.list_cached_stock(runtime_context)["P1"].variants["V1"].stock == 3


def test_rate_limited_sync_recovers_flow(runtime_context, catalog_server, sleep_calls):
    catalog_server.products = [{"id": "P1", "name": "Game Keys", "variants": ["V1", "V2"]}]
    catalog_server.stock("P1", "V1", ["a"])
    catalog_server.stock("P1", "V2", ["b", "c"])
    catalog_server.fail("GET", "products/P1/deliverables/V2", 429)

    report = core_logic.sync(runtime_context)

    assert report.failures == []
    assert sleep_calls == [5, 15]
    assert core_logic.list_cached_stock(runtime_context)["P1"].variants["V2"].stock == 2


def test_cli_sync_withdraw_history_restore_flow(config_bundle, catalog_server, monkeypatch, capsys):
    """Drive the same workflow through ``shopsync-cli`` with a real config file."""

    catalog_server.products = [{"id": "P1", "name": "Game Keys", "variants": [{"id": "V1", "name": "Steam"}]}]
    catalog_server.stock("P1", "V1", ["k1", "k2", "k3"])
    sleeps = []
    monkeypatch.setattr(
        cli,
        "load_runtime_context",
        lambda path=None: core_logic.load_runtime_context(path, transport=catalog_server.transport(), sleep=sleeps.append),
    )
    config = str(config_bundle.config_path)

    assert cli.main(["--config", config, "sync", "--quiet"]) == 0
    assert cli.main(["--config", config, "withdraw", "--product-id", "P1", "--variant-id", "V1", "--quantity", "1"]) == 0
    assert cli.main(["--config", config, "history", "--limit", "5"]) == 0
    assert cli.main(["--config", config, "restore", "--count", "2"]) == 2
    assert cli.main(["--config", config, "restore"]) == 0

    out = capsys.readouterr().out.splitlines()
    assert out[1] == "k1"
    assert "Game Keys / Steam" in out[2]
    assert out[3].startswith("Restored 1 items")
    assert catalog_server.deliverables[("P1", "V1")] == ["k1", "k2", "k3"]
