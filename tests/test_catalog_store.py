import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from grid_bot.grid.catalog import CatalogError, PriceLadderCatalog
from grid_bot import config_loader
from grid_bot.grid.catalog_store import CatalogStore, catalog_to_dict, load_or_build_catalog

D = Decimal


@pytest.fixture
def store(tmp_path) -> CatalogStore:
    return CatalogStore(tmp_path / "catalog" / "grid_catalog.json")


@pytest.fixture
def catalog(rules) -> PriceLadderCatalog:
    return PriceLadderCatalog.build(rules, "BNBUSDT", D("1"), D("100"), D("110"))


def test_save_then_load_preserves_exact_prices(store, catalog):
    store.save(catalog)
    loaded = store.load()

    assert loaded is not None
    assert list(loaded.levels) == list(catalog.levels)
    assert [str(level.buy_price) for level in loaded.levels] == [
        str(level.buy_price) for level in catalog.levels
    ]
    assert loaded.matches("BNBUSDT", D("1"), D("100"), D("110"))


def test_decimals_are_stored_as_strings(store, catalog):
    store.save(catalog)

    document = json.loads(store.path.read_text())

    assert document["levels"][0]["buy_price"] == "100.00"
    assert document["levels"][-1]["next_sell_price"] is None
    assert not list(store.path.parent.glob("*.tmp"))


def test_load_missing_returns_none(store):
    assert store.load() is None


def test_load_corrupt_raises_catalog_error(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json")

    with pytest.raises(CatalogError):
        store.load()


def test_load_rejects_document_breaking_ordering(store, catalog):
    document = catalog_to_dict(catalog)
    document["levels"][1]["buy_price"] = "99.00"
    store.path.parent.mkdir(parents=True)
    store.path.write_text(json.dumps(document))

    with pytest.raises(CatalogError):
        store.load()


def test_matching_stored_catalog_is_reused(store, catalog):
    store.save(catalog)
    client = MagicMock()

    result = load_or_build_catalog(client, store, "BNBUSDT", D("1"), D("100"), D("110"))

    client.fetch_symbol_rules.assert_not_called()
    assert len(result) == len(catalog)


def test_parameter_change_triggers_rebuild(store, catalog, rules):
    store.save(catalog)
    client = MagicMock()
    client.fetch_symbol_rules.return_value = rules

    result = load_or_build_catalog(client, store, "BNBUSDT", D("2"), D("100"), D("110"))

    client.fetch_symbol_rules.assert_called_once_with("BNBUSDT")
    assert result.step_percent == D("2")
    assert store.load().step_percent == D("2")


def test_corrupt_file_is_rebuilt(store, rules, caplog):
    store.path.parent.mkdir(parents=True)
    store.path.write_text("garbage")
    client = MagicMock()
    client.fetch_symbol_rules.return_value = rules

    with caplog.at_level("WARNING"):
        result = load_or_build_catalog(client, store, "BNBUSDT", D("1"), D("100"), D("110"))

    assert len(result) == 10
    assert any(getattr(record, "event", None) == "catalog_corrupt" for record in caplog.records)
    assert store.load() is not None


def test_single_level_catalog_is_not_reused(store, rules):
    single = PriceLadderCatalog.build(rules, "BNBUSDT", D("1"), D("100"), D("100"))
    store.save(single)
    client = MagicMock()
    client.fetch_symbol_rules.return_value = rules

    load_or_build_catalog(client, store, "BNBUSDT", D("1"), D("100"), D("100"))

    client.fetch_symbol_rules.assert_called_once()


def test_default_path_lives_in_the_app_data_dir(monkeypatch, tmp_path):
    monkeypatch.setattr(config_loader.appdirs, "user_data_dir", lambda name: str(tmp_path / name))

    store = CatalogStore()

    assert store.path == tmp_path / "grid_bot" / "grid_catalog.json"
