import sqlite3
from pathlib import Path

import pytest

from stockcost.config import Settings, get_app_paths, load_settings
from stockcost.domain.errors import ValidationError
from stockcost.repositories.sqlite_repo import SqliteRepository


def test_migrations_are_versioned_and_idempotent(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "m.db")
    repo.init_db()
    repo.init_db()

    conn = sqlite3.connect(tmp_path / "m.db")
    versions = [r[0] for r in conn.execute("SELECT version FROM schema_migrations ORDER BY version")]
    tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    conn.close()

    assert versions == [1, 2]
    assert {
        "products",
        "stock_movements",
        "sequences",
        "purchases",
        "purchase_items",
        "sales",
        "sale_items",
        "sale_item_components",
        "fx_rates",
    } <= tables
    assert repo.integrity_check() == "ok"


def test_sale_item_shape_is_enforced_by_schema(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "m.db")
    repo.init_db()
    conn = repo._conn()
    conn.execute(
        "INSERT INTO sales (sale_number, subtotal, total, payment_method, status, created_at, updated_at) "
        "VALUES ('V1', '0', '0', 'cash', 'completed', 'now', 'now')"
    )
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            "INSERT INTO sale_items (sale_id, item_type, product_id, display_name, quantity, unit_price, total_price) "
            "VALUES (1, 'combo', NULL, NULL, 1, '1', '1')"
        )
    conn.rollback()
    conn.close()


def test_settings_defaults_and_env_overrides():
    assert load_settings({}) == Settings()

    s = load_settings(
        {
            "STOCKCOST_LOCAL_CURRENCY": "usd",
            "STOCKCOST_CANCEL_TIMEOUT_SECONDS": "20",
            "STOCKCOST_RETRY_ATTEMPTS": "5",
        }
    )
    assert s.local_currency == "USD"
    assert s.cancel_timeout_seconds == 20
    assert s.retry_attempts == 5
    assert s.lock_wait_seconds == 5


@pytest.mark.parametrize(
    "env",
    [
        {"STOCKCOST_CANCEL_TIMEOUT_SECONDS": "5"},
        {"STOCKCOST_LOCK_WAIT_SECONDS": "soon"},
        {"STOCKCOST_LOCAL_CURRENCY": "XYZ"},
        {"STOCKCOST_NUMBER_ATTEMPTS": "0"},
    ],
)
def test_invalid_settings_are_rejected(env):
    with pytest.raises(ValidationError):
        load_settings(env)


def test_app_paths_honour_home_override(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("STOCKCOST_HOME", str(tmp_path / "home"))
    paths = get_app_paths()
    assert paths.db_path == tmp_path / "home" / "stockcost.db"
    assert paths.logs_dir.is_dir()
