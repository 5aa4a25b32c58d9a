import sqlite3
from pathlib import Path

import pytest

from conftest import build_app
from stockcost.domain.errors import InsufficientStockError, InvariantError, ProductNotFoundError, ValidationError
from stockcost.domain.models import MovementType
from stockcost.repositories.unit_of_work import SqliteUnitOfWork


def test_opening_stock_is_posted_as_a_movement(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-1", "Tornillo", cost="2.50", retail_price="4", stock=12, min_stock=2)

    moves = app.inventory.movements(pid)
    assert len(moves) == 1
    assert moves[0].type is MovementType.IN
    assert moves[0].quantity == 12
    assert moves[0].reason == "Opening balance"
    assert moves[0].stock_after == 12
    assert app.inventory.get_product(pid).stock == 12


def test_product_without_stock_has_no_movements(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-0", "Vacio")
    assert app.inventory.movements(pid) == []
    assert app.operations.audit_ledger() == []


def test_duplicate_sku_is_a_validation_error(tmp_path: Path):
    app = build_app(tmp_path)
    app.inventory.add_product("SKU-1", "Uno", stock=1)
    with pytest.raises(ValidationError, match="SKU already exists"):
        app.inventory.add_product("SKU-1", "Otro", stock=3)
    assert len(app.inventory.list_products()) == 1


def test_manual_adjustments_keep_stock_equal_to_movements(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-A", "Arandela", stock=5)

    app.inventory.adjust_stock(pid, 7, reference="recount")
    app.inventory.adjust_stock(pid, -10)

    product = app.inventory.get_product(pid)
    moves = app.inventory.movements(pid)
    assert product.stock == 2
    assert sum(m.signed_quantity for m in moves) == product.stock
    assert [m.stock_after for m in moves] == [5, 12, 2]
    assert moves[-1].reason == "Manual adjustment"


def test_out_movement_below_zero_is_rejected(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-B", "Bulon", stock=3)

    with pytest.raises(InsufficientStockError) as exc:
        app.inventory.adjust_stock(pid, -4)
    assert exc.value.available == 3
    assert exc.value.requested == 4
    assert app.inventory.get_product(pid).stock == 3
    assert len(app.inventory.movements(pid)) == 1


def test_movement_for_unknown_product(tmp_path: Path):
    app = build_app(tmp_path)
    with pytest.raises(ProductNotFoundError):
        app.inventory.adjust_stock(999, 1)


def test_movements_are_append_only(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-C", "Clavo", stock=4)

    conn = app.repo._conn()
    try:
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            conn.execute("UPDATE stock_movements SET quantity=40 WHERE product_id=?", (pid,))
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            conn.execute("DELETE FROM stock_movements WHERE product_id=?", (pid,))
    finally:
        conn.rollback()
        conn.close()
    assert app.inventory.movements(pid)[0].quantity == 4


def test_commit_is_refused_when_stock_and_movements_disagree(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-D", "Tuerca", stock=4)

    with pytest.raises(InvariantError):
        with SqliteUnitOfWork(app.repo) as uow:
            uow.ledger.apply_movement(pid, MovementType.IN, 1, "Manual adjustment")
            # a write that bypasses the ledger
            uow.cur.execute("UPDATE products SET stock = stock + 100 WHERE id=?", (pid,))

    assert app.inventory.get_product(pid).stock == 4
    assert len(app.inventory.movements(pid)) == 1


def test_audit_reports_drift_written_outside_the_ledger(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-E", "Perno", stock=4)

    conn = app.repo._conn()
    conn.execute("UPDATE products SET stock = 9 WHERE id=?", (pid,))
    conn.commit()
    conn.close()

    assert app.operations.audit_ledger() == [(pid, 9, 4)]
    report = app.operations.run_health_check()
    assert report.sqlite_integrity == "ok"
    assert not report.healthy


def test_low_stock_and_lookup_by_sku(tmp_path: Path):
    app = build_app(tmp_path)
    low = app.inventory.add_product("SKU-L", "Poco", stock=1, min_stock=5)
    app.inventory.add_product("SKU-H", "Mucho", stock=50, min_stock=5)

    assert [p.id for p in app.inventory.low_stock()] == [low]
    assert app.inventory.get_product_by_sku("SKU-H").stock == 50
    with pytest.raises(ProductNotFoundError):
        app.inventory.get_product_by_sku("NOPE")
