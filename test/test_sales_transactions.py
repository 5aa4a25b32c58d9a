import re
from decimal import Decimal
from pathlib import Path

import pytest

from conftest import build_app
from stockcost.domain.errors import (
    AlreadyCancelledError,
    CustomerNotFoundError,
    InsufficientStockError,
    InvariantError,
    ProductInactiveError,
    ProductNotFoundError,
    SaleCancelledError,
    SaleNotFoundError,
    ValidationError,
)
from stockcost.domain.models import (
    CompositeSaleItem,
    ItemType,
    MovementType,
    PaymentMethod,
    SaleInput,
    SaleItemComponent,
    SaleStatus,
    SaleUpdate,
    SimpleSaleItem,
    stock_effects,
)
from stockcost.repositories.unit_of_work import SqliteUnitOfWork

D = Decimal


def _combo(x: int, y: int, quantity: int = 2, item_type: ItemType = ItemType.COMBO) -> CompositeSaleItem:
    return CompositeSaleItem(
        item_type=item_type,
        display_name="Combo A",
        quantity=quantity,
        unit_price=D("150"),
        components=(SaleItemComponent(x, 3), SaleItemComponent(y, 1)),
    )


def test_simple_sale_takes_stock_and_computes_totals(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-S", "Simple", stock=10)
    customer = app.contacts.add_customer("Cliente Uno")

    sale = app.sales.create_sale(
        SaleInput(
            items=(SimpleSaleItem(product_id=pid, quantity=2, unit_price=D("100")),),
            customer_id=customer,
            payment_method=PaymentMethod.TRANSFER,
            discount_rate=D("10"),
            tax_rate=D("21"),
            shipping_cost=D("50"),
        )
    )

    assert re.fullmatch(r"V\d{6}-\d{6}", sale.sale_number)
    assert sale.status is SaleStatus.COMPLETED
    assert sale.payment_method is PaymentMethod.TRANSFER
    assert (sale.subtotal, sale.discount, sale.tax, sale.total) == (D("200"), D("20"), D("37.8"), D("267.8"))
    assert app.inventory.get_product(pid).stock == 8
    moves = app.inventory.movements_for_reference(sale.sale_number)
    assert [(m.type, m.quantity, m.reason) for m in moves] == [(MovementType.OUT, 2, "Sale")]


def test_combo_sale_and_cancellation_round_trip(tmp_path: Path):
    app = build_app(tmp_path)
    x = app.inventory.add_product("SKU-X", "Producto X", stock=20)
    y = app.inventory.add_product("SKU-Y", "Producto Y", stock=5)

    sale = app.sales.create_sale(SaleInput(items=(_combo(x, y),)))

    assert app.inventory.get_product(x).stock == 14
    assert app.inventory.get_product(y).stock == 3
    stored = app.sales.get_sale(sale.id).items[0]
    assert isinstance(stored, CompositeSaleItem)
    assert stored.components == (SaleItemComponent(x, 3), SaleItemComponent(y, 1))
    reasons = {m.reason for m in app.inventory.movements_for_reference(sale.sale_number)}
    assert reasons == {"Sale - Combo A"}

    cancelled = app.sales.cancel_sale(sale.id)

    assert cancelled.status is SaleStatus.CANCELLED
    assert app.inventory.get_product(x).stock == 20
    assert app.inventory.get_product(y).stock == 5
    back = [m for m in app.inventory.movements_for_reference(sale.sale_number) if m.type is MovementType.IN]
    assert sorted((m.product_id, m.quantity, m.reason) for m in back) == [
        (x, 6, "Sale cancelled - Combo A"),
        (y, 2, "Sale cancelled - Combo A"),
    ]
    assert app.operations.audit_ledger() == []


def test_cancellation_happens_once(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-S", "Simple", stock=10)
    sale = app.sales.create_sale(SaleInput(items=(SimpleSaleItem(pid, 4, D("1")),)))

    app.sales.cancel_sale(sale.id)
    with pytest.raises(AlreadyCancelledError) as exc:
        app.sales.cancel_sale(sale.id)

    assert exc.value.status == "cancelled"
    assert app.inventory.get_product(pid).stock == 10
    assert len(app.inventory.movements_for_reference(sale.sale_number)) == 2
    with pytest.raises(SaleNotFoundError):
        app.sales.cancel_sale(999)


def test_insufficient_stock_rejects_the_whole_sale(tmp_path: Path):
    app = build_app(tmp_path)
    a = app.inventory.add_product("SKU-A", "A", stock=10)
    b = app.inventory.add_product("SKU-B", "B", stock=1)

    with pytest.raises(InsufficientStockError) as exc:
        app.sales.create_sale(
            SaleInput(items=(SimpleSaleItem(a, 3, D("5")), SimpleSaleItem(b, 2, D("5"))))
        )

    assert exc.value.product_id == b
    assert app.inventory.get_product(a).stock == 10
    assert app.inventory.get_product(b).stock == 1
    assert app.sales.list_sales() == []
    assert len(app.inventory.movements(a)) == 1


def test_needs_are_summed_across_simple_and_combo_lines(tmp_path: Path):
    app = build_app(tmp_path)
    x = app.inventory.add_product("SKU-X", "X", stock=20)
    y = app.inventory.add_product("SKU-Y", "Y", stock=50)

    with pytest.raises(InsufficientStockError) as exc:
        app.sales.create_sale(SaleInput(items=(SimpleSaleItem(x, 10, D("1")), _combo(x, y, quantity=4))))
    assert exc.value.requested == 22

    app.sales.create_sale(SaleInput(items=(SimpleSaleItem(x, 10, D("1")), _combo(x, y, quantity=2, item_type=ItemType.GROUPED))))
    assert app.inventory.get_product(x).stock == 4
    assert app.inventory.get_product(y).stock == 48


def test_unknown_inactive_and_invalid_lines(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-I", "Inactivo", stock=5)
    app.inventory.delete_product(pid)

    with pytest.raises(ProductInactiveError):
        app.sales.create_sale(SaleInput(items=(SimpleSaleItem(pid, 1, D("1")),)))
    with pytest.raises(ProductNotFoundError):
        app.sales.create_sale(SaleInput(items=(SimpleSaleItem(404, 1, D("1")),)))
    with pytest.raises(CustomerNotFoundError):
        app.sales.create_sale(SaleInput(items=(SimpleSaleItem(pid, 1, D("1")),), customer_id=77))
    with pytest.raises(ValidationError):
        app.sales.create_sale(SaleInput(items=()))
    with pytest.raises(ValidationError):
        app.sales.create_sale(SaleInput(items=(SimpleSaleItem(pid, 0, D("1")),)))
    with pytest.raises(ValidationError):
        app.sales.create_sale(SaleInput(items=(SimpleSaleItem(pid, 1, D("1")),), discount_rate=D("120")))
    with pytest.raises(ValidationError):
        app.sales.create_sale(
            SaleInput(items=(CompositeSaleItem(ItemType.COMBO, "Vacio", 1, D("1"), ()),))
        )
    assert app.inventory.get_product(pid).stock == 5


def test_edit_sale_reconciles_stock(tmp_path: Path):
    app = build_app(tmp_path)
    x = app.inventory.add_product("SKU-X", "X", stock=20)
    y = app.inventory.add_product("SKU-Y", "Y", stock=5)
    sale = app.sales.create_sale(SaleInput(items=(SimpleSaleItem(x, 3, D("10")),)))
    assert app.inventory.get_product(x).stock == 17

    more = app.sales.edit_sale(sale.id, SaleUpdate(items=(SimpleSaleItem(x, 5, D("10")),), tax_rate=D("10")))
    assert app.inventory.get_product(x).stock == 15
    assert (more.subtotal, more.tax, more.total) == (D("50"), D("5"), D("55"))

    fewer = app.sales.edit_sale(
        sale.id,
        SaleUpdate(items=(SimpleSaleItem(x, 1, D("10")), SimpleSaleItem(y, 2, D("4")))),
    )
    assert app.inventory.get_product(x).stock == 19
    assert app.inventory.get_product(y).stock == 3
    assert fewer.subtotal == D("18")
    assert fewer.tax_rate == D("10")

    edits = [m for m in app.inventory.movements_for_reference(sale.sale_number) if m.reason == "Sale edited"]
    assert [(m.product_id, m.type, m.quantity) for m in edits] == [
        (x, MovementType.OUT, 2),
        (x, MovementType.IN, 4),
        (y, MovementType.OUT, 2),
    ]

    # cancelling after an edit returns what the sale holds now
    app.sales.cancel_sale(sale.id)
    assert app.inventory.get_product(x).stock == 20
    assert app.inventory.get_product(y).stock == 5
    assert app.operations.audit_ledger() == []


def test_edit_sale_is_all_or_nothing(tmp_path: Path):
    app = build_app(tmp_path)
    x = app.inventory.add_product("SKU-X", "X", stock=4)
    sale = app.sales.create_sale(SaleInput(items=(SimpleSaleItem(x, 3, D("10")),), notes="orig"))

    with pytest.raises(InsufficientStockError):
        app.sales.edit_sale(sale.id, SaleUpdate(items=(SimpleSaleItem(x, 9, D("10")),), notes="changed"))

    again = app.sales.get_sale(sale.id)
    assert again.notes == "orig"
    assert again.items[0].quantity == 3
    assert app.inventory.get_product(x).stock == 1


def test_edit_without_items_keeps_stock(tmp_path: Path):
    app = build_app(tmp_path)
    x = app.inventory.add_product("SKU-X", "X", stock=4)
    sale = app.sales.create_sale(SaleInput(items=(SimpleSaleItem(x, 2, D("10")),)))

    edited = app.sales.edit_sale(
        sale.id,
        SaleUpdate(payment_method=PaymentMethod.CARD, shipping_cost=D("5"), status=SaleStatus.PENDING),
    )

    assert edited.payment_method is PaymentMethod.CARD
    assert edited.status is SaleStatus.PENDING
    assert edited.total == D("25")
    assert app.inventory.get_product(x).stock == 2
    assert app.sales.list_sales(status=SaleStatus.PENDING)[0].id == sale.id


def test_cancelled_sale_can_not_be_edited(tmp_path: Path):
    app = build_app(tmp_path)
    x = app.inventory.add_product("SKU-X", "X", stock=4)
    sale = app.sales.create_sale(SaleInput(items=(SimpleSaleItem(x, 2, D("10")),)))
    app.sales.cancel_sale(sale.id)

    with pytest.raises(SaleCancelledError):
        app.sales.edit_sale(sale.id, SaleUpdate(notes="late"))
    with pytest.raises(ValidationError):
        app.sales.edit_sale(sale.id, SaleUpdate(status=SaleStatus.CANCELLED))
    assert app.inventory.get_product(x).stock == 4


def test_unknown_item_kind_is_refused(tmp_path: Path):
    app = build_app(tmp_path)
    with pytest.raises(InvariantError):
        list(stock_effects(object()))
    with pytest.raises(InvariantError):
        with SqliteUnitOfWork(app.repo) as uow:
            uow.replace_sale_items(1, [object()])
