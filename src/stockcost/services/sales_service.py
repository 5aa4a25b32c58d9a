from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional

from stockcost.config import Settings
from stockcost.domain.costing import ZERO, as_decimal, as_quantity
from stockcost.domain.errors import (
    AlreadyCancelledError,
    CustomerNotFoundError,
    InsufficientStockError,
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
    Sale,
    SaleInput,
    SaleItem,
    SaleItemComponent,
    SaleStatus,
    SaleUpdate,
    SimpleSaleItem,
    stock_effects,
)
from stockcost.repositories.contracts import SaleRepository
from stockcost.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork, retrying

log = logging.getLogger("stockcost.sales")

HUNDRED = Decimal("100")


def _reason(base: str, label: Optional[str]) -> str:
    return f"{base} - {label}" if label else base


def _rate(value: object, field: str) -> Decimal:
    rate = as_decimal(value, field)
    if rate < ZERO or rate > HUNDRED:
        raise ValidationError(f"{field} must be between 0 and 100.", field=field)
    return rate


def _sale_status(value: object) -> SaleStatus:
    try:
        return SaleStatus(value)
    except ValueError as e:
        raise ValidationError(f"Unknown sale status: {value}", field="status") from e


def _payment_method(value: object) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError as e:
        raise ValidationError(f"Unknown payment method: {value}", field="payment_method") from e


def normalize_items(items: Iterable[SaleItem]) -> tuple[SaleItem, ...]:
    """Validate sale lines and coerce their numbers; rejects the whole cart on the first bad line."""
    items = tuple(items or ())
    if not items:
        raise ValidationError("Cart is empty.", field="items")

    result: list[SaleItem] = []
    for idx, it in enumerate(items, start=1):
        if not isinstance(it, (SimpleSaleItem, CompositeSaleItem)):
            raise ValidationError(f"Item {idx}: unknown sale item {type(it).__name__}.", field="items")
        qty = as_quantity(it.quantity, label=f"Item {idx}: quantity")
        unit_price = as_decimal(it.unit_price, "unit_price")
        if unit_price < ZERO:
            raise ValidationError(f"Item {idx}: unit price must be >= 0.", field="unit_price")

        if isinstance(it, SimpleSaleItem):
            result.append(replace(it, product_id=int(it.product_id), quantity=qty, unit_price=unit_price))
        else:
            if it.item_type not in (ItemType.COMBO, ItemType.GROUPED):
                raise ValidationError(f"Item {idx}: composite lines must be combo or grouped.", field="item_type")
            name = (it.display_name or "").strip()
            if not name:
                raise ValidationError(f"Item {idx}: display name is required.", field="display_name")
            if not it.components:
                raise ValidationError(f"Item {idx}: {name} has no components.", field="components")
            components = tuple(
                SaleItemComponent(
                    product_id=int(c.product_id),
                    quantity=as_quantity(c.quantity, label=f"Item {idx}: component quantity"),
                )
                for c in it.components
            )
            result.append(
                replace(it, display_name=name, quantity=qty, unit_price=unit_price, components=components)
            )
    return tuple(result)


def stock_requirements(items: Iterable[SaleItem]) -> Counter[int]:
    """Units per product taken out of stock by ``items``."""
    needed: Counter[int] = Counter()
    for item in items:
        for effect in stock_effects(item):
            needed[effect.product_id] += effect.quantity
    return needed


def compute_totals(
    items: Iterable[SaleItem],
    discount_rate: Decimal,
    tax_rate: Decimal,
    shipping_cost: Decimal,
) -> dict[str, Decimal]:
    subtotal = sum((item.total_price for item in items), ZERO)
    discount = subtotal * discount_rate / HUNDRED
    tax = (subtotal - discount) * tax_rate / HUNDRED
    return {
        "subtotal": subtotal,
        "discount_rate": discount_rate,
        "discount": discount,
        "tax_rate": tax_rate,
        "tax": tax,
        "shipping_cost": shipping_cost,
        "total": subtotal - discount + tax + shipping_cost,
    }


class SalesService:
    def __init__(
        self,
        repo: SaleRepository,
        settings: Settings | None = None,
        uow_factory: Callable[..., UnitOfWork] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repo = repo
        self.settings = settings or Settings()
        self.uow_factory = uow_factory or (
            lambda timeout_seconds=None: SqliteUnitOfWork(repo, timeout_seconds or self.settings.tx_timeout_seconds)
        )
        self.sleep = sleep

    def _check_available(self, uow, needed: dict[int, int]) -> None:
        for pid in sorted(needed):
            product = uow.get_product(pid)
            if not product:
                raise ProductNotFoundError(pid)
            if not product.active:
                raise ProductInactiveError(pid, product.name)
            if needed[pid] > int(product.stock):
                raise InsufficientStockError(pid, int(product.stock), needed[pid], name=product.name)

    def create_sale(self, data: SaleInput) -> Sale:
        """
        Validate every line, then take all stock in one transaction.

        Combo and grouped lines take ``component.quantity * line.quantity`` of
        each component product. Needs are summed per product across lines
        before checking stock, so one product shared by two lines can not
        oversell.
        """
        items = normalize_items(data.items)
        shipping = as_decimal(data.shipping_cost, "shipping_cost")
        if shipping < ZERO:
            raise ValidationError("Shipping cost must be >= 0.", field="shipping_cost")
        totals = compute_totals(
            items,
            _rate(data.discount_rate, "discount_rate"),
            _rate(data.tax_rate, "tax_rate"),
            shipping,
        )
        payment_method = _payment_method(data.payment_method)
        needed = stock_requirements(items)

        def run() -> Sale:
            with self.uow_factory() as uow:
                if data.customer_id is not None and not uow.customer_exists(data.customer_id):
                    raise CustomerNotFoundError(data.customer_id)
                self._check_available(uow, needed)

                prefix = date.today().strftime("%y%m%d")
                number = uow.next_number(
                    "sale",
                    lambda n: f"V{prefix}-{n:06d}",
                    "sales",
                    "sale_number",
                    self.settings.number_attempts,
                )
                sale_id = uow.insert_sale(
                    sale_number=number,
                    customer_id=data.customer_id,
                    totals=totals,
                    shipping_type=data.shipping_type,
                    payment_method=payment_method,
                    notes=data.notes,
                )
                uow.replace_sale_items(sale_id, items)
                for item in items:
                    for effect in stock_effects(item):
                        uow.ledger.apply_movement(
                            effect.product_id,
                            MovementType.OUT,
                            effect.quantity,
                            _reason("Sale", effect.label),
                            number,
                        )
                return uow.get_sale(sale_id)

        sale = retrying(
            run,
            attempts=self.settings.retry_attempts,
            backoff_seconds=self.settings.retry_backoff_seconds,
            sleep=self.sleep,
        )
        log.info(
            "sale_created sale_id=%s number=%s items=%s units=%s total=%s",
            sale.id,
            sale.sale_number,
            len(sale.items),
            sum(needed.values()),
            sale.total,
        )
        return sale

    def cancel_sale(self, sale_id: int) -> Sale:
        """Return every unit the sale took; a sale is reversed at most once."""
        with self.uow_factory(timeout_seconds=self.settings.cancel_timeout_seconds) as uow:
            sale = uow.get_sale(sale_id)
            if not sale:
                raise SaleNotFoundError(sale_id)
            if sale.status is SaleStatus.CANCELLED or not uow.mark_sale_cancelled(sale.id):
                raise AlreadyCancelledError(sale.sale_number)

            for item in sale.items:
                for effect in stock_effects(item):
                    uow.ledger.apply_movement(
                        effect.product_id,
                        MovementType.IN,
                        effect.quantity,
                        _reason("Sale cancelled", effect.label),
                        sale.sale_number,
                    )
            cancelled = uow.get_sale(sale.id)

        log.info("sale_cancelled sale_id=%s number=%s items=%s", cancelled.id, cancelled.sale_number, len(cancelled.items))
        return cancelled

    def edit_sale(self, sale_id: int, update: SaleUpdate) -> Sale:
        status = _sale_status(update.status) if update.status is not None else None
        if status is SaleStatus.CANCELLED:
            raise ValidationError("Use cancel_sale to cancel a sale.", field="status")
        new_items = normalize_items(update.items) if update.items is not None else None

        def run() -> Sale:
            with self.uow_factory() as uow:
                sale = uow.get_sale(sale_id)
                if not sale:
                    raise SaleNotFoundError(sale_id)
                if sale.status is SaleStatus.CANCELLED:
                    raise SaleCancelledError(sale.sale_number)

                items = sale.items
                if new_items is not None:
                    self._reconcile_stock(uow, sale, new_items)
                    uow.replace_sale_items(sale.id, new_items)
                    items = new_items

                shipping = as_decimal(
                    update.shipping_cost if update.shipping_cost is not None else sale.shipping_cost,
                    "shipping_cost",
                )
                if shipping < ZERO:
                    raise ValidationError("Shipping cost must be >= 0.", field="shipping_cost")
                totals = compute_totals(
                    items,
                    _rate(update.discount_rate if update.discount_rate is not None else sale.discount_rate, "discount_rate"),
                    _rate(update.tax_rate if update.tax_rate is not None else sale.tax_rate, "tax_rate"),
                    shipping,
                )
                uow.update_sale(
                    sale.id,
                    totals=totals,
                    payment_method=_payment_method(update.payment_method or sale.payment_method),
                    status=status or sale.status,
                    notes=update.notes if update.notes is not None else sale.notes,
                )
                return uow.get_sale(sale.id)

        edited = retrying(
            run,
            attempts=self.settings.retry_attempts,
            backoff_seconds=self.settings.retry_backoff_seconds,
            sleep=self.sleep,
        )
        log.info("sale_edited sale_id=%s number=%s total=%s", edited.id, edited.sale_number, edited.total)
        return edited

    def _reconcile_stock(self, uow, sale: Sale, new_items: tuple[SaleItem, ...]) -> None:
        before = stock_requirements(sale.items)
        after = stock_requirements(new_items)
        extra = {pid: after[pid] - before[pid] for pid in after if after[pid] > before[pid]}
        self._check_available(uow, extra)

        for pid in sorted(set(before) | set(after)):
            delta = after[pid] - before[pid]
            if delta > 0:
                uow.ledger.apply_movement(pid, MovementType.OUT, delta, "Sale edited", sale.sale_number)
            elif delta < 0:
                uow.ledger.apply_movement(pid, MovementType.IN, -delta, "Sale edited", sale.sale_number)

    def get_sale(self, sale_id: int) -> Sale:
        s = self.repo.get_sale(int(sale_id))
        if not s:
            raise SaleNotFoundError(sale_id)
        return s

    def list_sales(self, status: SaleStatus | None = None, customer_id: int | None = None) -> list[Sale]:
        return self.repo.list_sales(status=status, customer_id=customer_id)
