from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional

from stockcost.config import SUPPORTED_CURRENCIES, Settings
from stockcost.domain.costing import (
    ZERO,
    AllocationResult,
    CostLine,
    OverheadCosts,
    allocate_costs,
    as_decimal,
    as_quantity,
    optional_decimal,
    resolve_unit_price_local,
)
from stockcost.domain.errors import (
    AlreadyCompletedError,
    FxUnavailableError,
    InvalidTransitionError,
    NotDeletableError,
    NotEditableError,
    ProductInactiveError,
    ProductNotFoundError,
    PurchaseCancelledError,
    PurchaseNotFoundError,
    SupplierNotFoundError,
    ValidationError,
)
from stockcost.domain.models import (
    DELETABLE_PURCHASE_STATUSES,
    EDITABLE_PURCHASE_STATUSES,
    PURCHASE_FLOW,
    MovementType,
    Purchase,
    PurchaseInput,
    PurchaseItemInput,
    PurchaseStatus,
    PurchaseType,
)
from stockcost.repositories.contracts import PurchaseRepository
from stockcost.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork, retrying

log = logging.getLogger("stockcost.purchases")

PURCHASE_COMPLETED = "Purchase completed"


@dataclass(frozen=True)
class _PreparedPurchase:
    type: PurchaseType
    currency: str
    costs: OverheadCosts
    items: tuple[PurchaseItemInput, ...]
    allocation: AllocationResult


class PurchaseService:
    def __init__(
        self,
        repo: PurchaseRepository,
        fx_service=None,
        settings: Settings | None = None,
        uow_factory: Callable[..., UnitOfWork] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repo = repo
        self.fx = fx_service
        self.settings = settings or Settings()
        self.uow_factory = uow_factory or (
            lambda timeout_seconds=None: SqliteUnitOfWork(repo, timeout_seconds or self.settings.tx_timeout_seconds)
        )
        self.sleep = sleep

    # ---------- Input normalization ----------
    def _prepare(self, data: PurchaseInput) -> _PreparedPurchase:
        local = self.settings.local_currency
        currency = (data.currency or local).strip().upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency}", field="currency")
        try:
            ptype = PurchaseType(data.type)
        except ValueError as e:
            raise ValidationError(f"Unknown purchase type: {data.type}", field="type") from e

        is_foreign = currency != local
        rate = optional_decimal(data.exchange_rate, "exchange_rate") if is_foreign else None
        if is_foreign and (rate is None or rate <= 0):
            raise ValidationError(
                f"Exchange rate is required for {currency} purchases.", field="exchange_rate"
            )

        costs = OverheadCosts(
            freight=as_decimal(data.freight_cost, "freight_cost"),
            customs=as_decimal(data.customs_cost, "customs_cost"),
            tax=as_decimal(data.tax_cost, "tax_cost"),
            insurance=as_decimal(data.insurance_cost, "insurance_cost"),
            other=as_decimal(data.other_costs, "other_costs"),
        )

        items = tuple(data.items or ())
        if not items:
            raise ValidationError("Purchase needs at least one item.", field="items")

        lines: list[CostLine] = []
        normalized: list[PurchaseItemInput] = []
        for idx, it in enumerate(items, start=1):
            qty = as_quantity(it.quantity, label=f"Item {idx}: quantity")
            unit_foreign = optional_decimal(it.unit_price_foreign, "unit_price_foreign") if is_foreign else None
            unit_local = resolve_unit_price_local(
                optional_decimal(it.unit_price_local, "unit_price_local"), unit_foreign, rate
            )
            prices = {}
            for field_name in ("wholesale_price", "retail_price"):
                price = optional_decimal(getattr(it, field_name), field_name)
                if price is not None and price < ZERO:
                    raise ValidationError(f"Item {idx}: {field_name} must be >= 0.", field=field_name)
                prices[field_name] = price
            lines.append(CostLine(int(it.product_id), qty, unit_local, unit_foreign))
            normalized.append(replace(it, product_id=int(it.product_id), quantity=qty, **prices))

        allocation = allocate_costs(lines, costs, currency=currency, local_currency=local, exchange_rate=rate)
        return _PreparedPurchase(type=ptype, currency=currency, costs=costs, items=tuple(normalized), allocation=allocation)

    def _check_references(self, uow, supplier_id: int, product_ids: Iterable[int]) -> None:
        if not uow.supplier_exists(supplier_id):
            raise SupplierNotFoundError(supplier_id)
        for pid in sorted(set(product_ids)):
            product = uow.get_product(pid)
            if not product:
                raise ProductNotFoundError(pid)
            if not product.active:
                raise ProductInactiveError(pid, product.name)

    def _run(self, operation: Callable[[], Purchase]) -> Purchase:
        return retrying(
            operation,
            attempts=self.settings.retry_attempts,
            backoff_seconds=self.settings.retry_backoff_seconds,
            sleep=self.sleep,
        )

    # ---------- Use-cases ----------
    def preview_costs(self, data: PurchaseInput) -> AllocationResult:
        """Run the allocation without touching the database."""
        return self._prepare(data).allocation

    def create_purchase(self, data: PurchaseInput) -> Purchase:
        prepared = self._prepare(data)
        order_date = data.order_date or date.today().isoformat()

        def run() -> Purchase:
            with self.uow_factory() as uow:
                self._check_references(uow, data.supplier_id, (ln.product_id for ln in prepared.allocation.lines))
                number = uow.next_number(
                    "purchase",
                    lambda n: f"PC-{n:06d}",
                    "purchases",
                    "purchase_number",
                    self.settings.number_attempts,
                )
                purchase_id = uow.insert_purchase(
                    purchase_number=number,
                    supplier_id=data.supplier_id,
                    type=prepared.type,
                    currency=prepared.currency,
                    exchange_type=data.exchange_type,
                    costs=prepared.costs.as_dict(),
                    allocation=prepared.allocation,
                    order_date=order_date,
                    expected_date=data.expected_date,
                    notes=data.notes,
                )
                uow.replace_purchase_items(purchase_id, prepared.allocation.lines, prepared.items)
                return uow.get_purchase(purchase_id)

        purchase = self._run(run)
        log.info(
            "purchase_created purchase_id=%s number=%s currency=%s items=%s total=%s",
            purchase.id,
            purchase.purchase_number,
            purchase.currency,
            len(purchase.items),
            purchase.total,
        )
        return purchase

    def edit_purchase(self, purchase_id: int, data: PurchaseInput) -> Purchase:
        """Replace header and items; costs are recomputed from scratch."""
        prepared = self._prepare(data)

        def run() -> Purchase:
            with self.uow_factory() as uow:
                current = uow.get_purchase(purchase_id)
                if not current:
                    raise PurchaseNotFoundError(purchase_id)
                if current.status not in EDITABLE_PURCHASE_STATUSES:
                    raise NotEditableError(current.purchase_number, current.status.value)
                self._check_references(uow, data.supplier_id, (ln.product_id for ln in prepared.allocation.lines))
                uow.update_purchase(
                    purchase_id=current.id,
                    supplier_id=data.supplier_id,
                    type=prepared.type,
                    currency=prepared.currency,
                    exchange_type=data.exchange_type,
                    costs=prepared.costs.as_dict(),
                    allocation=prepared.allocation,
                    order_date=data.order_date or current.order_date,
                    expected_date=data.expected_date,
                    notes=data.notes,
                )
                uow.replace_purchase_items(current.id, prepared.allocation.lines, prepared.items)
                return uow.get_purchase(current.id)

        purchase = self._run(run)
        log.info("purchase_edited purchase_id=%s number=%s total=%s", purchase.id, purchase.purchase_number, purchase.total)
        return purchase

    def update_status(
        self,
        purchase_id: int,
        status: PurchaseStatus | str,
        received_date: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Purchase:
        try:
            target = PurchaseStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown purchase status: {status}", field="status") from e

        with self.uow_factory() as uow:
            current = uow.get_purchase(purchase_id)
            if not current:
                raise PurchaseNotFoundError(purchase_id)
            if current.status is PurchaseStatus.COMPLETED:
                raise AlreadyCompletedError(current.purchase_number)
            if current.status is PurchaseStatus.CANCELLED:
                raise PurchaseCancelledError(current.purchase_number)
            # completion posts stock; it has its own entry point
            if target is PurchaseStatus.COMPLETED or (
                target is not PurchaseStatus.CANCELLED
                and PURCHASE_FLOW.index(target) <= PURCHASE_FLOW.index(current.status)
            ):
                raise InvalidTransitionError(current.purchase_number, current.status.value, target.value)

            if target is PurchaseStatus.RECEIVED:
                received_date = received_date or date.today().isoformat()
            uow.set_purchase_status(current.id, target, received_date=received_date, notes=notes)
            purchase = uow.get_purchase(current.id)

        log.info(
            "purchase_status_changed purchase_id=%s number=%s from=%s to=%s",
            purchase.id,
            purchase.purchase_number,
            current.status.value,
            target.value,
        )
        return purchase

    def complete_purchase(self, purchase_id: int) -> Purchase:
        """Post every item to stock and take its landed cost as the product cost."""

        def run() -> Purchase:
            with self.uow_factory() as uow:
                current = uow.get_purchase(purchase_id)
                if not current:
                    raise PurchaseNotFoundError(purchase_id)
                if current.status is PurchaseStatus.COMPLETED:
                    raise AlreadyCompletedError(current.purchase_number)
                if current.status is PurchaseStatus.CANCELLED:
                    raise PurchaseCancelledError(current.purchase_number)

                for item in current.items:
                    uow.ledger.apply_movement(
                        item.product_id,
                        MovementType.IN,
                        item.quantity,
                        PURCHASE_COMPLETED,
                        current.purchase_number,
                    )
                    uow.set_product_cost_and_prices(
                        item.product_id,
                        item.final_unit_cost,
                        retail_price=_positive_or_none(item.retail_price),
                        wholesale_price=_positive_or_none(item.wholesale_price),
                    )
                uow.set_purchase_status(current.id, PurchaseStatus.COMPLETED, received_date=date.today().isoformat())
                return uow.get_purchase(current.id)

        purchase = self._run(run)
        log.info(
            "purchase_completed purchase_id=%s number=%s items=%s units=%s",
            purchase.id,
            purchase.purchase_number,
            len(purchase.items),
            sum(it.quantity for it in purchase.items),
        )
        return purchase

    def delete_purchase(self, purchase_id: int) -> None:
        with self.uow_factory() as uow:
            current = uow.get_purchase(purchase_id)
            if not current:
                raise PurchaseNotFoundError(purchase_id)
            if current.status not in DELETABLE_PURCHASE_STATUSES:
                raise NotDeletableError(current.purchase_number, current.status.value)
            uow.delete_purchase(current.id)
        log.info("purchase_deleted purchase_id=%s number=%s", current.id, current.purchase_number)

    def get_purchase(self, purchase_id: int) -> Purchase:
        p = self.repo.get_purchase(int(purchase_id))
        if not p:
            raise PurchaseNotFoundError(purchase_id)
        return p

    def list_purchases(self, status: PurchaseStatus | None = None, supplier_id: int | None = None) -> list[Purchase]:
        return self.repo.list_purchases(status=status, supplier_id=supplier_id)

    def quote_exchange_rate(self, currency: str) -> Decimal:
        if self.fx is None:
            raise FxUnavailableError("No exchange-rate provider configured.")
        return self.fx.get_today_rate(currency)


def _positive_or_none(value: Optional[Decimal]) -> Optional[Decimal]:
    return value if value is not None and value > 0 else None
