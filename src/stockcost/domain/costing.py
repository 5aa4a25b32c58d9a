"""Landed-cost allocation for purchases.

Pure functions only: no database, no clock, no logging side effects. The
purchase service calls :func:`allocate_costs` for previews while a purchase
is being edited and authoritatively before completion; both paths get the
same numbers for the same inputs.

Rounding rule:
    All arithmetic runs on ``Decimal`` at full context precision. The overhead
    total is settled to cents first (converted foreign overhead included) so
    that it can be handed out in whole minor units. Each line's exact share is
    rounded down to 0.01 and the cents left over go one at a time to the lines
    with the largest fractional remainder, the later line winning a tie. No line
    drifts more than one cent from its exact share or goes below zero, and
    the distributed amounts add up to the overhead total exactly. Unit and total
    costs keep full precision and are only rounded by :func:`money` when shown.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional, Sequence

from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0")


def as_decimal(value: object, field: str) -> Decimal:
    """Coerce user input (str, int, float or Decimal) into a finite Decimal."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number.", field=field)
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, float):
            result = Decimal(repr(value))
        else:
            result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} must be a number. Received: {value!r}", field=field) from e
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number.", field=field)
    return result


def as_quantity(value: object, field: str = "quantity", label: str | None = None) -> int:
    """Whole units only; strings are accepted the way int() accepts them."""
    label = label or field
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a positive integer.", field=field)
    try:
        qty = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{label} must be a positive integer. Received: {value!r}", field=field) from e
    if (not isinstance(value, str) and qty != value) or qty <= 0:
        raise ValidationError(f"{label} must be a positive integer. Received: {value!r}", field=field)
    return qty


def optional_decimal(value: object, field: str) -> Optional[Decimal]:
    return None if value is None else as_decimal(value, field)


def money(value: Decimal) -> Decimal:
    """Presentation rounding: two places, half-up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OverheadCosts:
    freight: Decimal = ZERO
    customs: Decimal = ZERO
    tax: Decimal = ZERO
    insurance: Decimal = ZERO
    other: Decimal = ZERO

    def as_dict(self) -> dict[str, Decimal]:
        return {
            "freight": self.freight,
            "customs": self.customs,
            "tax": self.tax,
            "insurance": self.insurance,
            "other": self.other,
        }

    @property
    def total(self) -> Decimal:
        return sum(self.as_dict().values(), ZERO)


@dataclass(frozen=True)
class CostLine:
    product_id: int
    quantity: int
    unit_price_local: Decimal
    unit_price_foreign: Optional[Decimal] = None

    @property
    def subtotal_local(self) -> Decimal:
        return self.unit_price_local * self.quantity


@dataclass(frozen=True)
class AllocatedLine:
    product_id: int
    quantity: int
    unit_price_local: Decimal
    unit_price_foreign: Optional[Decimal]
    proportion: Decimal
    distributed_costs: Decimal
    final_unit_cost: Decimal
    total_cost: Decimal
    distributed_costs_foreign: Optional[Decimal] = None
    final_cost_foreign: Optional[Decimal] = None

    @property
    def subtotal_local(self) -> Decimal:
        return self.unit_price_local * self.quantity


@dataclass(frozen=True)
class AllocationResult:
    currency: str
    exchange_rate: Optional[Decimal]
    subtotal_local: Decimal
    subtotal_foreign: Optional[Decimal]
    foreign_bucket: Decimal
    local_bucket: Decimal
    foreign_costs_local: Decimal
    total_costs: Decimal
    rounding_adjustment: Decimal
    lines: tuple[AllocatedLine, ...]

    @property
    def total(self) -> Decimal:
        return self.subtotal_local + self.total_costs

    @property
    def distributed_total(self) -> Decimal:
        return sum((line.distributed_costs for line in self.lines), ZERO)

    @property
    def unallocated(self) -> Decimal:
        return self.total_costs - self.distributed_total


def split_cost_buckets(costs: OverheadCosts, is_foreign: bool) -> tuple[Decimal, Decimal]:
    """Return ``(foreign_total, local_total)``.

    Tax is a local-jurisdiction charge and always lands in the local bucket.
    Every other overhead is billed in the purchase currency.
    """
    if not is_foreign:
        return ZERO, costs.total
    foreign = costs.freight + costs.customs + costs.insurance + costs.other
    return foreign, costs.tax


def resolve_unit_price_local(
    unit_price_local: Optional[Decimal],
    unit_price_foreign: Optional[Decimal],
    exchange_rate: Optional[Decimal],
) -> Decimal:
    if unit_price_local is not None:
        return unit_price_local
    if unit_price_foreign is not None and exchange_rate is not None:
        return unit_price_foreign * exchange_rate
    raise ValidationError("Each item needs a local unit price.", field="unit_price_local")


def _validate(lines: Sequence[CostLine], costs: OverheadCosts, is_foreign: bool, exchange_rate: Optional[Decimal]) -> None:
    if not lines:
        raise ValidationError("Purchase needs at least one item.", field="items")
    for idx, line in enumerate(lines, start=1):
        if int(line.quantity) <= 0:
            raise ValidationError(f"Item {idx}: quantity must be > 0.", field="quantity")
        if line.unit_price_local < 0:
            raise ValidationError(f"Item {idx}: unit price must be >= 0.", field="unit_price_local")
        if line.unit_price_foreign is not None and line.unit_price_foreign < 0:
            raise ValidationError(f"Item {idx}: foreign unit price must be >= 0.", field="unit_price_foreign")
    for name, value in costs.as_dict().items():
        if value < 0:
            raise ValidationError(f"{name} cost must be >= 0.", field=f"{name}_cost")
    if is_foreign and (exchange_rate is None or exchange_rate <= 0):
        raise ValidationError("Exchange rate must be > 0 for foreign currency purchases.", field="exchange_rate")


def foreign_mirror(
    distributed_costs: Decimal,
    unit_price_foreign: Optional[Decimal],
    quantity: int,
    exchange_rate: Optional[Decimal],
) -> tuple[Optional[Decimal], Optional[Decimal]]:
    """Foreign-currency view of a line, derived from its local distributed cost."""
    if unit_price_foreign is None or not exchange_rate:
        return None, None
    distributed_foreign = distributed_costs / exchange_rate
    return distributed_foreign, unit_price_foreign + distributed_foreign / int(quantity)


def _distribute_cents(total: Decimal, exact: Sequence[Decimal], eligible: Sequence[bool]) -> tuple[list[Decimal], Decimal]:
    """Largest-remainder split of ``total`` (already in cents) over ``exact`` shares.

    Returns the per-line amounts and the cents handed out after flooring.
    """
    shares = [share.quantize(CENT, rounding=ROUND_DOWN) if ok else ZERO for share, ok in zip(exact, eligible)]
    leftover = total - sum(shares, ZERO)
    if not any(eligible) or leftover <= 0:
        return shares, ZERO
    # ties go to the later line
    order = sorted(
        (idx for idx, ok in enumerate(eligible) if ok),
        key=lambda idx: (exact[idx] - shares[idx], idx),
        reverse=True,
    )
    cents = int(leftover / CENT)
    for idx in order[:cents]:
        shares[idx] += CENT
    return shares, leftover


def allocate_costs(
    lines: Iterable[CostLine],
    costs: OverheadCosts,
    *,
    currency: str,
    local_currency: str,
    exchange_rate: Optional[Decimal] = None,
) -> AllocationResult:
    lines = list(lines)
    is_foreign = currency != local_currency
    _validate(lines, costs, is_foreign, exchange_rate)
    rate = exchange_rate if is_foreign else None

    subtotal_local = sum((line.subtotal_local for line in lines), ZERO)
    subtotal_foreign = None
    if is_foreign:
        subtotal_foreign = sum(((line.unit_price_foreign or ZERO) * line.quantity for line in lines), ZERO)

    foreign_bucket, local_bucket = split_cost_buckets(costs, is_foreign)
    foreign_costs_local = foreign_bucket * rate if rate is not None else ZERO
    total_costs = money(foreign_costs_local + local_bucket)

    proportions = [line.subtotal_local / subtotal_local if subtotal_local > 0 else ZERO for line in lines]
    shares, rounding_adjustment = _distribute_cents(
        total_costs,
        [total_costs * proportion for proportion in proportions],
        [line.subtotal_local > 0 for line in lines],
    )

    allocated: list[AllocatedLine] = []
    for line, proportion, distributed in zip(lines, proportions, shares):
        qty = int(line.quantity)
        final_unit_cost = line.unit_price_local + distributed / qty
        # derived from the local figure so both views agree under one rate
        distributed_foreign, final_foreign = foreign_mirror(distributed, line.unit_price_foreign, qty, rate)
        allocated.append(
            AllocatedLine(
                product_id=int(line.product_id),
                quantity=qty,
                unit_price_local=line.unit_price_local,
                unit_price_foreign=line.unit_price_foreign,
                proportion=proportion,
                distributed_costs=distributed,
                final_unit_cost=final_unit_cost,
                total_cost=line.subtotal_local + distributed,
                distributed_costs_foreign=distributed_foreign,
                final_cost_foreign=final_foreign,
            )
        )

    return AllocationResult(
        currency=currency,
        exchange_rate=rate,
        subtotal_local=subtotal_local,
        subtotal_foreign=subtotal_foreign,
        foreign_bucket=foreign_bucket,
        local_bucket=local_bucket,
        foreign_costs_local=foreign_costs_local,
        total_costs=total_costs,
        rounding_adjustment=rounding_adjustment,
        lines=tuple(allocated),
    )
