from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterator, NoReturn, Optional, Union

from .errors import InvariantError


class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"


class PurchaseType(str, Enum):
    LOCAL = "LOCAL"
    IMPORT = "IMPORT"


class PurchaseStatus(str, Enum):
    PENDING = "PENDING"
    ORDERED = "ORDERED"
    SHIPPED = "SHIPPED"
    CUSTOMS = "CUSTOMS"
    RECEIVED = "RECEIVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# forward chain; CANCELLED sits outside it
PURCHASE_FLOW = (
    PurchaseStatus.PENDING,
    PurchaseStatus.ORDERED,
    PurchaseStatus.SHIPPED,
    PurchaseStatus.CUSTOMS,
    PurchaseStatus.RECEIVED,
    PurchaseStatus.COMPLETED,
)
TERMINAL_PURCHASE_STATUSES = frozenset({PurchaseStatus.COMPLETED, PurchaseStatus.CANCELLED})
EDITABLE_PURCHASE_STATUSES = frozenset({PurchaseStatus.PENDING, PurchaseStatus.ORDERED, PurchaseStatus.SHIPPED})
DELETABLE_PURCHASE_STATUSES = frozenset({PurchaseStatus.PENDING, PurchaseStatus.CANCELLED})


class SaleStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ItemType(str, Enum):
    SIMPLE = "simple"
    COMBO = "combo"
    GROUPED = "grouped"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    CHECK = "check"
    CURRENT_ACCOUNT = "current_account"


@dataclass(frozen=True)
class Product:
    id: int
    sku: str
    name: str
    cost: Decimal
    retail_price: Decimal
    wholesale_price: Decimal
    stock: int
    min_stock: int
    max_stock: Optional[int] = None
    active: int = 1


@dataclass(frozen=True)
class Supplier:
    id: int
    name: str
    country: Optional[str] = None
    active: int = 1


@dataclass(frozen=True)
class Customer:
    id: int
    name: str
    active: int = 1


@dataclass(frozen=True)
class StockMovement:
    id: int
    type: MovementType
    quantity: int
    reason: str
    reference: Optional[str]
    product_id: int
    stock_after: int
    created_at: str

    @property
    def signed_quantity(self) -> int:
        return self.quantity if self.type is MovementType.IN else -self.quantity


# ---------- Purchases ----------

@dataclass(frozen=True)
class PurchaseItemInput:
    product_id: int
    quantity: int
    unit_price_local: Optional[Decimal] = None
    unit_price_foreign: Optional[Decimal] = None
    wholesale_price: Optional[Decimal] = None
    retail_price: Optional[Decimal] = None


@dataclass(frozen=True)
class PurchaseInput:
    supplier_id: int
    items: tuple[PurchaseItemInput, ...]
    type: PurchaseType = PurchaseType.LOCAL
    currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    exchange_type: Optional[str] = None
    freight_cost: Decimal = Decimal("0")
    customs_cost: Decimal = Decimal("0")
    tax_cost: Decimal = Decimal("0")
    insurance_cost: Decimal = Decimal("0")
    other_costs: Decimal = Decimal("0")
    order_date: Optional[str] = None
    expected_date: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PurchaseItem:
    id: int
    purchase_id: int
    product_id: int
    quantity: int
    unit_price_foreign: Optional[Decimal]
    unit_price_local: Decimal
    distributed_costs: Decimal
    final_unit_cost: Decimal
    total_cost: Decimal
    wholesale_price: Optional[Decimal] = None
    retail_price: Optional[Decimal] = None
    distributed_costs_foreign: Optional[Decimal] = None
    final_cost_foreign: Optional[Decimal] = None


@dataclass(frozen=True)
class Purchase:
    id: int
    purchase_number: str
    supplier_id: int
    type: PurchaseType
    currency: str
    exchange_rate: Optional[Decimal]
    exchange_type: Optional[str]
    freight_cost: Decimal
    customs_cost: Decimal
    tax_cost: Decimal
    insurance_cost: Decimal
    other_costs: Decimal
    subtotal_local: Decimal
    subtotal_foreign: Optional[Decimal]
    total_costs: Decimal
    total: Decimal
    status: PurchaseStatus
    order_date: Optional[str]
    expected_date: Optional[str]
    received_date: Optional[str]
    notes: Optional[str]
    created_at: str
    updated_at: str
    items: tuple[PurchaseItem, ...] = ()


# ---------- Sales ----------

@dataclass(frozen=True)
class SaleItemComponent:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class SimpleSaleItem:
    product_id: int
    quantity: int
    unit_price: Decimal
    id: Optional[int] = None

    @property
    def item_type(self) -> ItemType:
        return ItemType.SIMPLE

    @property
    def total_price(self) -> Decimal:
        return Decimal(str(self.unit_price)) * int(self.quantity)


@dataclass(frozen=True)
class CompositeSaleItem:
    """A combo or grouped line; its stock effect is spread over its components."""

    item_type: ItemType
    display_name: str
    quantity: int
    unit_price: Decimal
    components: tuple[SaleItemComponent, ...]
    id: Optional[int] = None

    @property
    def total_price(self) -> Decimal:
        return Decimal(str(self.unit_price)) * int(self.quantity)


SaleItem = Union[SimpleSaleItem, CompositeSaleItem]


@dataclass(frozen=True)
class StockEffect:
    product_id: int
    quantity: int
    label: Optional[str] = None


def unhandled_item(item: NoReturn) -> NoReturn:
    raise InvariantError(f"Unhandled sale item type: {type(item).__name__}")


def stock_effects(item: SaleItem) -> Iterator[StockEffect]:
    """Expand a sale line into the per-product quantities it takes out of stock."""
    match item:
        case SimpleSaleItem(product_id=product_id, quantity=quantity):
            yield StockEffect(int(product_id), int(quantity))
        case CompositeSaleItem(display_name=name, quantity=quantity, components=components):
            for comp in components:
                yield StockEffect(int(comp.product_id), int(comp.quantity) * int(quantity), name)
        case _:
            unhandled_item(item)


@dataclass(frozen=True)
class SaleInput:
    items: tuple[SaleItem, ...]
    customer_id: Optional[int] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    discount_rate: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    shipping_type: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class SaleUpdate:
    """Partial sale edit. ``None`` keeps the stored value."""

    items: Optional[tuple[SaleItem, ...]] = None
    payment_method: Optional[PaymentMethod] = None
    discount_rate: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    shipping_cost: Optional[Decimal] = None
    notes: Optional[str] = None
    status: Optional[SaleStatus] = None


@dataclass(frozen=True)
class Sale:
    id: int
    sale_number: str
    customer_id: Optional[int]
    subtotal: Decimal
    discount_rate: Decimal
    discount: Decimal
    tax_rate: Decimal
    tax: Decimal
    shipping_cost: Decimal
    shipping_type: Optional[str]
    total: Decimal
    payment_method: PaymentMethod
    status: SaleStatus
    notes: Optional[str]
    created_at: str
    updated_at: str
    items: tuple[SaleItem, ...] = ()
