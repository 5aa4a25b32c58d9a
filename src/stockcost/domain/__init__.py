from .models import (
    CompositeSaleItem,
    ItemType,
    MovementType,
    PaymentMethod,
    Product,
    Purchase,
    PurchaseInput,
    PurchaseItem,
    PurchaseItemInput,
    PurchaseStatus,
    PurchaseType,
    Sale,
    SaleInput,
    SaleItemComponent,
    SaleStatus,
    SaleUpdate,
    SimpleSaleItem,
    StockMovement,
)
from .errors import (
    AppError,
    InsufficientStockError,
    InvariantError,
    NotFoundError,
    StateConflictError,
    TransientError,
    ValidationError,
)

__all__ = [
    "CompositeSaleItem",
    "ItemType",
    "MovementType",
    "PaymentMethod",
    "Product",
    "Purchase",
    "PurchaseInput",
    "PurchaseItem",
    "PurchaseItemInput",
    "PurchaseStatus",
    "PurchaseType",
    "Sale",
    "SaleInput",
    "SaleItemComponent",
    "SaleStatus",
    "SaleUpdate",
    "SimpleSaleItem",
    "StockMovement",
    "AppError",
    "InsufficientStockError",
    "InvariantError",
    "NotFoundError",
    "StateConflictError",
    "TransientError",
    "ValidationError",
]
