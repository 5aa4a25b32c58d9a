from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base app error."""

    code = "APP_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context
        for key, value in context.items():
            setattr(self, key, value)


class ValidationError(AppError):
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, field: str | None = None, **context: Any):
        super().__init__(message, field=field, **context)


class ProductInactiveError(ValidationError):
    code = "PRODUCT_INACTIVE"

    def __init__(self, product_id: int, name: str | None = None):
        super().__init__(f"Product is inactive: {name or product_id}", field="product_id", product_id=product_id)


class NotFoundError(AppError):
    code = "NOT_FOUND"
    entity = "Record"

    def __init__(self, entity_id: Any = None, message: str | None = None):
        super().__init__(message or f"{self.entity} not found: {entity_id}", entity_id=entity_id)


class ProductNotFoundError(NotFoundError):
    code = "PRODUCT_NOT_FOUND"
    entity = "Product"


class SupplierNotFoundError(NotFoundError):
    code = "SUPPLIER_NOT_FOUND"
    entity = "Supplier"


class CustomerNotFoundError(NotFoundError):
    code = "CUSTOMER_NOT_FOUND"
    entity = "Customer"


class PurchaseNotFoundError(NotFoundError):
    code = "PURCHASE_NOT_FOUND"
    entity = "Purchase"


class SaleNotFoundError(NotFoundError):
    code = "SALE_NOT_FOUND"
    entity = "Sale"


class StateConflictError(AppError):
    """Operation not permitted in the record's current lifecycle state."""

    code = "STATE_CONFLICT"

    def __init__(self, message: str, status: str, **context: Any):
        super().__init__(message, status=status, **context)


class AlreadyCompletedError(StateConflictError):
    code = "ALREADY_COMPLETED"

    def __init__(self, number: str):
        super().__init__(f"Purchase {number} is already completed.", status="COMPLETED", number=number)


class PurchaseCancelledError(StateConflictError):
    code = "PURCHASE_CANCELLED"

    def __init__(self, number: str):
        super().__init__(f"Purchase {number} is cancelled.", status="CANCELLED", number=number)


class NotEditableError(StateConflictError):
    code = "NOT_EDITABLE"

    def __init__(self, number: str, status: str):
        super().__init__(f"Purchase {number} can not be edited in status {status}.", status=status, number=number)


class NotDeletableError(StateConflictError):
    code = "NOT_DELETABLE"

    def __init__(self, number: str, status: str):
        super().__init__(f"Purchase {number} can not be deleted in status {status}.", status=status, number=number)


class InvalidTransitionError(StateConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, number: str, status: str, target: str):
        super().__init__(f"Purchase {number} can not move from {status} to {target}.", status=status, target=target)


class AlreadyCancelledError(StateConflictError):
    code = "ALREADY_CANCELLED"

    def __init__(self, number: str):
        super().__init__(f"Sale {number} is already cancelled.", status="cancelled", number=number)


class SaleCancelledError(StateConflictError):
    code = "SALE_CANCELLED"

    def __init__(self, number: str):
        super().__init__(f"Sale {number} is cancelled and can not be edited.", status="cancelled", number=number)


class InsufficientStockError(AppError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, available: int, requested: int, name: str | None = None):
        label = name or f"product {product_id}"
        super().__init__(
            f"Not enough stock for {label}. Available: {available}, requested: {requested}",
            product_id=product_id,
            available=available,
            requested=requested,
        )


class TransientError(AppError):
    """Lock wait or deadline exhausted; the whole operation is safe to retry."""

    code = "TRANSIENT"


class InvariantError(AppError):
    """Internal consistency failure. Indicates a bug, never a user error."""

    code = "INVARIANT_VIOLATION"


class FxUnavailableError(AppError):
    code = "FX_UNAVAILABLE"
