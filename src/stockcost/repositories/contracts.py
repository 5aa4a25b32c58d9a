from __future__ import annotations

from decimal import Decimal
from typing import Optional, Protocol

from stockcost.domain.models import (
    Customer,
    Product,
    Purchase,
    PurchaseStatus,
    Sale,
    SaleStatus,
    StockMovement,
    Supplier,
)


class ProductRepository(Protocol):
    def get_product_by_id(self, product_id: int) -> Optional[Product]: ...
    def get_product_any(self, product_id: int) -> Optional[Product]: ...
    def get_product_by_sku(self, sku: str) -> Optional[Product]: ...
    def list_products(self) -> list[Product]: ...
    def list_low_stock(self, limit: int = 10) -> list[Product]: ...


class LedgerRepository(Protocol):
    def movements_for_product(self, product_id: int, limit: int | None = None) -> list[StockMovement]: ...
    def movements_for_reference(self, reference: str) -> list[StockMovement]: ...


class ContactRepository(Protocol):
    def get_supplier(self, supplier_id: int) -> Optional[Supplier]: ...
    def get_customer(self, customer_id: int) -> Optional[Customer]: ...


class PurchaseRepository(ProductRepository, ContactRepository, Protocol):
    def get_purchase(self, purchase_id: int) -> Optional[Purchase]: ...
    def list_purchases(self, status: Optional[PurchaseStatus] = None, supplier_id: Optional[int] = None) -> list[Purchase]: ...


class SaleRepository(ProductRepository, ContactRepository, Protocol):
    def get_sale(self, sale_id: int) -> Optional[Sale]: ...
    def list_sales(self, status: Optional[SaleStatus] = None, customer_id: Optional[int] = None) -> list[Sale]: ...


class FxRateRepository(Protocol):
    def get_fx_rate(self, date_iso: str, currency: str) -> Optional[Decimal]: ...
    def set_fx_rate(self, date_iso: str, currency: str, rate: Decimal) -> None: ...
    def get_latest_fx_rate(self, currency: str) -> Optional[Decimal]: ...
