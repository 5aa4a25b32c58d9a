from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Optional

from stockcost.domain.costing import ZERO, as_decimal
from stockcost.domain.errors import ProductNotFoundError, ValidationError
from stockcost.domain.models import MovementType, Product, StockMovement
from stockcost.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork

log = logging.getLogger("stockcost.ledger")

OPENING_BALANCE = "Opening balance"
MANUAL_ADJUSTMENT = "Manual adjustment"


class InventoryService:
    def __init__(self, repo, uow_factory: Callable[[], UnitOfWork] | None = None):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))

    def list_products(self) -> list[Product]:
        return self.repo.list_products()

    def low_stock(self, limit: int = 10) -> list[Product]:
        return self.repo.list_low_stock(limit)

    def get_product(self, product_id: int) -> Product:
        p = self.repo.get_product_any(int(product_id))
        if not p:
            raise ProductNotFoundError(product_id)
        return p

    def get_product_by_sku(self, sku: str) -> Product:
        p = self.repo.get_product_by_sku(sku)
        if not p:
            raise ProductNotFoundError(sku)
        return p

    def add_product(
        self,
        sku: str,
        name: str,
        cost=0,
        retail_price=0,
        wholesale_price=0,
        stock: int = 0,
        min_stock: int = 0,
        max_stock: Optional[int] = None,
    ) -> int:
        """Create a product; an opening quantity is posted to the ledger, never written directly."""
        sku = (sku or "").strip()
        name = (name or "").strip()
        if not sku or not name:
            raise ValidationError("SKU and Name are required.", field="sku")
        stock, min_stock = int(stock), int(min_stock)
        if stock < 0 or min_stock < 0:
            raise ValidationError("Stock values must be >= 0.", field="stock")
        if max_stock is not None and int(max_stock) < min_stock:
            raise ValidationError("Max stock must be >= min stock.", field="max_stock")
        cost_d = as_decimal(cost, "cost")
        retail_d = as_decimal(retail_price, "retail_price")
        wholesale_d = as_decimal(wholesale_price, "wholesale_price")
        if min(cost_d, retail_d, wholesale_d) < ZERO:
            raise ValidationError("Cost and prices must be >= 0.", field="cost")

        try:
            with self.uow_factory() as uow:
                pid = uow.insert_product(sku, name, cost_d, retail_d, wholesale_d, min_stock, max_stock)
                if stock > 0:
                    uow.ledger.apply_movement(pid, MovementType.IN, stock, OPENING_BALANCE, sku)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"SKU already exists: {sku}", field="sku") from e
        log.info("product_created product_id=%s sku=%s opening_stock=%s", pid, sku, stock)
        return pid

    def update_product(
        self,
        product_id: int,
        retail_price,
        wholesale_price,
        min_stock: int,
        max_stock: Optional[int] = None,
    ) -> None:
        retail_d = as_decimal(retail_price, "retail_price")
        wholesale_d = as_decimal(wholesale_price, "wholesale_price")
        if retail_d < ZERO or wholesale_d < ZERO:
            raise ValidationError("Prices must be >= 0.", field="retail_price")
        if int(min_stock) < 0:
            raise ValidationError("Min stock must be >= 0.", field="min_stock")
        if max_stock is not None and int(max_stock) < int(min_stock):
            raise ValidationError("Max stock must be >= min stock.", field="max_stock")

        updated = self.repo.update_product_pricing(int(product_id), retail_d, wholesale_d, int(min_stock), max_stock)
        if not updated:
            raise ProductNotFoundError(product_id)

    def delete_product(self, product_id: int) -> None:
        removed = self.repo.deactivate_product(int(product_id))
        if not removed:
            raise ProductNotFoundError(product_id)

    def adjust_stock(self, product_id: int, delta: int, reference: str | None = None) -> int:
        """Post a manual correction; positive delta adds stock, negative removes it."""
        delta = int(delta)
        if delta == 0:
            raise ValidationError("Adjustment must not be zero.", field="delta")
        kind = MovementType.IN if delta > 0 else MovementType.OUT
        with self.uow_factory() as uow:
            if not uow.get_product(product_id):
                raise ProductNotFoundError(product_id)
            movement_id = uow.ledger.apply_movement(product_id, kind, abs(delta), MANUAL_ADJUSTMENT, reference)
        log.info("stock_adjusted product_id=%s delta=%s movement_id=%s", product_id, delta, movement_id)
        return movement_id

    def movements(self, product_id: int, limit: int | None = None) -> list[StockMovement]:
        return self.repo.movements_for_product(int(product_id), limit)

    def movements_for_reference(self, reference: str) -> list[StockMovement]:
        return self.repo.movements_for_reference(reference)

