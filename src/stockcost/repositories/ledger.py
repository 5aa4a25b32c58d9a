from __future__ import annotations

import logging
import sqlite3
from typing import Iterable, Optional

from stockcost.domain.errors import InsufficientStockError, InvariantError, ProductNotFoundError, ValidationError
from stockcost.domain.models import MovementType

log = logging.getLogger("stockcost.ledger")


class StockLedger:
    """Append-only stock movements bound to an open transaction.

    This is the only code path allowed to change ``products.stock``. The
    counter update and the movement row are written back to back on the same
    cursor, so they commit or roll back together with the caller's work.
    """

    def __init__(self, cur: sqlite3.Cursor, now: str):
        self.cur = cur
        self.now = now
        self.touched: set[int] = set()

    def apply_movement(
        self,
        product_id: int,
        type: MovementType,
        quantity: int,
        reason: str,
        reference: Optional[str] = None,
    ) -> int:
        product_id = int(product_id)
        quantity = int(quantity)
        type = MovementType(type)
        if quantity <= 0:
            raise ValidationError("Movement quantity must be > 0.", field="quantity")
        if not (reason or "").strip():
            raise ValidationError("Movement reason is required.", field="reason")

        if type is MovementType.OUT:
            # the WHERE clause is the sufficiency check
            self.cur.execute(
                "UPDATE products SET stock = stock - ?, updated_at=? WHERE id=? AND stock >= ?",
                (quantity, self.now, product_id, quantity),
            )
        else:
            self.cur.execute(
                "UPDATE products SET stock = stock + ?, updated_at=? WHERE id=?",
                (quantity, self.now, product_id),
            )

        if self.cur.rowcount == 0:
            self.cur.execute("SELECT name, stock FROM products WHERE id=?", (product_id,))
            row = self.cur.fetchone()
            if not row:
                raise ProductNotFoundError(product_id)
            raise InsufficientStockError(product_id, int(row[1]), quantity, name=str(row[0]))

        self.cur.execute("SELECT stock FROM products WHERE id=?", (product_id,))
        stock_after = int(self.cur.fetchone()[0])

        self.cur.execute(
            """
            INSERT INTO stock_movements (type, quantity, reason, reference, product_id, stock_after, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (type.value, quantity, reason, reference, product_id, stock_after, self.now),
        )
        self.touched.add(product_id)
        return int(self.cur.lastrowid)

    def balance_from_movements(self, product_id: int) -> int:
        self.cur.execute(
            """
            SELECT COALESCE(SUM(CASE WHEN type='IN' THEN quantity ELSE -quantity END), 0)
            FROM stock_movements
            WHERE product_id=?
            """,
            (int(product_id),),
        )
        return int(self.cur.fetchone()[0])

    def assert_balanced(self, product_ids: Iterable[int]) -> None:
        for pid in sorted(set(product_ids)):
            self.cur.execute("SELECT stock FROM products WHERE id=?", (int(pid),))
            row = self.cur.fetchone()
            if not row:
                continue
            stock = int(row[0])
            balance = self.balance_from_movements(pid)
            if stock != balance:
                log.critical("ledger_imbalance product_id=%s stock=%s movements=%s", pid, stock, balance)
                raise InvariantError(
                    f"Stock for product {pid} is {stock} but its movements add up to {balance}.",
                    product_id=pid,
                    stock=stock,
                    balance=balance,
                )

    def find_imbalances(self) -> list[tuple[int, int, int]]:
        """Return ``(product_id, stock, movement_balance)`` for every product that disagrees."""
        self.cur.execute(
            """
            SELECT p.id, p.stock,
                   COALESCE(SUM(CASE WHEN m.type='IN' THEN m.quantity ELSE -m.quantity END), 0) AS balance
            FROM products p
            LEFT JOIN stock_movements m ON m.product_id = p.id
            GROUP BY p.id, p.stock
            HAVING p.stock <> balance
            ORDER BY p.id
            """
        )
        return [(int(r[0]), int(r[1]), int(r[2])) for r in self.cur.fetchall()]
