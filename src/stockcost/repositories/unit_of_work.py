from __future__ import annotations

import logging
import sqlite3
import time
from decimal import Decimal
from typing import Callable, Iterable, Optional, Protocol, TypeVar

from stockcost.domain.costing import AllocatedLine, AllocationResult
from stockcost.domain.errors import InvariantError, TransientError
from stockcost.domain.models import (
    CompositeSaleItem,
    PaymentMethod,
    Product,
    Purchase,
    PurchaseItemInput,
    PurchaseStatus,
    PurchaseType,
    Sale,
    SaleItem,
    SaleStatus,
    SimpleSaleItem,
    unhandled_item,
)
from stockcost.repositories.ledger import StockLedger
from stockcost.repositories.sqlite_repo import (
    SqliteRepository,
    dec,
    fetch_product,
    fetch_purchase,
    fetch_sale,
    now_iso,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

# statements between deadline checks
_PROGRESS_STEPS = 100
_MAX_BACKOFF_SECONDS = 5.0


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg or "interrupted" in msg


class UnitOfWork(Protocol):
    ledger: StockLedger

    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> bool: ...


class SqliteUnitOfWork:
    """One SQLite transaction per orchestrated operation.

    ``BEGIN IMMEDIATE`` takes the write lock up front, so two writers never
    interleave; the wait for that lock is bounded by the connection's busy
    timeout. A progress handler aborts the running statement once the
    deadline has passed. On a clean exit every product the ledger touched is
    re-checked against its movements before commit; any failure rolls the
    whole transaction back.
    """

    def __init__(
        self,
        repo: SqliteRepository,
        timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repo = repo
        self.timeout_seconds = float(timeout_seconds)
        self.clock = clock
        self.conn: Optional[sqlite3.Connection] = None
        self.cur: Optional[sqlite3.Cursor] = None
        self.now = ""
        self.ledger: Optional[StockLedger] = None

    def __enter__(self) -> "SqliteUnitOfWork":
        conn = self.repo._conn()
        conn.isolation_level = None
        deadline = self.clock() + self.timeout_seconds
        conn.set_progress_handler(lambda: 1 if self.clock() > deadline else 0, _PROGRESS_STEPS)
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            conn.close()
            if _is_transient(e):
                raise TransientError(f"Could not start transaction: {e}", timeout_seconds=self.timeout_seconds) from e
            raise

        self.conn = conn
        self.cur = conn.cursor()
        self.now = now_iso()
        self.ledger = StockLedger(self.cur, self.now)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        conn = self.conn
        try:
            if exc_type is None:
                try:
                    self.ledger.assert_balanced(self.ledger.touched)
                    conn.execute("COMMIT")
                except sqlite3.OperationalError as e:
                    self._rollback()
                    if _is_transient(e):
                        raise TransientError(f"Transaction aborted: {e}") from e
                    raise
                except BaseException:
                    self._rollback()
                    raise
                return False

            self._rollback()
            if isinstance(exc, sqlite3.OperationalError) and _is_transient(exc):
                raise TransientError(f"Transaction aborted: {exc}", timeout_seconds=self.timeout_seconds) from exc
            return False
        finally:
            conn.close()
            self.conn = None
            self.cur = None

    def _rollback(self) -> None:
        self.conn.set_progress_handler(None, 0)
        if self.conn.in_transaction:
            self.conn.execute("ROLLBACK")

    # ---------- Lookups inside the transaction ----------
    def get_product(self, product_id: int) -> Optional[Product]:
        return fetch_product(self.cur, product_id)

    def supplier_exists(self, supplier_id: int) -> bool:
        self.cur.execute("SELECT 1 FROM suppliers WHERE id=? AND active=1", (int(supplier_id),))
        return self.cur.fetchone() is not None

    def customer_exists(self, customer_id: int) -> bool:
        self.cur.execute("SELECT 1 FROM customers WHERE id=? AND active=1", (int(customer_id),))
        return self.cur.fetchone() is not None

    def get_purchase(self, purchase_id: int) -> Optional[Purchase]:
        return fetch_purchase(self.cur, purchase_id)

    def get_sale(self, sale_id: int) -> Optional[Sale]:
        return fetch_sale(self.cur, sale_id)

    # ---------- Numbering ----------
    def next_number(self, sequence: str, render: Callable[[int], str], table: str, column: str, attempts: int) -> str:
        """Draw the next document number, skipping values already taken."""
        for _ in range(int(attempts)):
            self.cur.execute("INSERT OR IGNORE INTO sequences (name, value) VALUES (?, 0)", (sequence,))
            self.cur.execute("UPDATE sequences SET value = value + 1 WHERE name=?", (sequence,))
            self.cur.execute("SELECT value FROM sequences WHERE name=?", (sequence,))
            number = render(int(self.cur.fetchone()[0]))
            self.cur.execute(f"SELECT 1 FROM {table} WHERE {column}=?", (number,))
            if self.cur.fetchone() is None:
                return number
            log.warning("number_collision sequence=%s number=%s", sequence, number)
        raise InvariantError(
            f"Could not allocate a unique {sequence} number after {attempts} attempts.",
            sequence=sequence,
        )

    # ---------- Products ----------
    def insert_product(
        self,
        sku: str,
        name: str,
        cost: Decimal,
        retail_price: Decimal,
        wholesale_price: Decimal,
        min_stock: int,
        max_stock: Optional[int],
    ) -> int:
        self.cur.execute(
            """
            INSERT INTO products (sku, name, cost, retail_price, wholesale_price, stock, min_stock, max_stock, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
            """,
            (sku, name, dec(cost), dec(retail_price), dec(wholesale_price), int(min_stock), max_stock, self.now, self.now),
        )
        return int(self.cur.lastrowid)

    def set_product_cost_and_prices(
        self,
        product_id: int,
        cost: Decimal,
        retail_price: Optional[Decimal] = None,
        wholesale_price: Optional[Decimal] = None,
    ) -> None:
        self.cur.execute(
            """
            UPDATE products
            SET cost=?,
                retail_price=COALESCE(?, retail_price),
                wholesale_price=COALESCE(?, wholesale_price),
                updated_at=?
            WHERE id=?
            """,
            (dec(cost), dec(retail_price), dec(wholesale_price), self.now, int(product_id)),
        )

    # ---------- Purchases ----------
    def insert_purchase(
        self,
        purchase_number: str,
        supplier_id: int,
        type: PurchaseType,
        currency: str,
        exchange_type: Optional[str],
        costs: dict[str, Decimal],
        allocation: AllocationResult,
        order_date: Optional[str],
        expected_date: Optional[str],
        notes: Optional[str],
    ) -> int:
        self.cur.execute(
            """
            INSERT INTO purchases (
                purchase_number, supplier_id, type, currency, exchange_rate, exchange_type,
                freight_cost, customs_cost, tax_cost, insurance_cost, other_costs,
                subtotal_local, subtotal_foreign, total_costs, total, status,
                order_date, expected_date, notes, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                purchase_number,
                int(supplier_id),
                PurchaseType(type).value,
                currency,
                dec(allocation.exchange_rate),
                exchange_type,
                dec(costs["freight"]),
                dec(costs["customs"]),
                dec(costs["tax"]),
                dec(costs["insurance"]),
                dec(costs["other"]),
                dec(allocation.subtotal_local),
                dec(allocation.subtotal_foreign),
                dec(allocation.total_costs),
                dec(allocation.total),
                PurchaseStatus.PENDING.value,
                order_date,
                expected_date,
                notes,
                self.now,
                self.now,
            ),
        )
        return int(self.cur.lastrowid)

    def update_purchase(
        self,
        purchase_id: int,
        supplier_id: int,
        type: PurchaseType,
        currency: str,
        exchange_type: Optional[str],
        costs: dict[str, Decimal],
        allocation: AllocationResult,
        order_date: Optional[str],
        expected_date: Optional[str],
        notes: Optional[str],
    ) -> None:
        self.cur.execute(
            """
            UPDATE purchases
            SET supplier_id=?, type=?, currency=?, exchange_rate=?, exchange_type=?,
                freight_cost=?, customs_cost=?, tax_cost=?, insurance_cost=?, other_costs=?,
                subtotal_local=?, subtotal_foreign=?, total_costs=?, total=?,
                order_date=?, expected_date=?, notes=?, updated_at=?
            WHERE id=?
            """,
            (
                int(supplier_id),
                PurchaseType(type).value,
                currency,
                dec(allocation.exchange_rate),
                exchange_type,
                dec(costs["freight"]),
                dec(costs["customs"]),
                dec(costs["tax"]),
                dec(costs["insurance"]),
                dec(costs["other"]),
                dec(allocation.subtotal_local),
                dec(allocation.subtotal_foreign),
                dec(allocation.total_costs),
                dec(allocation.total),
                order_date,
                expected_date,
                notes,
                self.now,
                int(purchase_id),
            ),
        )

    def replace_purchase_items(
        self,
        purchase_id: int,
        lines: Iterable[AllocatedLine],
        inputs: Iterable[PurchaseItemInput],
    ) -> None:
        self.cur.execute("DELETE FROM purchase_items WHERE purchase_id=?", (int(purchase_id),))
        for line, item in zip(lines, inputs):
            self.cur.execute(
                """
                INSERT INTO purchase_items (
                    purchase_id, product_id, quantity, unit_price_foreign, unit_price_local,
                    distributed_costs, final_unit_cost, total_cost, wholesale_price, retail_price
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(purchase_id),
                    int(line.product_id),
                    int(line.quantity),
                    dec(line.unit_price_foreign),
                    dec(line.unit_price_local),
                    dec(line.distributed_costs),
                    dec(line.final_unit_cost),
                    dec(line.total_cost),
                    dec(item.wholesale_price),
                    dec(item.retail_price),
                ),
            )

    def set_purchase_status(
        self,
        purchase_id: int,
        status: PurchaseStatus,
        received_date: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> None:
        self.cur.execute(
            """
            UPDATE purchases
            SET status=?,
                received_date=COALESCE(received_date, ?),
                notes=COALESCE(?, notes),
                updated_at=?
            WHERE id=?
            """,
            (PurchaseStatus(status).value, received_date, notes, self.now, int(purchase_id)),
        )

    def delete_purchase(self, purchase_id: int) -> None:
        self.cur.execute("DELETE FROM purchases WHERE id=?", (int(purchase_id),))

    # ---------- Sales ----------
    def insert_sale(
        self,
        sale_number: str,
        customer_id: Optional[int],
        totals: dict[str, Decimal],
        shipping_type: Optional[str],
        payment_method: PaymentMethod,
        notes: Optional[str],
    ) -> int:
        self.cur.execute(
            """
            INSERT INTO sales (
                sale_number, customer_id, subtotal, discount_rate, discount, tax_rate, tax,
                shipping_cost, shipping_type, total, payment_method, status, notes, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                sale_number,
                customer_id,
                dec(totals["subtotal"]),
                dec(totals["discount_rate"]),
                dec(totals["discount"]),
                dec(totals["tax_rate"]),
                dec(totals["tax"]),
                dec(totals["shipping_cost"]),
                shipping_type,
                dec(totals["total"]),
                PaymentMethod(payment_method).value,
                SaleStatus.COMPLETED.value,
                notes,
                self.now,
                self.now,
            ),
        )
        return int(self.cur.lastrowid)

    def replace_sale_items(self, sale_id: int, items: Iterable[SaleItem]) -> None:
        # components go with their parent row (ON DELETE CASCADE)
        self.cur.execute("DELETE FROM sale_items WHERE sale_id=?", (int(sale_id),))
        for item in items:
            match item:
                case SimpleSaleItem():
                    self.cur.execute(
                        """
                        INSERT INTO sale_items (sale_id, item_type, product_id, display_name, quantity, unit_price, total_price)
                        VALUES (?, 'simple', ?, NULL, ?, ?, ?)
                        """,
                        (int(sale_id), int(item.product_id), int(item.quantity), dec(item.unit_price), dec(item.total_price)),
                    )
                case CompositeSaleItem():
                    self.cur.execute(
                        """
                        INSERT INTO sale_items (sale_id, item_type, product_id, display_name, quantity, unit_price, total_price)
                        VALUES (?, ?, NULL, ?, ?, ?, ?)
                        """,
                        (
                            int(sale_id),
                            item.item_type.value,
                            item.display_name,
                            int(item.quantity),
                            dec(item.unit_price),
                            dec(item.total_price),
                        ),
                    )
                    item_id = int(self.cur.lastrowid)
                    for comp in item.components:
                        self.cur.execute(
                            "INSERT INTO sale_item_components (sale_item_id, product_id, quantity) VALUES (?, ?, ?)",
                            (item_id, int(comp.product_id), int(comp.quantity)),
                        )
                case _:
                    unhandled_item(item)

    def update_sale(
        self,
        sale_id: int,
        totals: dict[str, Decimal],
        payment_method: PaymentMethod,
        status: SaleStatus,
        notes: Optional[str],
    ) -> None:
        self.cur.execute(
            """
            UPDATE sales
            SET subtotal=?, discount_rate=?, discount=?, tax_rate=?, tax=?, shipping_cost=?, total=?,
                payment_method=?, status=?, notes=?, updated_at=?
            WHERE id=? AND status <> 'cancelled'
            """,
            (
                dec(totals["subtotal"]),
                dec(totals["discount_rate"]),
                dec(totals["discount"]),
                dec(totals["tax_rate"]),
                dec(totals["tax"]),
                dec(totals["shipping_cost"]),
                dec(totals["total"]),
                PaymentMethod(payment_method).value,
                SaleStatus(status).value,
                notes,
                self.now,
                int(sale_id),
            ),
        )

    def mark_sale_cancelled(self, sale_id: int) -> bool:
        """Flip the sale to cancelled; False if it already was."""
        self.cur.execute(
            "UPDATE sales SET status='cancelled', updated_at=? WHERE id=? AND status <> 'cancelled'",
            (self.now, int(sale_id)),
        )
        return self.cur.rowcount == 1


def retrying(
    operation: Callable[[], T],
    attempts: int = 3,
    backoff_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` again on ``TransientError``, with exponential backoff."""
    for attempt in range(1, int(attempts) + 1):
        try:
            return operation()
        except TransientError as e:
            if attempt >= attempts:
                raise
            delay = min(_MAX_BACKOFF_SECONDS, backoff_seconds * (2 ** (attempt - 1)))
            log.warning("transient_retry attempt=%s delay=%.2f error=%s", attempt, delay, e)
            sleep(delay)
    raise InvariantError("retrying() needs at least one attempt.")
