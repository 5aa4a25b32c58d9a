from __future__ import annotations

import sqlite3
import shutil
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional

from stockcost.domain.costing import foreign_mirror
from stockcost.domain.models import (
    CompositeSaleItem,
    Customer,
    ItemType,
    MovementType,
    PaymentMethod,
    Product,
    Purchase,
    PurchaseItem,
    PurchaseStatus,
    PurchaseType,
    Sale,
    SaleItem,
    SaleItemComponent,
    SaleStatus,
    SimpleSaleItem,
    StockMovement,
    Supplier,
)

PRODUCT_COLUMNS = "id, sku, name, cost, retail_price, wholesale_price, stock, min_stock, max_stock, active"
MOVEMENT_COLUMNS = "id, type, quantity, reason, reference, product_id, stock_after, created_at"
PURCHASE_COLUMNS = (
    "id, purchase_number, supplier_id, type, currency, exchange_rate, exchange_type, "
    "freight_cost, customs_cost, tax_cost, insurance_cost, other_costs, "
    "subtotal_local, subtotal_foreign, total_costs, total, status, "
    "order_date, expected_date, received_date, notes, created_at, updated_at"
)
PURCHASE_ITEM_COLUMNS = (
    "id, purchase_id, product_id, quantity, unit_price_foreign, unit_price_local, "
    "distributed_costs, final_unit_cost, total_cost, wholesale_price, retail_price"
)
SALE_COLUMNS = (
    "id, sale_number, customer_id, subtotal, discount_rate, discount, tax_rate, tax, "
    "shipping_cost, shipping_type, total, payment_method, status, notes, created_at, updated_at"
)


def now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")


def dec(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _d(raw) -> Decimal:
    return Decimal(str(raw))


def _od(raw) -> Optional[Decimal]:
    return None if raw is None else Decimal(str(raw))


# ---------- Row mapping (shared with the unit of work) ----------

def product_from_row(r) -> Product:
    return Product(
        id=int(r[0]),
        sku=str(r[1]),
        name=str(r[2]),
        cost=_d(r[3]),
        retail_price=_d(r[4]),
        wholesale_price=_d(r[5]),
        stock=int(r[6]),
        min_stock=int(r[7]),
        max_stock=(int(r[8]) if r[8] is not None else None),
        active=int(r[9]),
    )


def movement_from_row(r) -> StockMovement:
    return StockMovement(
        id=int(r[0]),
        type=MovementType(r[1]),
        quantity=int(r[2]),
        reason=str(r[3]),
        reference=(r[4] if r[4] is not None else None),
        product_id=int(r[5]),
        stock_after=int(r[6]),
        created_at=str(r[7]),
    )


def fetch_product(cur: sqlite3.Cursor, product_id: int, active_only: bool = False) -> Optional[Product]:
    sql = f"SELECT {PRODUCT_COLUMNS} FROM products WHERE id=?"
    if active_only:
        sql += " AND active=1"
    cur.execute(sql, (int(product_id),))
    r = cur.fetchone()
    return product_from_row(r) if r else None


def fetch_purchase(cur: sqlite3.Cursor, purchase_id: int) -> Optional[Purchase]:
    cur.execute(f"SELECT {PURCHASE_COLUMNS} FROM purchases WHERE id=?", (int(purchase_id),))
    r = cur.fetchone()
    if not r:
        return None
    exchange_rate = _od(r[5])

    cur.execute(
        f"SELECT {PURCHASE_ITEM_COLUMNS} FROM purchase_items WHERE purchase_id=? ORDER BY id",
        (int(purchase_id),),
    )
    items = []
    for ir in cur.fetchall():
        distributed = _d(ir[6])
        unit_foreign = _od(ir[4])
        distributed_foreign, final_foreign = foreign_mirror(distributed, unit_foreign, int(ir[3]), exchange_rate)
        items.append(
            PurchaseItem(
                id=int(ir[0]),
                purchase_id=int(ir[1]),
                product_id=int(ir[2]),
                quantity=int(ir[3]),
                unit_price_foreign=unit_foreign,
                unit_price_local=_d(ir[5]),
                distributed_costs=distributed,
                final_unit_cost=_d(ir[7]),
                total_cost=_d(ir[8]),
                wholesale_price=_od(ir[9]),
                retail_price=_od(ir[10]),
                distributed_costs_foreign=distributed_foreign,
                final_cost_foreign=final_foreign,
            )
        )

    return Purchase(
        id=int(r[0]),
        purchase_number=str(r[1]),
        supplier_id=int(r[2]),
        type=PurchaseType(r[3]),
        currency=str(r[4]),
        exchange_rate=exchange_rate,
        exchange_type=r[6],
        freight_cost=_d(r[7]),
        customs_cost=_d(r[8]),
        tax_cost=_d(r[9]),
        insurance_cost=_d(r[10]),
        other_costs=_d(r[11]),
        subtotal_local=_d(r[12]),
        subtotal_foreign=_od(r[13]),
        total_costs=_d(r[14]),
        total=_d(r[15]),
        status=PurchaseStatus(r[16]),
        order_date=r[17],
        expected_date=r[18],
        received_date=r[19],
        notes=r[20],
        created_at=str(r[21]),
        updated_at=str(r[22]),
        items=tuple(items),
    )


def fetch_sale_items(cur: sqlite3.Cursor, sale_id: int) -> tuple[SaleItem, ...]:
    cur.execute(
        """
        SELECT id, item_type, product_id, display_name, quantity, unit_price
        FROM sale_items
        WHERE sale_id=?
        ORDER BY id
        """,
        (int(sale_id),),
    )
    rows = cur.fetchall()
    items: list[SaleItem] = []
    for r in rows:
        item_type = ItemType(r[1])
        if item_type is ItemType.SIMPLE:
            items.append(SimpleSaleItem(product_id=int(r[2]), quantity=int(r[4]), unit_price=_d(r[5]), id=int(r[0])))
            continue
        cur.execute(
            "SELECT product_id, quantity FROM sale_item_components WHERE sale_item_id=? ORDER BY id",
            (int(r[0]),),
        )
        components = tuple(SaleItemComponent(product_id=int(c[0]), quantity=int(c[1])) for c in cur.fetchall())
        items.append(
            CompositeSaleItem(
                item_type=item_type,
                display_name=str(r[3]),
                quantity=int(r[4]),
                unit_price=_d(r[5]),
                components=components,
                id=int(r[0]),
            )
        )
    return tuple(items)


def fetch_sale(cur: sqlite3.Cursor, sale_id: int) -> Optional[Sale]:
    cur.execute(f"SELECT {SALE_COLUMNS} FROM sales WHERE id=?", (int(sale_id),))
    r = cur.fetchone()
    if not r:
        return None
    return Sale(
        id=int(r[0]),
        sale_number=str(r[1]),
        customer_id=(int(r[2]) if r[2] is not None else None),
        subtotal=_d(r[3]),
        discount_rate=_d(r[4]),
        discount=_d(r[5]),
        tax_rate=_d(r[6]),
        tax=_d(r[7]),
        shipping_cost=_d(r[8]),
        shipping_type=r[9],
        total=_d(r[10]),
        payment_method=PaymentMethod(r[11]),
        status=SaleStatus(r[12]),
        notes=r[13],
        created_at=str(r[14]),
        updated_at=str(r[15]),
        items=fetch_sale_items(cur, int(r[0])),
    )


class SqliteRepository:
    def __init__(self, db_path: Path | str, lock_wait_seconds: float = 5.0):
        self.db_path = str(db_path)
        self.lock_wait_seconds = float(lock_wait_seconds)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.lock_wait_seconds, check_same_thread=False)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def init_db(self) -> None:
        self.run_migrations()

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_catalog_and_ledger),
                (2, self._migration_v2_purchases_and_sales),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_catalog_and_ledger(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sku TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                cost TEXT NOT NULL DEFAULT '0' CHECK(CAST(cost AS REAL) >= 0),
                retail_price TEXT NOT NULL DEFAULT '0' CHECK(CAST(retail_price AS REAL) >= 0),
                wholesale_price TEXT NOT NULL DEFAULT '0' CHECK(CAST(wholesale_price AS REAL) >= 0),
                stock INTEGER NOT NULL DEFAULT 0 CHECK(stock >= 0),
                min_stock INTEGER NOT NULL DEFAULT 0 CHECK(min_stock >= 0),
                max_stock INTEGER CHECK(max_stock IS NULL OR max_stock >= min_stock),
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS suppliers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                country TEXT,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS customers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stock_movements (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL CHECK(type IN ('IN','OUT')),
                quantity INTEGER NOT NULL CHECK(quantity > 0),
                reason TEXT NOT NULL,
                reference TEXT,
                product_id INTEGER NOT NULL,
                stock_after INTEGER NOT NULL CHECK(stock_after >= 0),
                created_at TEXT NOT NULL,
                FOREIGN KEY(product_id) REFERENCES products(id)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_stock_movements_product ON stock_movements(product_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_stock_movements_reference ON stock_movements(reference)")
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS stock_movements_no_update
            BEFORE UPDATE ON stock_movements
            BEGIN
                SELECT RAISE(ABORT, 'stock_movements is append-only');
            END
            """
        )
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS stock_movements_no_delete
            BEFORE DELETE ON stock_movements
            BEGIN
                SELECT RAISE(ABORT, 'stock_movements is append-only');
            END
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sequences (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL CHECK(value >= 0)
            )
            """
        )

    def _migration_v2_purchases_and_sales(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS purchases (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                purchase_number TEXT NOT NULL UNIQUE,
                supplier_id INTEGER NOT NULL,
                type TEXT NOT NULL CHECK(type IN ('LOCAL','IMPORT')),
                currency TEXT NOT NULL,
                exchange_rate TEXT,
                exchange_type TEXT,
                freight_cost TEXT NOT NULL DEFAULT '0',
                customs_cost TEXT NOT NULL DEFAULT '0',
                tax_cost TEXT NOT NULL DEFAULT '0',
                insurance_cost TEXT NOT NULL DEFAULT '0',
                other_costs TEXT NOT NULL DEFAULT '0',
                subtotal_local TEXT NOT NULL,
                subtotal_foreign TEXT,
                total_costs TEXT NOT NULL,
                total TEXT NOT NULL,
                status TEXT NOT NULL CHECK(status IN ('PENDING','ORDERED','SHIPPED','CUSTOMS','RECEIVED','COMPLETED','CANCELLED')),
                order_date TEXT,
                expected_date TEXT,
                received_date TEXT,
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(supplier_id) REFERENCES suppliers(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS purchase_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                purchase_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                quantity INTEGER NOT NULL CHECK(quantity > 0),
                unit_price_foreign TEXT,
                unit_price_local TEXT NOT NULL,
                distributed_costs TEXT NOT NULL,
                final_unit_cost TEXT NOT NULL,
                total_cost TEXT NOT NULL,
                wholesale_price TEXT,
                retail_price TEXT,
                FOREIGN KEY(purchase_id) REFERENCES purchases(id) ON DELETE CASCADE,
                FOREIGN KEY(product_id) REFERENCES products(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sales (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sale_number TEXT NOT NULL UNIQUE,
                customer_id INTEGER,
                subtotal TEXT NOT NULL,
                discount_rate TEXT NOT NULL DEFAULT '0',
                discount TEXT NOT NULL DEFAULT '0',
                tax_rate TEXT NOT NULL DEFAULT '0',
                tax TEXT NOT NULL DEFAULT '0',
                shipping_cost TEXT NOT NULL DEFAULT '0',
                shipping_type TEXT,
                total TEXT NOT NULL,
                payment_method TEXT NOT NULL,
                status TEXT NOT NULL CHECK(status IN ('pending','completed','cancelled')),
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(customer_id) REFERENCES customers(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sale_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sale_id INTEGER NOT NULL,
                item_type TEXT NOT NULL CHECK(item_type IN ('simple','combo','grouped')),
                product_id INTEGER,
                display_name TEXT,
                quantity INTEGER NOT NULL CHECK(quantity > 0),
                unit_price TEXT NOT NULL,
                total_price TEXT NOT NULL,
                FOREIGN KEY(sale_id) REFERENCES sales(id) ON DELETE CASCADE,
                FOREIGN KEY(product_id) REFERENCES products(id),
                CHECK(
                    (item_type = 'simple' AND product_id IS NOT NULL)
                    OR (item_type IN ('combo','grouped') AND product_id IS NULL AND display_name IS NOT NULL)
                )
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sale_item_components (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sale_item_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                quantity INTEGER NOT NULL CHECK(quantity > 0),
                FOREIGN KEY(sale_item_id) REFERENCES sale_items(id) ON DELETE CASCADE,
                FOREIGN KEY(product_id) REFERENCES products(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS fx_rates (
                date TEXT NOT NULL,
                currency TEXT NOT NULL,
                rate TEXT NOT NULL CHECK(CAST(rate AS REAL) > 0),
                PRIMARY KEY(date, currency)
            )
            """
        )

    # ---------- Products ----------
    def get_product_by_id(self, product_id: int) -> Optional[Product]:
        conn = self._conn()
        try:
            return fetch_product(conn.cursor(), product_id, active_only=True)
        finally:
            conn.close()

    def get_product_any(self, product_id: int) -> Optional[Product]:
        conn = self._conn()
        try:
            return fetch_product(conn.cursor(), product_id)
        finally:
            conn.close()

    def get_product_by_sku(self, sku: str) -> Optional[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {PRODUCT_COLUMNS} FROM products WHERE active=1 AND sku=?", (sku,))
        r = cur.fetchone()
        conn.close()
        return product_from_row(r) if r else None

    def list_products(self) -> list[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {PRODUCT_COLUMNS} FROM products WHERE active = 1 ORDER BY name")
        rows = cur.fetchall()
        conn.close()
        return [product_from_row(r) for r in rows]

    def list_low_stock(self, limit: int = 10) -> list[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {PRODUCT_COLUMNS}
            FROM products
            WHERE active=1 AND stock <= min_stock
            ORDER BY (stock - min_stock) ASC, name ASC
            LIMIT ?
            """,
            (int(limit),),
        )
        rows = cur.fetchall()
        conn.close()
        return [product_from_row(r) for r in rows]

    def deactivate_product(self, product_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "UPDATE products SET active=0, updated_at=? WHERE id=? AND active=1",
            (now_iso(), int(product_id)),
        )
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    def update_product_pricing(
        self,
        product_id: int,
        retail_price: Decimal,
        wholesale_price: Decimal,
        min_stock: int,
        max_stock: Optional[int],
    ) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE products
            SET retail_price=?, wholesale_price=?, min_stock=?, max_stock=?, updated_at=?
            WHERE id=? AND active=1
            """,
            (dec(retail_price), dec(wholesale_price), int(min_stock), max_stock, now_iso(), int(product_id)),
        )
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    # ---------- Suppliers / customers ----------
    def add_supplier(self, name: str, country: Optional[str]) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("INSERT INTO suppliers (name, country) VALUES (?, ?)", (name, country))
        sid = int(cur.lastrowid)
        conn.commit()
        conn.close()
        return sid

    def get_supplier(self, supplier_id: int) -> Optional[Supplier]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id, name, country, active FROM suppliers WHERE id=? AND active=1", (int(supplier_id),))
        r = cur.fetchone()
        conn.close()
        if not r:
            return None
        return Supplier(id=int(r[0]), name=str(r[1]), country=r[2], active=int(r[3]))

    def add_customer(self, name: str) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("INSERT INTO customers (name) VALUES (?)", (name,))
        cid = int(cur.lastrowid)
        conn.commit()
        conn.close()
        return cid

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id, name, active FROM customers WHERE id=? AND active=1", (int(customer_id),))
        r = cur.fetchone()
        conn.close()
        if not r:
            return None
        return Customer(id=int(r[0]), name=str(r[1]), active=int(r[2]))

    # ---------- Ledger reads ----------
    def movements_for_product(self, product_id: int, limit: int | None = None) -> list[StockMovement]:
        conn = self._conn()
        cur = conn.cursor()
        sql = f"SELECT {MOVEMENT_COLUMNS} FROM stock_movements WHERE product_id=? ORDER BY id"
        params: tuple = (int(product_id),)
        if limit is not None:
            sql = f"SELECT * FROM ({sql} DESC LIMIT ?) ORDER BY id"
            params = (int(product_id), int(limit))
        cur.execute(sql, params)
        rows = cur.fetchall()
        conn.close()
        return [movement_from_row(r) for r in rows]

    def movements_for_reference(self, reference: str) -> list[StockMovement]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {MOVEMENT_COLUMNS} FROM stock_movements WHERE reference=? ORDER BY id", (reference,))
        rows = cur.fetchall()
        conn.close()
        return [movement_from_row(r) for r in rows]

    def recent_movements(self, limit: int = 100) -> list[StockMovement]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {MOVEMENT_COLUMNS} FROM stock_movements ORDER BY id DESC LIMIT ?", (int(limit),))
        rows = cur.fetchall()
        conn.close()
        return [movement_from_row(r) for r in rows]

    # ---------- Purchases ----------
    def get_purchase(self, purchase_id: int) -> Optional[Purchase]:
        conn = self._conn()
        try:
            return fetch_purchase(conn.cursor(), purchase_id)
        finally:
            conn.close()

    def list_purchases(self, status: Optional[PurchaseStatus] = None, supplier_id: Optional[int] = None) -> list[Purchase]:
        conn = self._conn()
        try:
            cur = conn.cursor()
            where, params = [], []
            if status is not None:
                where.append("status=?")
                params.append(PurchaseStatus(status).value)
            if supplier_id is not None:
                where.append("supplier_id=?")
                params.append(int(supplier_id))
            sql = "SELECT id FROM purchases"
            if where:
                sql += " WHERE " + " AND ".join(where)
            cur.execute(sql + " ORDER BY created_at DESC, id DESC", params)
            ids = [int(r[0]) for r in cur.fetchall()]
            return [p for p in (fetch_purchase(cur, pid) for pid in ids) if p is not None]
        finally:
            conn.close()

    # ---------- Sales ----------
    def get_sale(self, sale_id: int) -> Optional[Sale]:
        conn = self._conn()
        try:
            return fetch_sale(conn.cursor(), sale_id)
        finally:
            conn.close()

    def list_sales(self, status: Optional[SaleStatus] = None, customer_id: Optional[int] = None) -> list[Sale]:
        conn = self._conn()
        try:
            cur = conn.cursor()
            where, params = [], []
            if status is not None:
                where.append("status=?")
                params.append(SaleStatus(status).value)
            if customer_id is not None:
                where.append("customer_id=?")
                params.append(int(customer_id))
            sql = "SELECT id FROM sales"
            if where:
                sql += " WHERE " + " AND ".join(where)
            cur.execute(sql + " ORDER BY created_at DESC, id DESC", params)
            ids = [int(r[0]) for r in cur.fetchall()]
            return [s for s in (fetch_sale(cur, sid) for sid in ids) if s is not None]
        finally:
            conn.close()

    # ---------- FX ----------
    def integrity_check(self) -> str:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("PRAGMA integrity_check")
        row = cur.fetchone()
        conn.close()
        return str(row[0]) if row else "unknown"

    def get_fx_rate(self, date_iso: str, currency: str) -> Optional[Decimal]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT rate FROM fx_rates WHERE date=? AND currency=?", (date_iso, currency))
        row = cur.fetchone()
        conn.close()
        return _d(row[0]) if row else None

    def set_fx_rate(self, date_iso: str, currency: str, rate: Decimal) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO fx_rates (date, currency, rate) VALUES (?, ?, ?)
            ON CONFLICT(date, currency) DO UPDATE SET rate=excluded.rate
            """,
            (date_iso, currency, dec(rate)),
        )
        conn.commit()
        conn.close()

    def get_latest_fx_rate(self, currency: str) -> Optional[Decimal]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT rate FROM fx_rates WHERE currency=? ORDER BY date DESC LIMIT 1", (currency,))
        row = cur.fetchone()
        conn.close()
        return _d(row[0]) if row else None
