import threading
from decimal import Decimal
from pathlib import Path

import pytest

from conftest import build_app
from stockcost.domain.errors import AlreadyCancelledError, InsufficientStockError, TransientError
from stockcost.domain.models import MovementType, SaleInput, SaleStatus, SimpleSaleItem
from stockcost.repositories.unit_of_work import SqliteUnitOfWork, retrying
from stockcost.services.sales_service import SalesService

# enough VM steps for the progress handler to fire
SLOW_QUERY = """
WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c WHERE x < 200000)
SELECT count(*) FROM c
"""


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _run_in_threads(target, count: int) -> list:
    results: list = []
    lock = threading.Lock()
    start = threading.Barrier(count)

    def worker():
        start.wait()
        try:
            outcome = target()
        except Exception as e:
            outcome = e
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


def test_concurrent_sales_never_oversell(tmp_path: Path):
    app = build_app(tmp_path, lock_wait_seconds=30)
    pid = app.inventory.add_product("SKU-C", "Concurrido", stock=10)

    results = _run_in_threads(
        lambda: app.sales.create_sale(SaleInput(items=(SimpleSaleItem(pid, 2, Decimal("1")),))),
        8,
    )

    sold = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientStockError)]
    assert len(sold) == 5
    assert len(rejected) == 3
    assert app.inventory.get_product(pid).stock == 0
    assert len({s.sale_number for s in sold}) == 5
    assert app.operations.audit_ledger() == []


def test_concurrent_cancellations_reverse_once(tmp_path: Path):
    app = build_app(tmp_path, lock_wait_seconds=30)
    pid = app.inventory.add_product("SKU-K", "Cancelado", stock=10)
    sale = app.sales.create_sale(SaleInput(items=(SimpleSaleItem(pid, 4, Decimal("1")),)))

    results = _run_in_threads(lambda: app.sales.cancel_sale(sale.id), 4)

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert sum(1 for r in results if isinstance(r, AlreadyCancelledError)) == 3
    assert app.inventory.get_product(pid).stock == 10
    ins = [m for m in app.inventory.movements_for_reference(sale.sale_number) if m.type is MovementType.IN]
    assert len(ins) == 1


def test_deadline_rolls_back_the_whole_transaction(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-T", "Lento", stock=3)
    clock = FakeClock()

    with pytest.raises(TransientError):
        with SqliteUnitOfWork(app.repo, timeout_seconds=10, clock=clock) as uow:
            uow.ledger.apply_movement(pid, MovementType.IN, 5, "Manual adjustment")
            clock.now = 11
            uow.cur.execute(SLOW_QUERY)

    assert app.inventory.get_product(pid).stock == 3
    assert len(app.inventory.movements(pid)) == 1


def test_transaction_within_deadline_commits(tmp_path: Path):
    app = build_app(tmp_path)
    pid = app.inventory.add_product("SKU-T", "Rapido", stock=3)
    clock = FakeClock()

    with SqliteUnitOfWork(app.repo, timeout_seconds=10, clock=clock) as uow:
        uow.ledger.apply_movement(pid, MovementType.OUT, 1, "Manual adjustment")
        clock.now = 9
        uow.cur.execute(SLOW_QUERY)

    assert app.inventory.get_product(pid).stock == 2


def test_lock_wait_is_bounded(tmp_path: Path):
    app = build_app(tmp_path, lock_wait_seconds=0.2)
    pid = app.inventory.add_product("SKU-W", "Bloqueado", stock=3)

    holder = app.repo._conn()
    holder.isolation_level = None
    holder.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(TransientError):
            app.inventory.adjust_stock(pid, 1)
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    app.inventory.adjust_stock(pid, 1)
    assert app.inventory.get_product(pid).stock == 4


def test_retrying_backs_off_then_succeeds():
    calls = []
    sleeps = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientError("database is locked")
        return 42

    assert retrying(flaky, attempts=3, backoff_seconds=1, sleep=sleeps.append) == 42
    assert sleeps == [1, 2]


def test_retrying_gives_up_and_caps_backoff():
    sleeps = []

    def always_locked():
        raise TransientError("database is locked")

    with pytest.raises(TransientError):
        retrying(always_locked, attempts=4, backoff_seconds=4, sleep=sleeps.append)
    assert sleeps == [4, 5.0, 5.0]


def test_retrying_does_not_repeat_business_errors():
    calls = []

    def rejected():
        calls.append(1)
        raise InsufficientStockError(1, 0, 1)

    with pytest.raises(InsufficientStockError):
        retrying(rejected, attempts=3, backoff_seconds=0, sleep=lambda _s: None)
    assert len(calls) == 1


class SlowReturnUnitOfWork(SqliteUnitOfWork):
    """Stalls past the deadline right after the first unit goes back to stock."""

    def __enter__(self):
        super().__enter__()
        apply_movement = self.ledger.apply_movement

        def slow_apply(*args, **kwargs):
            movement_id = apply_movement(*args, **kwargs)
            self.clock.now = self.timeout_seconds + 1
            self.cur.execute(SLOW_QUERY)
            return movement_id

        self.ledger.apply_movement = slow_apply
        return self


def test_cancel_past_its_deadline_rolls_back(tmp_path: Path):
    app = build_app(tmp_path, cancel_timeout_seconds=20, tx_timeout_seconds=60)
    first = app.inventory.add_product("SKU-D1", "Uno", stock=5)
    second = app.inventory.add_product("SKU-D2", "Dos", stock=5)
    sale = app.sales.create_sale(
        SaleInput(items=(SimpleSaleItem(first, 2, Decimal("1")), SimpleSaleItem(second, 3, Decimal("1"))))
    )
    timeouts = []

    def uow_factory(timeout_seconds=None):
        timeouts.append(timeout_seconds)
        return SlowReturnUnitOfWork(app.repo, timeout_seconds or app.settings.tx_timeout_seconds, clock=FakeClock())

    sales = SalesService(app.repo, settings=app.settings, uow_factory=uow_factory)
    with pytest.raises(TransientError):
        sales.cancel_sale(sale.id)

    assert timeouts == [20]
    assert app.inventory.get_product(first).stock == 3
    assert app.inventory.get_product(second).stock == 2
    assert app.sales.get_sale(sale.id).status is SaleStatus.COMPLETED
    assert all(m.type is MovementType.OUT for m in app.inventory.movements_for_reference(sale.sale_number))

    cancelled = app.sales.cancel_sale(sale.id)
    assert cancelled.status is SaleStatus.CANCELLED
    assert app.inventory.get_product(first).stock == 5
