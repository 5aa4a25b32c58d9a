from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from stockcost.config import Settings, load_settings
from stockcost.repositories.sqlite_repo import SqliteRepository
from stockcost.repositories.unit_of_work import SqliteUnitOfWork
from stockcost.services.contacts_service import ContactsService
from stockcost.services.fx_service import FxService
from stockcost.services.inventory_service import InventoryService
from stockcost.services.operations_service import OperationsService
from stockcost.services.purchase_service import PurchaseService
from stockcost.services.sales_service import SalesService


@dataclass(frozen=True)
class AppContainer:
    settings: Settings
    repo: SqliteRepository
    fx: FxService
    inventory: InventoryService
    contacts: ContactsService
    purchases: PurchaseService
    sales: SalesService
    operations: OperationsService


def build_container(db_path: Path | str, settings: Settings | None = None) -> AppContainer:
    settings = settings or load_settings()
    repo = SqliteRepository(db_path, lock_wait_seconds=settings.lock_wait_seconds)
    repo.init_db()

    def uow_factory(timeout_seconds: float | None = None) -> SqliteUnitOfWork:
        return SqliteUnitOfWork(repo, timeout_seconds or settings.tx_timeout_seconds)

    fx = FxService(repo, local_currency=settings.local_currency)
    inventory = InventoryService(repo, uow_factory=uow_factory)
    contacts = ContactsService(repo)
    purchases = PurchaseService(repo, fx, settings=settings, uow_factory=uow_factory)
    sales = SalesService(repo, settings=settings, uow_factory=uow_factory)
    operations = OperationsService(
        repo,
        db_path=db_path,
        logs_dir=Path(db_path).parent / "logs",
        uow_factory=uow_factory,
    )

    return AppContainer(
        settings=settings,
        repo=repo,
        fx=fx,
        inventory=inventory,
        contacts=contacts,
        purchases=purchases,
        sales=sales,
        operations=operations,
    )
