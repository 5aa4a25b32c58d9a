from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from stockcost.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthReport:
    sqlite_integrity: str
    db_size_bytes: int
    logs_count: int
    generated_at: str
    # (product_id, stock, movement_balance)
    ledger_imbalances: tuple[tuple[int, int, int], ...] = field(default_factory=tuple)

    @property
    def healthy(self) -> bool:
        return self.sqlite_integrity == "ok" and not self.ledger_imbalances


class OperationsService:
    def __init__(
        self,
        repo,
        db_path: Path | str,
        logs_dir: Path | str,
        uow_factory: Callable[[], UnitOfWork] | None = None,
    ):
        self.repo = repo
        self.db_path = Path(db_path)
        self.logs_dir = Path(logs_dir)
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))

    def audit_ledger(self) -> list[tuple[int, int, int]]:
        """Compare every product's stock with the sum of its movements."""
        with self.uow_factory() as uow:
            imbalances = uow.ledger.find_imbalances()
        for pid, stock, balance in imbalances:
            log.critical("ledger_imbalance product_id=%s stock=%s movements=%s", pid, stock, balance)
        return imbalances

    def run_health_check(self) -> HealthReport:
        integrity = self.repo.integrity_check()
        logs_count = len(list(self.logs_dir.glob("*.log"))) if self.logs_dir.exists() else 0
        size = self.db_path.stat().st_size if self.db_path.exists() else 0
        report = HealthReport(
            sqlite_integrity=integrity,
            db_size_bytes=size,
            logs_count=logs_count,
            generated_at=datetime.now().isoformat(timespec="seconds"),
            ledger_imbalances=tuple(self.audit_ledger()),
        )
        log.info(
            "health_check integrity=%s imbalances=%s db_size=%s",
            report.sqlite_integrity,
            len(report.ledger_imbalances),
            report.db_size_bytes,
        )
        return report
