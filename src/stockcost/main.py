from __future__ import annotations

import logging
import sys

from stockcost.application.container import build_container
from stockcost.config import get_app_paths, load_settings
from stockcost.domain.errors import AppError
from stockcost.logging_config import setup_logging

log = logging.getLogger(__name__)


def main() -> int:
    paths = get_app_paths()
    setup_logging(paths.logs_dir, level=logging.INFO)

    try:
        settings = load_settings()
        container = build_container(paths.db_path, settings)
    except AppError as e:
        log.error("startup_failed code=%s error=%s", e.code, e)
        print(f"stockcost: {e}", file=sys.stderr)
        return 2

    report = container.operations.run_health_check()
    print(f"database: {paths.db_path}")
    print(f"integrity: {report.sqlite_integrity}")
    print(f"ledger imbalances: {len(report.ledger_imbalances)}")
    for pid, stock, balance in report.ledger_imbalances:
        print(f"  product {pid}: stock={stock} movements={balance}")
    return 0 if report.healthy else 1


if __name__ == "__main__":
    sys.exit(main())
