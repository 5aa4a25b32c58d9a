import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def build_app(tmp_path: Path, **settings):
    from stockcost.application.container import build_container
    from stockcost.config import Settings

    settings.setdefault("retry_backoff_seconds", 0)
    return build_container(tmp_path / "stockcost.db", Settings(**settings))


def add_supplier(app, name: str = "Proveedor SA") -> int:
    return app.contacts.add_supplier(name, "AR")
