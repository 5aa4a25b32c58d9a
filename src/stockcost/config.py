from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
import os
import sys

from stockcost.domain.errors import ValidationError

SUPPORTED_CURRENCIES = frozenset({"ARS", "USD", "EUR", "BRL", "CNY"})


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class Settings:
    local_currency: str = "ARS"
    lock_wait_seconds: float = 5.0
    tx_timeout_seconds: float = 30.0
    cancel_timeout_seconds: float = 15.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    number_attempts: int = 5

    def __post_init__(self) -> None:
        if self.local_currency not in SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported local currency: {self.local_currency}", field="local_currency")
        if self.cancel_timeout_seconds < 10:
            raise ValidationError("Sale cancellation timeout must be >= 10 seconds.", field="cancel_timeout_seconds")
        if self.lock_wait_seconds <= 0 or self.tx_timeout_seconds <= 0:
            raise ValidationError("Transaction timeouts must be > 0.", field="tx_timeout_seconds")
        if self.retry_attempts < 1 or self.number_attempts < 1:
            raise ValidationError("Attempt counts must be >= 1.", field="retry_attempts")
        if self.retry_backoff_seconds < 0:
            raise ValidationError("Retry backoff must be >= 0.", field="retry_backoff_seconds")


def _env_number(env: Mapping[str, str], name: str, default: float, cast=float):
    raw = env.get(name, "").strip()
    if not raw:
        return cast(default)
    try:
        return cast(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be a number. Received: {raw!r}", field=name) from e


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env
    return Settings(
        local_currency=env.get("STOCKCOST_LOCAL_CURRENCY", "").strip().upper() or "ARS",
        lock_wait_seconds=_env_number(env, "STOCKCOST_LOCK_WAIT_SECONDS", 5.0),
        tx_timeout_seconds=_env_number(env, "STOCKCOST_TX_TIMEOUT_SECONDS", 30.0),
        cancel_timeout_seconds=_env_number(env, "STOCKCOST_CANCEL_TIMEOUT_SECONDS", 15.0),
        retry_attempts=_env_number(env, "STOCKCOST_RETRY_ATTEMPTS", 3, cast=int),
        retry_backoff_seconds=_env_number(env, "STOCKCOST_RETRY_BACKOFF_SECONDS", 1.0),
        number_attempts=_env_number(env, "STOCKCOST_NUMBER_ATTEMPTS", 5, cast=int),
    )


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "StockCost") -> AppPaths:
    override = os.environ.get("STOCKCOST_HOME", "").strip()
    if override:
        base = Path(override)
    elif sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "stockcost.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)
