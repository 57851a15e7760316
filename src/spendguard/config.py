"""Runtime configuration, read from ``SPENDGUARD_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


DEFAULT_HOME = Path.home() / ".spendguard"
DEFAULT_STORAGE_TIMEOUT = 5.0
DEFAULT_SUMMARY_MAX_DAYS = 30
DEFAULT_PROVIDER_URL = "https://api.circle.com"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass
class GuardConfig:
    home: Path = DEFAULT_HOME
    db_path: Optional[Path] = None
    audit_path: Optional[Path] = None
    storage_timeout_seconds: float = DEFAULT_STORAGE_TIMEOUT
    summary_max_days: int = DEFAULT_SUMMARY_MAX_DAYS
    reserve_budget: bool = True
    provider_url: str = DEFAULT_PROVIDER_URL
    provider_api_key: Optional[str] = None
    provider_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        self.home = Path(self.home)
        if self.storage_timeout_seconds <= 0:
            raise ValueError("storage_timeout_seconds must be positive")
        if self.summary_max_days < 1:
            raise ValueError("summary_max_days must be at least 1")

    @property
    def database_path(self) -> Path:
        return Path(self.db_path) if self.db_path else self.home / "spendguard.sqlite3"

    @property
    def audit_log_path(self) -> Path:
        return Path(self.audit_path) if self.audit_path else self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.home.parent / ".spendguard-secrets" / "audit_hmac.key"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GuardConfig":
        env = os.environ if environ is None else environ
        home = env.get("SPENDGUARD_HOME")
        db_path = env.get("SPENDGUARD_DB_PATH")
        return cls(
            home=Path(home).expanduser() if home else DEFAULT_HOME,
            db_path=Path(db_path).expanduser() if db_path else None,
            storage_timeout_seconds=float(
                env.get("SPENDGUARD_STORAGE_TIMEOUT", DEFAULT_STORAGE_TIMEOUT)
            ),
            summary_max_days=int(env.get("SPENDGUARD_SUMMARY_MAX_DAYS", DEFAULT_SUMMARY_MAX_DAYS)),
            reserve_budget=_parse_bool(env.get("SPENDGUARD_RESERVE_BUDGET"), default=True),
            provider_url=env.get("SPENDGUARD_PROVIDER_URL", DEFAULT_PROVIDER_URL),
            provider_api_key=env.get("SPENDGUARD_PROVIDER_API_KEY") or None,
            provider_timeout_seconds=float(env.get("SPENDGUARD_PROVIDER_TIMEOUT", 30.0)),
        )


def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"Invalid boolean value: {raw}")
