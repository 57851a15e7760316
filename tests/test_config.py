"""Tests for configuration and storage helpers."""

import sqlite3
import stat

import pytest

from spendguard.config import GuardConfig
from spendguard.errors import StorageUnavailableError
from spendguard.storage import Database


class TestGuardConfig:
    def test_defaults(self):
        config = GuardConfig.from_env({})
        assert config.storage_timeout_seconds == 5.0
        assert config.summary_max_days == 30
        assert config.reserve_budget is True
        assert config.provider_api_key is None
        assert config.database_path == config.home / "spendguard.sqlite3"

    def test_from_env(self, tmp_path):
        config = GuardConfig.from_env(
            {
                "SPENDGUARD_HOME": str(tmp_path / "home"),
                "SPENDGUARD_STORAGE_TIMEOUT": "1.5",
                "SPENDGUARD_SUMMARY_MAX_DAYS": "14",
                "SPENDGUARD_RESERVE_BUDGET": "off",
                "SPENDGUARD_PROVIDER_API_KEY": "key-123",
            }
        )
        assert config.home == tmp_path / "home"
        assert config.storage_timeout_seconds == 1.5
        assert config.summary_max_days == 14
        assert config.reserve_budget is False
        assert config.provider_api_key == "key-123"
        assert config.audit_log_path == tmp_path / "home" / "audit.jsonl"
        assert config.audit_key_path == tmp_path / ".spendguard-secrets" / "audit_hmac.key"

    def test_db_path_override(self, tmp_path):
        config = GuardConfig.from_env({"SPENDGUARD_DB_PATH": str(tmp_path / "x.db")})
        assert config.database_path == tmp_path / "x.db"

    @pytest.mark.parametrize(
        "env",
        [
            {"SPENDGUARD_STORAGE_TIMEOUT": "0"},
            {"SPENDGUARD_SUMMARY_MAX_DAYS": "0"},
            {"SPENDGUARD_RESERVE_BUDGET": "maybe"},
        ],
    )
    def test_invalid_values_rejected(self, env):
        with pytest.raises(ValueError):
            GuardConfig.from_env(env)


class TestDatabase:
    def test_files_are_private(self, tmp_path):
        db = Database(tmp_path / "store" / "guard.sqlite3")
        assert stat.S_IMODE(db.path.stat().st_mode) == 0o600
        assert stat.S_IMODE(db.path.parent.stat().st_mode) == 0o700

    def test_sqlite_errors_become_storage_unavailable(self, tmp_path):
        db = Database(tmp_path / "guard.sqlite3")
        with pytest.raises(StorageUnavailableError) as exc_info:
            with db.connect() as conn:
                conn.execute("SELECT * FROM missing_table")
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)

    def test_transaction_rolls_back_on_error(self, tmp_path):
        db = Database(tmp_path / "guard.sqlite3")
        db.ensure_schema("CREATE TABLE IF NOT EXISTS t (v INTEGER);")
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                conn.execute("INSERT INTO t (v) VALUES (1)")
                raise RuntimeError("boom")
        with db.connect() as conn:
            assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0

    def test_locked_database_times_out(self, tmp_path):
        db = Database(tmp_path / "guard.sqlite3", timeout=0.1)
        db.ensure_schema("CREATE TABLE IF NOT EXISTS t (v INTEGER);")
        with db.transaction():
            with pytest.raises(StorageUnavailableError):
                with db.transaction() as second:
                    second.execute("INSERT INTO t (v) VALUES (1)")
