"""SQLite access and local storage hardening helpers."""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import StorageUnavailableError

logger = logging.getLogger(__name__)


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


class Database:
    """
    Shared SQLite database for policies, trust, ledger and alerts.

    Each operation opens its own connection, so the object is safe to share
    between threads. ``timeout`` bounds how long any statement waits on a
    lock before the call fails with ``StorageUnavailableError``.
    """

    def __init__(self, path: Path, timeout: float = 5.0):
        self.path = Path(path)
        self.timeout = timeout
        ensure_private_dir(self.path.parent)
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
        ensure_private_file(self.path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection; sqlite errors surface as StorageUnavailableError."""
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Cannot open database {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            logger.warning("Storage operation failed on %s: %s", self.path, exc)
            raise StorageUnavailableError(f"Storage operation failed: {exc}") from exc
        except sqlite3.Error as exc:
            logger.error("Storage error on %s: %s", self.path, exc)
            raise StorageUnavailableError(f"Storage error: {exc}", retryable=False) from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction taken with BEGIN IMMEDIATE, rolled back on any error."""
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.rollback()
                raise
            conn.execute("COMMIT")

    def ensure_schema(self, ddl: str) -> None:
        with self.connect() as conn:
            conn.executescript(ddl)
