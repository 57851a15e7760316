"""
Audit trail for guardrail decisions and spend changes.

One JSON record per line. Every record carries a sequence number and the
HMAC of its predecessor, so edits, deletions and reordering show up when
the chain is verified. Writers take an exclusive ``flock`` on the log and
read the chain tail from disk inside it, so any number of services (in one
process or many) can append to the same file.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterator, Optional

from .errors import AuditIntegrityError
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".spendguard" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".spendguard-secrets" / "audit_hmac.key"

GENESIS_HASH = "0" * 64
_TAIL_CHUNK = 4096


class EventType(str, Enum):
    POLICY_UPDATED = "policy_updated"
    TRUST_ADDED = "trust_added"
    TRUST_REMOVED = "trust_removed"
    DECISION_EVALUATED = "decision_evaluated"
    DECISION_FAILED_CLOSED = "decision_failed_closed"
    BUDGET_RESERVED = "budget_reserved"
    BUDGET_RELEASED = "budget_released"
    SPEND_RECORDED = "spend_recorded"
    TRANSFER_INITIATED = "transfer_initiated"
    TRANSFER_COMPLETED = "transfer_completed"
    TRANSFER_FAILED = "transfer_failed"
    TRANSFER_DENIED = "transfer_denied"
    ALERT_RAISED = "alert_raised"
    RECONCILIATION_REQUIRED = "reconciliation_required"


@dataclass
class AuditEvent:
    seq: int
    timestamp: float
    event_type: str
    prev_hash: str
    user_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    amount_usd: Optional[float] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    event_hash: str = ""

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "AuditEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in record.items() if k in known})

    def signed_body(self) -> dict[str, Any]:
        body = asdict(self)
        body.pop("event_hash")
        return body


class AuditTrail:
    """Append-only, HMAC-chained event log shared safely between writers."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = Path(path or DEFAULT_AUDIT_PATH)
        self.key_path = Path(key_path or DEFAULT_AUDIT_KEY_PATH)

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)
        self._hmac_key = self._load_or_create_key()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv("SPENDGUARD_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()

        ensure_private_dir(self.key_path.parent)
        if not self.key_path.exists():
            # Publish the key with link() so concurrent first runs agree on one key.
            staged = self.key_path.with_name(f".{self.key_path.name}.{secrets.token_hex(6)}")
            staged.write_bytes(secrets.token_hex(32).encode())
            os.chmod(staged, 0o600)
            try:
                os.link(staged, self.key_path)
            except FileExistsError:
                pass
            finally:
                staged.unlink()

        key = self.key_path.read_bytes().strip()
        if not key:
            raise AuditIntegrityError(f"Audit key file {self.key_path} is empty")
        return key

    def _sign(self, body: dict[str, Any]) -> str:
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._hmac_key, canonical.encode(), hashlib.sha256).hexdigest()

    @contextmanager
    def _locked(self, mode: str, lock: int) -> Iterator[IO[bytes]]:
        with open(self.path, mode) as f:
            fcntl.flock(f.fileno(), lock)
            try:
                yield f
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    @staticmethod
    def _last_record(f: IO[bytes]) -> Optional[dict[str, Any]]:
        f.seek(0, os.SEEK_END)
        pos = f.tell()
        buf = b""
        while pos > 0:
            step = min(_TAIL_CHUNK, pos)
            pos -= step
            f.seek(pos)
            buf = f.read(step) + buf
            body = buf.rstrip(b"\n")
            cut = body.rfind(b"\n")
            if cut != -1 or pos == 0:
                line = body[cut + 1:]
                if not line:
                    return None
                try:
                    return json.loads(line)
                except ValueError as exc:
                    raise AuditIntegrityError(
                        f"Audit chain broken: unreadable last record in {f.name}"
                    ) from exc
        return None

    def log(
        self,
        event_type: EventType,
        user_id: Optional[str] = None,
        counterparty_id: Optional[str] = None,
        amount_usd: Optional[float] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        with self._locked("a+b", fcntl.LOCK_EX) as f:
            tail = self._last_record(f)
            try:
                seq, prev_hash = (tail["seq"] + 1, tail["event_hash"]) if tail else (1, GENESIS_HASH)
            except (KeyError, TypeError) as exc:
                raise AuditIntegrityError(f"Audit chain broken: malformed last record in {self.path}") from exc
            event = AuditEvent(
                seq=seq,
                timestamp=time.time(),
                event_type=event_type.value,
                prev_hash=prev_hash,
                user_id=user_id,
                counterparty_id=counterparty_id,
                amount_usd=amount_usd,
                success=success,
                reason=reason,
                details=details,
            )
            event.event_hash = self._sign(event.signed_body())
            f.write(json.dumps(asdict(event), separators=(",", ":")).encode() + b"\n")
            f.flush()
            os.fsync(f.fileno())
        return event

    def _verified(self) -> Iterator[AuditEvent]:
        """Yield every event in order, raising on the first broken link."""
        expected_seq, expected_prev = 1, GENESIS_HASH
        with self._locked("rb", fcntl.LOCK_SH) as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    event = AuditEvent.from_record(json.loads(line))
                except (ValueError, TypeError) as exc:
                    raise AuditIntegrityError(
                        f"Audit chain broken: unreadable record on line {lineno}"
                    ) from exc
                if event.prev_hash != expected_prev:
                    raise AuditIntegrityError(
                        f"Audit chain broken: previous hash mismatch at seq {event.seq}"
                    )
                if event.seq != expected_seq:
                    raise AuditIntegrityError(
                        f"Audit chain broken: expected seq {expected_seq}, found {event.seq}"
                    )
                if not hmac.compare_digest(self._sign(event.signed_body()), event.event_hash):
                    raise AuditIntegrityError(
                        f"Audit chain broken: event hash mismatch at seq {event.seq}"
                    )
                yield event
                expected_seq, expected_prev = event.seq + 1, event.event_hash

    def verify(self) -> int:
        """Check the whole chain and return how many events it holds."""
        return sum(1 for _ in self._verified())

    def read_events(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent ``limit`` matching events, oldest first. Verifies the chain."""
        recent: deque[AuditEvent] = deque(maxlen=limit)
        for event in self._verified():
            if user_id and event.user_id != user_id:
                continue
            if event_type and event.event_type != event_type.value:
                continue
            recent.append(event)
        return list(recent)
