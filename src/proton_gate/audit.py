"""Structured JSON audit trail for gate and agent lifecycle decisions."""

import itertools
import json
import os
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger

from .config import Config

MAX_CONTENT_LENGTH = 1000


def _clip(value: Any) -> Any:
    """Make one audit field JSON-friendly and bounded in size."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, str):
        if len(value) <= MAX_CONTENT_LENGTH:
            return value
        return f"{value[:MAX_CONTENT_LENGTH]}... [truncated, {len(value)} total chars]"
    if isinstance(value, Mapping):
        return {key: _clip(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clip(item) for item in value]
    return value


class AuditEvent(str, Enum):
    """Audit event types."""

    GATE_DECISION = "gate_decision"
    GATE_BLOCKED = "gate_blocked"
    SESSION_VERIFIED = "session_verified"
    SESSION_INVALIDATED = "session_invalidated"
    AGENT_LINKED = "agent_linked"
    AGENT_SPAWNED = "agent_spawned"
    AGENT_EXITED = "agent_exited"
    AGENT_STOPPED = "agent_stopped"
    LOCK = "lock"
    UNLOCK = "unlock"


class AuditLogger:
    """
    JSON Lines audit logger.

    Features:
    - One JSON object per line with ISO 8601 UTC timestamps
    - Automatic content truncation
    - Size-based rotation with timestamped backups
    - Retention cleanup of old rotations
    - Write failures are logged, never raised
    """

    def __init__(
        self,
        log_path: Optional[str] = None,
        *,
        rotation_bytes: Optional[int] = None,
        retention_days: Optional[int] = None,
    ):
        self.log_path = Path(log_path or Config.AUDIT_LOG_PATH)
        self.rotation_bytes = rotation_bytes or Config.AUDIT_ROTATION_BYTES
        self.retention_days = (
            Config.AUDIT_RETENTION_DAYS if retention_days is None else retention_days
        )
        self._last_cleanup: Optional[datetime] = None

    def _rotated_path(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        base = self.log_path.with_name(f"{self.log_path.name}.{stamp}")
        counter = itertools.count(1)
        candidate = base
        while candidate.exists():
            candidate = base.with_name(f"{base.name}.{next(counter)}")
        return candidate

    def _rotate_if_needed(self) -> None:
        """Move the live file aside once it reaches the rotation size."""
        try:
            size = self.log_path.stat().st_size
        except FileNotFoundError:
            return
        if size >= self.rotation_bytes:
            self.log_path.replace(self._rotated_path())

    def _cleanup_old_logs(self) -> None:
        """Remove rotated audit files older than the retention window."""
        if self.retention_days <= 0 or not self.log_path.parent.exists():
            return
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.retention_days)
        for path in self.log_path.parent.glob(f"{self.log_path.name}.*"):
            if not path.is_file():
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
            if modified < cutoff:
                path.unlink()
        self._last_cleanup = datetime.now(timezone.utc)

    def _maybe_cleanup(self) -> None:
        now = datetime.now(timezone.utc)
        if self._last_cleanup is None or now - self._last_cleanup >= timedelta(days=1):
            self._cleanup_old_logs()

    def log(self, event: AuditEvent, **kwargs: Any) -> None:
        """
        Append one audit record.

        Args:
            event: Audit event type
            **kwargs: Additional fields to include in the record
        """
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event.value,
            "pid": os.getpid(),
            **{key: _clip(value) for key, value in kwargs.items()},
        }
        json_line = json.dumps(record, ensure_ascii=False, default=str)

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            self._maybe_cleanup()
            self._rotate_if_needed()
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json_line + "\n")
        except OSError as e:
            logger.warning(f"Failed to write audit record {event.value}: {e}")

    def log_gate_decision(self, command: str, required: bool, reason: str) -> None:
        self.log(AuditEvent.GATE_DECISION, command=command, required=required, reason=reason)

    def log_gate_blocked(self, command: str, failure: str, message: str) -> None:
        self.log(AuditEvent.GATE_BLOCKED, command=command, failure=failure, message=message)

    def log_agent_exit(self, pid: int, exit_code: Optional[int]) -> None:
        self.log(AuditEvent.AGENT_EXITED, agent_pid=pid, exit_code=exit_code)


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Return the process-wide audit logger, creating it on first use."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def set_audit_logger(audit: Optional[AuditLogger]) -> None:
    """Replace the process-wide audit logger (None resets to default)."""
    global _audit_logger
    _audit_logger = audit
