"""Session Gatekeeper: enforce a bounded, re-verified unlock window."""

import asyncio
import inspect
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from loguru import logger

from ..agent.models import EndpointKind
from ..agent.supervisor import AgentSupervisor
from ..audit import AuditEvent, AuditLogger, get_audit_logger
from ..config import Config
from ..desktop import focus_vault_app
from ..errors import (
    EndpointUnreachable,
    FailureReason,
    GateError,
    SessionStoreIOError,
    UnlockTimeout,
    VaultLocked,
)
from ..polling import PollOutcome, poll_until
from .models import SessionRecord
from .store import SessionStore

Notifier = Callable[[str], None]
Focuser = Callable[[], Union[None, Awaitable[None]]]


def notify_stderr(message: str) -> None:
    """Default user-facing notice channel."""
    print(f"proton-gate: {message}", file=sys.stderr, flush=True)


@dataclass
class FreshnessResult:
    """Outcome of ``ensure_fresh``."""

    ok: bool
    reason: Optional[FailureReason] = None
    message: str = ""
    key_count: int = 0

    @classmethod
    def success(cls, key_count: int, message: str = "") -> "FreshnessResult":
        return cls(ok=True, key_count=key_count, message=message)

    @classmethod
    def failure(cls, reason: FailureReason, message: str) -> "FreshnessResult":
        return cls(ok=False, reason=reason, message=message)

    @classmethod
    def from_error(cls, error: GateError) -> "FreshnessResult":
        return cls.failure(error.reason, error.message)


class _LockedWhileWaiting(Exception):
    pass


class SessionGatekeeper:
    """
    Answers "was the vault verified recently?" and runs the unlock flow.

    A session is fresh when its record exists and is younger than the TTL.
    Freshness alone never grants access: the fast path also requires the
    canonical endpoint to be live and serving at least one key. Any miss
    purges the agent and the record before anything else happens.
    """

    def __init__(
        self,
        supervisor: AgentSupervisor,
        *,
        store: Optional[SessionStore] = None,
        ttl: Optional[float] = None,
        unlock_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        notify: Optional[Notifier] = None,
        focus: Optional[Focuser] = None,
        stop_event: Optional[asyncio.Event] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.supervisor = supervisor
        self.store = store or SessionStore()
        self.ttl = ttl or Config.SESSION_TTL
        self.unlock_timeout = unlock_timeout or Config.UNLOCK_TIMEOUT
        self.poll_interval = poll_interval or Config.UNLOCK_POLL_INTERVAL
        self.notify = notify or notify_stderr
        self._focus = focus or focus_vault_app
        self.stop_event = stop_event or supervisor.stop_event
        self._audit = audit

    @property
    def audit(self) -> AuditLogger:
        return self._audit or get_audit_logger()

    # ------------------------------------------------------------------
    # Session record
    # ------------------------------------------------------------------

    def current(self) -> Optional[SessionRecord]:
        """The stored record, or None when absent or unreadable."""
        try:
            return self.store.load()
        except SessionStoreIOError as e:
            logger.warning(f"{e.message}; treating session as expired")
            return None

    def is_fresh(self) -> bool:
        record = self.current()
        return record is not None and record.is_fresh()

    def remaining(self) -> float:
        """Seconds of freshness left, 0 when not fresh."""
        record = self.current()
        return record.remaining() if record is not None else 0.0

    def touch(self) -> SessionRecord:
        """
        Mark the session verified now.

        Raises:
            SessionStoreIOError: If the record cannot be written
        """
        record = SessionRecord.create(self.ttl)
        self.store.save(record)
        return record

    def invalidate(self) -> None:
        """
        Expire the session immediately. Idempotent.

        Raises:
            SessionStoreIOError: If an existing record cannot be removed
        """
        self.store.delete()
        self.audit.log(AuditEvent.SESSION_INVALIDATED)

    # ------------------------------------------------------------------
    # EnsureFresh
    # ------------------------------------------------------------------

    async def ensure_fresh(self, *, interactive: bool) -> FreshnessResult:
        """
        Guarantee a fresh session backed by a live, key-serving endpoint.

        Args:
            interactive: Run the unlock flow on a miss instead of failing

        Returns:
            FreshnessResult; on failure ``reason`` is NO_SESSION,
            UNLOCK_TIMEOUT or CANCELLED
        """
        if self.is_fresh():
            try:
                key_count = await self.verify_live()
                logger.debug(f"Session fresh ({self.remaining():.0f}s left), {key_count} keys served")
                return FreshnessResult.success(key_count)
            except GateError as e:
                logger.info(f"Session fresh but endpoint check failed: {e.message}")

        await self._purge()

        if not interactive:
            self.notify("Session expired or vault locked.")
            return FreshnessResult.failure(
                FailureReason.NO_SESSION, "Session expired or vault locked"
            )

        try:
            return await self._wait_for_unlock()
        except UnlockTimeout as e:
            self.notify(f"{e.message}.")
            return FreshnessResult.from_error(e)

    async def verify_live(self, *, deadline: Optional[float] = None) -> int:
        """
        Re-verify the agent: live endpoint, at least one key, and for a
        managed agent an authenticated vault session.

        Args:
            deadline: Event-loop time bounding any discovery or spawn work

        Returns:
            Number of keys served

        Raises:
            GateError: Describing which check failed
        """
        await self.supervisor.ensure_live(deadline=deadline)
        key_count = await self.supervisor.key_count()
        if key_count is None:
            raise EndpointUnreachable("Canonical agent socket is not answering")
        if key_count == 0:
            raise VaultLocked("Agent is reachable but serves no keys")
        if self.supervisor.endpoint_kind() is EndpointKind.MANAGED:
            if not await self.supervisor.vault.is_authenticated():
                raise VaultLocked("Vault session ended while the managed agent was still serving keys")
        return key_count

    async def _purge(self) -> None:
        """Drop cached key material and the session record."""
        await self.supervisor.force_stop()
        try:
            self.invalidate()
        except SessionStoreIOError as e:
            logger.warning(e.message)

    async def _wait_for_unlock(self) -> FreshnessResult:
        self.supervisor.release_hold()
        self.notify(
            f"Session expired or vault locked. Unlock {Config.APP_TITLE} to continue "
            f"(waiting up to {self.unlock_timeout:.0f}s)..."
        )
        await self._bring_app_forward()

        key_count = 0
        last_error: Optional[GateError] = None
        deadline = asyncio.get_running_loop().time() + self.unlock_timeout

        async def unlocked() -> bool:
            nonlocal key_count, last_error
            if self.supervisor.is_held():
                raise _LockedWhileWaiting()
            try:
                key_count = await self.verify_live(deadline=deadline)
                return True
            except GateError as e:
                if last_error is None or e.message != last_error.message:
                    logger.debug(f"Still waiting for unlock: {e.message}")
                last_error = e
                return False

        try:
            outcome = await poll_until(
                unlocked,
                interval=self.poll_interval,
                timeout=self.unlock_timeout,
                stop_event=self.stop_event,
            )
        except _LockedWhileWaiting:
            self.notify("Vault was locked while waiting for unlock.")
            return FreshnessResult.failure(FailureReason.NO_SESSION, "Locked while waiting for unlock")

        if outcome is PollOutcome.STOPPED:
            return FreshnessResult.failure(FailureReason.CANCELLED, "Unlock wait cancelled")

        if outcome is PollOutcome.TIMED_OUT:
            detail = f" (last check: {last_error.message})" if last_error else ""
            raise UnlockTimeout(f"Timed out after {self.unlock_timeout:.0f}s waiting for unlock{detail}")

        if self.supervisor.is_held():
            self.notify("Vault was locked while waiting for unlock.")
            return FreshnessResult.failure(FailureReason.NO_SESSION, "Locked while waiting for unlock")

        try:
            record = self.touch()
            minutes = record.ttl_seconds / 60
            self.notify(f"Vault unlocked. Session valid for {minutes:.0f} min.")
        except SessionStoreIOError as e:
            logger.warning(f"{e.message}; continuing without a stored session")
            self.notify("Vault unlocked.")

        self.audit.log(AuditEvent.SESSION_VERIFIED, key_count=key_count, ttl_seconds=self.ttl)
        return FreshnessResult.success(key_count)

    async def _bring_app_forward(self) -> None:
        result = self._focus()
        if inspect.isawaitable(result):
            await result
