"""Agent Supervisor: keep exactly one live key-serving endpoint at the canonical path."""

import asyncio
import contextlib
import fcntl
import json
import os
import signal
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional, TextIO

from loguru import logger

from ..audit import AuditEvent, AuditLogger, get_audit_logger
from ..config import Config
from ..errors import EndpointUnreachable, ProcessSpawnFailure
from ..polling import PollOutcome, poll_until, sleep_or_stop
from .locator import SocketLocator, is_socket
from .models import AgentEndpoint, EndpointKind, ManagedProcess, SupervisorState
from .protocol import AgentIdentity, AgentProtocolError, request_identities
from .vault import VaultCli

HELD_MESSAGE = "Agent is held locked; an interactive unlock releases it"


def _state_path(state_dir: Optional[str], name: str, default: str) -> Path:
    return Path(state_dir) / name if state_dir else Path(default)


def _unlink(path: Path | str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.unlink(path)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _looks_like_agent(pid: int) -> bool:
    """
    Guard against signalling a recycled pid from a stale record.

    Where /proc is available the command line must mention ``ssh-agent``.
    """
    cmdline = Path("/proc") / str(pid) / "cmdline"
    if not Path("/proc").is_dir():
        return True
    try:
        return b"ssh-agent" in cmdline.read_bytes()
    except OSError:
        return False


class AgentSupervisor:
    """
    Owns the canonical agent socket and, when needed, a managed agent process.

    States: IDLE -> LINKED_NATIVE when a desktop socket answers;
    IDLE -> AWAITING_AUTH -> SPAWNED -> LINKED_MANAGED via the vault CLI;
    any state -> SHUTTING_DOWN on ``shutdown()``.

    The canonical path is always a symlink, swapped by rename. Shared
    filesystem state (pid record, hold marker, spawn lock) lets
    independent invocations cooperate with the long-lived daemon.
    """

    def __init__(
        self,
        *,
        canonical_path: Optional[str] = None,
        state_dir: Optional[str] = None,
        locator: Optional[SocketLocator] = None,
        vault: Optional[VaultCli] = None,
        check_interval: Optional[float] = None,
        restart_delay: Optional[float] = None,
        spawn_timeout: Optional[float] = None,
        spawn_poll_interval: Optional[float] = None,
        spawn_attempts: Optional[int] = None,
        probe_timeout: Optional[float] = None,
        auth_wait_timeout: Optional[float] = None,
        shutdown_grace: Optional[float] = None,
        lock_wait_timeout: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.canonical_path = Path(canonical_path or Config.CANONICAL_SOCKET)
        self.managed_socket_path = _state_path(state_dir, "managed-agent.sock", Config.MANAGED_SOCKET)
        self.record_path = _state_path(state_dir, "managed.json", Config.MANAGED_RECORD_FILE)
        self.hold_path = _state_path(state_dir, "hold", Config.HOLD_FILE)
        self.lock_path = _state_path(state_dir, "supervisor.lock", Config.LOCK_FILE)

        self.probe_timeout = probe_timeout or Config.PROBE_TIMEOUT
        self.locator = locator or SocketLocator(
            exclude=[str(self.canonical_path), str(self.managed_socket_path)],
            probe_timeout=self.probe_timeout,
        )
        self.vault = vault or VaultCli()

        self.check_interval = check_interval or Config.CHECK_INTERVAL
        self.restart_delay = restart_delay or Config.RESTART_DELAY
        self.spawn_timeout = spawn_timeout or Config.SPAWN_TIMEOUT
        self.spawn_poll_interval = spawn_poll_interval or Config.SPAWN_POLL_INTERVAL
        self.spawn_attempts = spawn_attempts or Config.SPAWN_ATTEMPTS
        self.auth_wait_timeout = auth_wait_timeout or Config.UNLOCK_TIMEOUT
        self.shutdown_grace = shutdown_grace or Config.SHUTDOWN_GRACE
        self.lock_wait_timeout = lock_wait_timeout or Config.LOCK_WAIT_TIMEOUT

        self.stop_event = stop_event or asyncio.Event()
        self._audit = audit

        self._state = SupervisorState.IDLE
        self._endpoint: Optional[AgentEndpoint] = None
        self._managed: Optional[ManagedProcess] = None
        self._proc: Optional[asyncio.subprocess.Process] = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def endpoint(self) -> Optional[AgentEndpoint]:
        return self._endpoint

    @property
    def managed(self) -> Optional[ManagedProcess]:
        return self._managed

    @property
    def audit(self) -> AuditLogger:
        return self._audit or get_audit_logger()

    def canonical_target(self) -> Optional[str]:
        """Where the canonical symlink points, or None if absent."""
        try:
            return os.readlink(self.canonical_path)
        except OSError:
            return None

    def endpoint_kind(self) -> EndpointKind:
        """Classify the current canonical reference from the filesystem."""
        target = self.canonical_target()
        if target is None:
            return EndpointKind.NONE
        if os.path.abspath(target) == os.path.abspath(self.managed_socket_path):
            return EndpointKind.MANAGED
        return EndpointKind.NATIVE

    async def list_keys(self) -> list[AgentIdentity]:
        """
        Keys served through the canonical path.

        Raises:
            EndpointUnreachable: If nothing answers at the canonical path
        """
        try:
            return await request_identities(self.canonical_path, timeout=self.probe_timeout)
        except AgentProtocolError as e:
            raise EndpointUnreachable(str(e)) from e

    async def key_count(self) -> Optional[int]:
        """Keys served through the canonical path, or None if unreachable."""
        return await self._probe(self.canonical_path)

    # ------------------------------------------------------------------
    # Hold marker
    # ------------------------------------------------------------------

    def is_held(self) -> bool:
        return self.hold_path.exists()

    def hold(self) -> None:
        """Keep the supervisor from linking or spawning until released."""
        self.hold_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(self.hold_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(datetime.now(timezone.utc).isoformat() + "\n")

    def release_hold(self) -> None:
        _unlink(self.hold_path)

    # ------------------------------------------------------------------
    # EnsureLive
    # ------------------------------------------------------------------

    async def ensure_live(
        self, *, wait_for_auth: bool = False, deadline: Optional[float] = None
    ) -> AgentEndpoint:
        """
        Make sure a live endpoint is reachable at the canonical path.

        Args:
            wait_for_auth: Poll the vault for a session (bounded) instead of
                failing straight away when it is not authenticated
            deadline: Event-loop time by which to give up; caps the lock
                wait and the spawn wait and allows a single spawn attempt

        Returns:
            The linked endpoint

        Raises:
            EndpointUnreachable: No provider and no vault session, or held locked
            ProcessSpawnFailure: The managed agent could not be started
        """
        if self._state.is_linked and self._endpoint is not None:
            if self.is_held():
                await self._stop_for_hold()
            elif await self._still_live():
                return self._endpoint
            else:
                logger.info("Canonical endpoint stopped answering; rediscovering")
                await self.force_stop()

        self._check_hold()

        async with self._cycle_lock(timeout=self._bounded(self.lock_wait_timeout, deadline)):
            # a lock may have landed while we waited for the spawn lock
            self._check_hold()
            return await self._discover(wait_for_auth=wait_for_auth, deadline=deadline)

    def _check_hold(self) -> None:
        if self.is_held():
            raise EndpointUnreachable(HELD_MESSAGE)

    @staticmethod
    def _bounded(seconds: float, deadline: Optional[float]) -> float:
        """``seconds``, capped by the time left until ``deadline``."""
        if deadline is None:
            return seconds
        return max(0.0, min(seconds, deadline - asyncio.get_running_loop().time()))

    async def _still_live(self) -> bool:
        endpoint = self._endpoint
        if endpoint is None or self.canonical_target() != endpoint.path:
            return False
        key_count = await self._probe(self.canonical_path)
        if key_count is None:
            return False
        endpoint.key_count = key_count
        return True

    async def _discover(self, *, wait_for_auth: bool, deadline: Optional[float]) -> AgentEndpoint:
        native = await self.locator.locate()
        if native is not None:
            self._check_hold()
            self._link_canonical(native.path)
            self._set_linked(native)
            return native

        adopted = await self._adopt_managed()
        if adopted is not None:
            return adopted

        if not await self.vault.is_authenticated():
            self._set_state(SupervisorState.AWAITING_AUTH)
            hint = f"run: {self.vault.login_hint()}"
            if not wait_for_auth:
                raise EndpointUnreachable(
                    f"No agent socket found and the vault has no active session ({hint})"
                )
            logger.info(f"Waiting up to {self.auth_wait_timeout}s for a vault session ({hint})")
            outcome = await poll_until(
                self.vault.is_authenticated,
                interval=self.check_interval,
                timeout=self._bounded(self.auth_wait_timeout, deadline),
                stop_event=self.stop_event,
            )
            if outcome is not PollOutcome.SATISFIED:
                raise EndpointUnreachable(f"No vault session became available ({outcome.value})")

        return await self._spawn_with_retries(deadline)

    async def _adopt_managed(self) -> Optional[AgentEndpoint]:
        """Reuse a managed agent started by another invocation, if healthy."""
        record = self.read_record()
        if record is None:
            return None

        if _pid_alive(record.pid):
            key_count = await self._probe(record.socket_path)
            if key_count is not None:
                self._check_hold()
                self._managed = record
                if self._proc is not None and self._proc.pid != record.pid:
                    self._proc = None
                self._link_canonical(record.socket_path)
                endpoint = AgentEndpoint.reachable(record.socket_path, EndpointKind.MANAGED, key_count)
                self._set_linked(endpoint)
                return endpoint
            if _looks_like_agent(record.pid):
                logger.warning(f"Managed agent (PID {record.pid}) is not answering; stopping it")
                await self._terminate_pid(record.pid, escalate=True)

        logger.debug(f"Discarding stale managed agent record for PID {record.pid}")
        _unlink(record.socket_path)
        self._remove_record()
        return None

    async def _spawn_with_retries(self, deadline: Optional[float] = None) -> AgentEndpoint:
        attempts = self.spawn_attempts if deadline is None else 1
        last_error: Optional[ProcessSpawnFailure] = None
        for attempt in range(1, attempts + 1):
            try:
                return await self._spawn_managed(self._bounded(self.spawn_timeout, deadline))
            except ProcessSpawnFailure as e:
                last_error = e
                logger.warning(
                    f"Managed agent failed to start (attempt {attempt}/{attempts}): {e}"
                )
            if attempt < attempts:
                if await sleep_or_stop(self.restart_delay, self.stop_event):
                    break
        raise ProcessSpawnFailure(
            f"Managed agent failed to start after {attempts} attempts: {last_error}"
        )

    async def _spawn_managed(self, timeout: Optional[float] = None) -> AgentEndpoint:
        timeout = self.spawn_timeout if timeout is None else timeout
        socket_path = self.managed_socket_path
        socket_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        _unlink(socket_path)

        self._set_state(SupervisorState.SPAWNED)
        logger.info("Vault session active. Starting SSH agent...")
        proc = await self.vault.start_agent(str(socket_path))
        self._proc = proc

        await poll_until(
            lambda: proc.returncode is not None or is_socket(socket_path) or self.is_held(),
            interval=self.spawn_poll_interval,
            timeout=timeout,
            stop_event=self.stop_event,
        )

        if self.is_held():
            logger.info("Locked while the agent was starting; stopping it")
            await self._abandon_spawn(proc)
            raise EndpointUnreachable(HELD_MESSAGE)

        if proc.returncode is not None or not is_socket(socket_path):
            exit_code = proc.returncode
            await self._abandon_spawn(proc)
            if exit_code is not None:
                raise ProcessSpawnFailure(
                    f"Managed agent exited with code {exit_code} before its socket appeared"
                )
            raise ProcessSpawnFailure(
                f"Managed agent socket did not appear within {timeout:.1f}s"
            )

        managed = ManagedProcess(
            pid=proc.pid,
            started_at=datetime.now(timezone.utc),
            socket_path=str(socket_path),
        )
        self._managed = managed
        # the record must exist before the link is visible
        self._write_record(managed)
        if self.is_held():
            await self._abandon_spawn(proc)
            self._remove_record()
            raise EndpointUnreachable(HELD_MESSAGE)
        self._link_canonical(str(socket_path))

        key_count = await self._probe(socket_path) or 0
        endpoint = AgentEndpoint.reachable(str(socket_path), EndpointKind.MANAGED, key_count)
        logger.info(f"Agent running (PID {proc.pid}). Socket ready.")
        self.audit.log(AuditEvent.AGENT_SPAWNED, agent_pid=proc.pid, socket_path=str(socket_path))
        self._set_linked(endpoint)
        return endpoint

    async def _abandon_spawn(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            await self._terminate_own(proc, escalate=True)
        self._proc = None
        self._managed = None
        _unlink(self.managed_socket_path)
        self._set_state(SupervisorState.IDLE)

    # ------------------------------------------------------------------
    # Continuous supervision
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Supervise until ``stop_event`` is set, then shut down cleanly.

        Every failure is logged and retried after a fixed backoff; only the
        stop event ends the loop.
        """
        logger.info(f"Starting agent supervisor (canonical socket: {self.canonical_path})")
        last_message: Optional[str] = None
        try:
            while not self.stop_event.is_set():
                try:
                    await self.ensure_live()
                    last_message = None
                    await self._supervise_linked()
                except EndpointUnreachable as e:
                    if e.message != last_message:
                        logger.info(f"{e.message}. Waiting...")
                        last_message = e.message
                    await sleep_or_stop(self.check_interval, self.stop_event)
                except ProcessSpawnFailure as e:
                    logger.error(f"{e.message}. Retrying in {self.restart_delay}s")
                    last_message = None
                    await sleep_or_stop(self.restart_delay, self.stop_event)
                except Exception as e:
                    logger.exception(f"Supervisor cycle failed: {e}")
                    last_message = None
                    await sleep_or_stop(self.restart_delay, self.stop_event)
        finally:
            await self.shutdown()

    async def _supervise_linked(self) -> None:
        """Block while the current link stays healthy."""
        if self._state is SupervisorState.LINKED_MANAGED:
            if self._proc is not None:
                await self._watch_own_process(self._proc)
            else:
                await self._watch_adopted_process()
        elif self._state is SupervisorState.LINKED_NATIVE:
            await self._watch_native()

    async def _watch_own_process(self, proc: asyncio.subprocess.Process) -> None:
        wait_task = asyncio.ensure_future(proc.wait())
        stop_task = asyncio.ensure_future(self.stop_event.wait())
        try:
            while not (wait_task.done() or stop_task.done()):
                if self.is_held():
                    await self._stop_for_hold()
                    return
                await asyncio.wait(
                    {wait_task, stop_task},
                    timeout=self.check_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
        finally:
            for task in (wait_task, stop_task):
                if not task.done():
                    task.cancel()

        if wait_task.done() and not wait_task.cancelled():
            await self._on_managed_exit(proc.pid, wait_task.result())

    async def _watch_adopted_process(self) -> None:
        managed = self._managed
        if managed is None:
            self._set_state(SupervisorState.IDLE)
            return
        while not await sleep_or_stop(self.check_interval, self.stop_event):
            if self.is_held():
                await self._stop_for_hold()
                return
            if self.canonical_target() != managed.socket_path:
                logger.info("Canonical reference was removed; returning to idle")
                self._reset()
                return
            if not _pid_alive(managed.pid) or not is_socket(managed.socket_path):
                await self._on_managed_exit(managed.pid, None)
                return

    async def _watch_native(self) -> None:
        endpoint = self._endpoint
        if endpoint is None:
            self._set_state(SupervisorState.IDLE)
            return
        while not await sleep_or_stop(self.check_interval, self.stop_event):
            if self.is_held():
                await self._stop_for_hold()
                return
            if self.canonical_target() != endpoint.path:
                logger.info("Canonical reference was removed; returning to idle")
                self._reset()
                return
            if not is_socket(endpoint.path):
                logger.info(f"Native agent socket {endpoint.path} disappeared")
                self._clear_canonical(expected_target=endpoint.path)
                self._reset()
                return

    async def _stop_for_hold(self) -> None:
        logger.info("Hold marker present; stopping the agent")
        await self.force_stop()

    async def _on_managed_exit(self, pid: int, exit_code: Optional[int]) -> None:
        socket_path = str(self.managed_socket_path)
        self._proc = None
        _unlink(socket_path)
        record = self.read_record()
        if record is None or record.pid == pid:
            self._remove_record()
        self._clear_canonical(expected_target=socket_path)
        self._reset()

        logger.warning(f"Agent exited (code={exit_code}). Restarting in {self.restart_delay}s...")
        self.audit.log_agent_exit(pid, exit_code)
        await sleep_or_stop(self.restart_delay, self.stop_event)

    # ------------------------------------------------------------------
    # ForceStop / shutdown
    # ------------------------------------------------------------------

    async def force_stop(self, *, hold: bool = False) -> None:
        """
        Stop serving key material right now. Idempotent.

        Terminates any managed agent (ours or one recorded by another
        invocation), removes the managed socket, the pid record and the
        canonical reference, and returns to IDLE.

        Args:
            hold: Also leave a hold marker so no endpoint is re-linked or
                respawned until an interactive unlock releases it
        """
        if hold:
            self.hold()
            # no discovery or spawn cycle may be in flight once this returns
            try:
                async with self._cycle_lock():
                    await self._stop_all(hold=True)
                return
            except EndpointUnreachable as e:
                logger.warning(f"{e.message}; stopping without the spawn lock")
        await self._stop_all(hold=hold)

    async def _stop_all(self, *, hold: bool) -> None:
        proc = self._proc
        stopped_pid: Optional[int] = None
        if proc is not None and proc.returncode is None:
            await self._terminate_own(proc, escalate=True)
            stopped_pid = proc.pid
        self._proc = None

        record = self.read_record()
        if (
            record is not None
            and record.pid != stopped_pid
            and _pid_alive(record.pid)
            and _looks_like_agent(record.pid)
        ):
            await self._terminate_pid(record.pid, escalate=True)
            stopped_pid = record.pid

        _unlink(self.managed_socket_path)
        self._remove_record()
        self._clear_canonical()
        self._reset()

        logger.info("Agent stopped and canonical socket removed")
        self.audit.log(AuditEvent.AGENT_STOPPED, agent_pid=stopped_pid, hold=hold)

    async def shutdown(self) -> None:
        """Terminate the managed agent gracefully and remove every socket reference."""
        self._set_state(SupervisorState.SHUTTING_DOWN)
        logger.info("Shutting down...")

        proc = self._proc
        if proc is not None and proc.returncode is None:
            await self._terminate_own(proc, escalate=False)
        elif self._managed is not None and _pid_alive(self._managed.pid):
            await self._terminate_pid(self._managed.pid, escalate=False)
        self._proc = None

        if self._managed is not None:
            _unlink(self._managed.socket_path)
            self._remove_record()
        self._clear_canonical()
        self._endpoint = None
        self._managed = None

    async def _terminate_own(self, proc: asyncio.subprocess.Process, *, escalate: bool) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.shutdown_grace)
        except asyncio.TimeoutError:
            if not escalate:
                logger.warning(f"Agent (PID {proc.pid}) ignored SIGTERM for {self.shutdown_grace}s")
                return
            logger.warning(f"Agent (PID {proc.pid}) ignored SIGTERM; killing it")
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    async def _terminate_pid(self, pid: int, *, escalate: bool) -> None:
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGTERM)
        outcome = await poll_until(
            lambda: not _pid_alive(pid), interval=0.1, timeout=self.shutdown_grace
        )
        if outcome is PollOutcome.SATISFIED:
            return
        if not escalate:
            logger.warning(f"Agent (PID {pid}) ignored SIGTERM for {self.shutdown_grace}s")
            return
        logger.warning(f"Agent (PID {pid}) ignored SIGTERM; killing it")
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGKILL)
        await poll_until(lambda: not _pid_alive(pid), interval=0.1, timeout=self.shutdown_grace)

    # ------------------------------------------------------------------
    # Filesystem state
    # ------------------------------------------------------------------

    def _link_canonical(self, target: str) -> None:
        """Point the canonical symlink at ``target`` with an atomic rename."""
        if self.canonical_target() == target:
            return
        self.canonical_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        tmp_link = self.canonical_path.with_name(f".{self.canonical_path.name}.{os.getpid()}.tmp")
        _unlink(tmp_link)
        os.symlink(target, tmp_link)
        os.replace(tmp_link, self.canonical_path)

    def _clear_canonical(self, expected_target: Optional[str] = None) -> None:
        """Remove the canonical reference, optionally only if it still points at ``expected_target``."""
        if expected_target is not None and self.canonical_target() != expected_target:
            return
        _unlink(self.canonical_path)

    def read_record(self) -> Optional[ManagedProcess]:
        """Load the persisted managed process record, if any."""
        try:
            with open(self.record_path, "r", encoding="utf-8") as f:
                return ManagedProcess.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable managed agent record {self.record_path}: {e}")
            return None

    def _write_record(self, managed: ManagedProcess) -> None:
        self.record_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd, tmp_name = tempfile.mkstemp(dir=self.record_path.parent, prefix=".managed.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(managed.to_json())
            os.replace(tmp_name, self.record_path)
        except OSError:
            _unlink(tmp_name)
            raise

    def _remove_record(self) -> None:
        _unlink(self.record_path)

    @contextlib.asynccontextmanager
    async def _cycle_lock(self, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Serialise discovery/spawn across processes with an advisory lock."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        handle: TextIO = open(self.lock_path, "a+", encoding="utf-8")
        try:
            outcome = await poll_until(
                lambda: self._try_flock(handle),
                interval=0.1,
                timeout=self.lock_wait_timeout if timeout is None else timeout,
                stop_event=self.stop_event,
            )
            if outcome is not PollOutcome.SATISFIED:
                raise EndpointUnreachable("Another invocation is still starting the agent")
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    @staticmethod
    def _try_flock(handle: TextIO) -> bool:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            return False

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def _probe(self, path: Path | str) -> Optional[int]:
        if not is_socket(path):
            return None
        try:
            identities = await request_identities(path, timeout=self.probe_timeout)
        except AgentProtocolError as e:
            logger.debug(f"Probe of {path} failed: {e}")
            return None
        return len(identities)

    def _set_state(self, state: SupervisorState) -> None:
        if state is not self._state:
            logger.debug(f"Supervisor state {self._state.value} -> {state.value}")
            self._state = state

    def _set_linked(self, endpoint: AgentEndpoint) -> None:
        self._endpoint = endpoint
        if endpoint.kind is EndpointKind.NATIVE:
            self._managed = None
            self._set_state(SupervisorState.LINKED_NATIVE)
        else:
            self._set_state(SupervisorState.LINKED_MANAGED)
        logger.info(
            f"Linked {self.canonical_path} -> {endpoint.path} "
            f"({endpoint.kind.value}, {endpoint.key_count} keys)"
        )
        self.audit.log(
            AuditEvent.AGENT_LINKED,
            kind=endpoint.kind,
            socket_path=endpoint.path,
            key_count=endpoint.key_count,
        )

    def _reset(self) -> None:
        self._endpoint = None
        self._managed = None
        self._set_state(SupervisorState.IDLE)
