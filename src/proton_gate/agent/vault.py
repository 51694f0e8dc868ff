"""Adapter for the vault CLI (``pass-cli``)."""

import asyncio
import contextlib
import os
import shutil
from pathlib import Path
from typing import Optional

from loguru import logger

from ..config import Config
from ..errors import ProcessSpawnFailure


def find_vault_cli(override: Optional[str] = None) -> Optional[str]:
    """
    Locate the vault CLI binary.

    Search order: explicit override, PATH, ``~/.local/bin``, ``/usr/bin``,
    ``/usr/local/bin``.

    Returns:
        Path to an executable, or None if not found
    """
    if override:
        return override if os.access(override, os.X_OK) else None

    name = Config.VAULT_CLI_NAME
    candidates = [
        shutil.which(name),
        str(Path.home() / ".local" / "bin" / name),
        f"/usr/bin/{name}",
        f"/usr/local/bin/{name}",
    ]
    for candidate in candidates:
        if candidate and os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return None


class VaultCli:
    """
    Authentication check and agent launcher backed by the vault CLI.

    ``info`` exiting 0 means the CLI holds an authenticated session;
    ``ssh-agent start --socket-path`` serves the vault's keys on a socket.
    """

    def __init__(self, executable: Optional[str] = None, *, query_timeout: Optional[float] = None):
        self._override = executable if executable is not None else Config.VAULT_CLI
        self._query_timeout = query_timeout or Config.VAULT_QUERY_TIMEOUT
        self._executable: Optional[str] = None

    @property
    def executable(self) -> Optional[str]:
        if self._executable is None:
            self._executable = find_vault_cli(self._override)
        return self._executable

    @staticmethod
    def login_hint() -> str:
        return f"{Config.VAULT_CLI_NAME} login --interactive"

    async def is_authenticated(self) -> bool:
        """Return True if the vault CLI reports an active session."""
        executable = self.executable
        if executable is None:
            logger.debug(f"{Config.VAULT_CLI_NAME} not found; treating vault as unauthenticated")
            return False

        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                "info",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning(f"Failed to run {executable} info: {e}")
            return False

        try:
            code = await asyncio.wait_for(proc.wait(), timeout=self._query_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{executable} info timed out after {self._query_timeout}s")
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            return False
        return code == 0

    async def start_agent(self, socket_path: str) -> asyncio.subprocess.Process:
        """
        Start a key-serving agent bound to ``socket_path``.

        The child runs in its own session so it outlives a short-lived
        invocation that started it.

        Raises:
            ProcessSpawnFailure: If the CLI is missing or cannot be executed
        """
        executable = self.executable
        if executable is None:
            raise ProcessSpawnFailure(
                f"{Config.VAULT_CLI_NAME} not found. Install it or set PROTON_PASS_CLI."
            )
        try:
            return await asyncio.create_subprocess_exec(
                executable,
                "ssh-agent",
                "start",
                "--socket-path",
                socket_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessSpawnFailure(f"Failed to start {executable} ssh-agent: {e}") from e
