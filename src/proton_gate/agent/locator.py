"""Socket Locator: find the native agent socket that currently answers."""

import os
import stat
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from ..config import Config
from .models import AgentEndpoint, EndpointKind
from .protocol import AgentProtocolError, request_identities


def is_socket(path: str | Path) -> bool:
    """True if ``path`` exists and is a Unix socket (symlinks followed)."""
    try:
        return stat.S_ISSOCK(os.stat(path).st_mode)
    except OSError:
        return False


class SocketLocator:
    """
    Probe an ordered list of candidate sockets.

    The override location is tried first, then the provider defaults. A
    candidate qualifies when it is a socket and answers a key-listing
    request without a transport error; an empty answer still qualifies
    because it means "reachable but locked".

    Stateless and uncached: the supervisor calls ``locate()`` on every
    cycle.
    """

    def __init__(
        self,
        *,
        override: Optional[str] = None,
        candidates: Optional[Iterable[str]] = None,
        exclude: Iterable[str] = (),
        probe_timeout: Optional[float] = None,
    ) -> None:
        self._override = override if override is not None else Config.SOCKET_OVERRIDE
        self._candidates = list(candidates if candidates is not None else Config.NATIVE_SOCKETS)
        self._exclude = {os.path.abspath(path) for path in exclude}
        self._probe_timeout = probe_timeout or Config.PROBE_TIMEOUT

    def candidate_paths(self) -> list[str]:
        """Ordered, de-duplicated candidates minus our own sockets."""
        ordered = [self._override] if self._override else []
        ordered.extend(self._candidates)

        paths = []
        seen = set()
        for candidate in ordered:
            absolute = os.path.abspath(os.path.expanduser(candidate))
            if absolute in seen or absolute in self._exclude:
                continue
            seen.add(absolute)
            paths.append(absolute)
        return paths

    async def probe(self, path: str) -> Optional[int]:
        """
        Check one candidate.

        Returns:
            Number of keys served, or None if the candidate does not qualify
        """
        if not is_socket(path):
            return None
        try:
            identities = await request_identities(path, timeout=self._probe_timeout)
        except AgentProtocolError as e:
            logger.debug(f"Candidate {path} did not qualify: {e}")
            return None
        return len(identities)

    async def locate(self) -> Optional[AgentEndpoint]:
        """Return the first qualifying native endpoint, or None."""
        for path in self.candidate_paths():
            key_count = await self.probe(path)
            if key_count is not None:
                return AgentEndpoint.reachable(path, EndpointKind.NATIVE, key_count)
        return None
