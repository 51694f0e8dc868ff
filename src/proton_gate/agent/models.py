"""Data models for agent endpoints and the managed agent process."""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class EndpointKind(str, Enum):
    """Where the key-serving endpoint comes from."""

    NATIVE = "native"  # served by the desktop app
    MANAGED = "managed"  # served by an agent process we started
    NONE = "none"


class SupervisorState(str, Enum):
    """Agent Supervisor lifecycle states."""

    IDLE = "idle"
    AWAITING_AUTH = "awaiting_auth"
    SPAWNED = "spawned"
    LINKED_NATIVE = "linked_native"
    LINKED_MANAGED = "linked_managed"
    SHUTTING_DOWN = "shutting_down"

    @property
    def is_linked(self) -> bool:
        return self in (SupervisorState.LINKED_NATIVE, SupervisorState.LINKED_MANAGED)


@dataclass
class AgentEndpoint:
    """
    A reachable key-serving socket.

    Invariant: when kind is NATIVE the canonical path is a symlink to
    ``path``, never a copy.
    """

    path: str
    kind: EndpointKind
    live_since: Optional[datetime] = None
    key_count: int = 0

    @classmethod
    def reachable(cls, path: str, kind: EndpointKind, key_count: int = 0) -> "AgentEndpoint":
        return cls(
            path=path,
            kind=kind,
            live_since=datetime.now(timezone.utc),
            key_count=key_count,
        )


@dataclass
class ManagedProcess:
    """
    An agent process started by the supervisor.

    Persisted as JSON so a short-lived invocation can stop or adopt a
    process started by another invocation.
    """

    pid: int
    started_at: datetime
    socket_path: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "pid": self.pid,
                "started_at": self.started_at.isoformat(),
                "socket_path": self.socket_path,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManagedProcess":
        """
        Build from a decoded record.

        Raises:
            ValueError: If a field is missing or malformed
        """
        try:
            pid = int(data["pid"])
            started_at = datetime.fromisoformat(data["started_at"])
            socket_path = str(data["socket_path"])
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed managed process record: {e}") from e
        if pid <= 0:
            raise ValueError(f"Invalid pid in managed process record: {pid}")
        return cls(pid=pid, started_at=started_at, socket_path=socket_path)
