"""Status Reporter: read-only view of the agent endpoint and the session."""

from dataclasses import dataclass, field
from typing import Any, Optional

from .agent.models import EndpointKind
from .agent.supervisor import AgentSupervisor
from .errors import EndpointUnreachable
from .session.gatekeeper import SessionGatekeeper


@dataclass
class KeyInfo:
    key_type: str
    fingerprint: str
    comment: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.key_type, "fingerprint": self.fingerprint, "comment": self.comment}


@dataclass
class StatusReport:
    """Snapshot of everything a user needs to know before a gated operation."""

    canonical_socket: str
    endpoint_kind: EndpointKind
    endpoint_target: Optional[str]
    live: bool
    key_count: Optional[int]
    keys: list[KeyInfo] = field(default_factory=list)
    session_fresh: bool = False
    session_remaining: float = 0.0
    session_verified_at: Optional[str] = None
    held: bool = False
    managed_pid: Optional[int] = None

    @property
    def locked(self) -> bool:
        return not self.live or not self.key_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "canonical_socket": self.canonical_socket,
            "endpoint": {
                "kind": self.endpoint_kind.value,
                "target": self.endpoint_target,
                "live": self.live,
                "key_count": self.key_count,
                "keys": [key.to_dict() for key in self.keys],
            },
            "session": {
                "fresh": self.session_fresh,
                "remaining_seconds": round(self.session_remaining, 1),
                "verified_at": self.session_verified_at,
            },
            "held": self.held,
            "managed_pid": self.managed_pid,
        }


async def collect_status(supervisor: AgentSupervisor, gatekeeper: SessionGatekeeper) -> StatusReport:
    """
    Gather a StatusReport without changing any state.

    Only probes sockets and reads files; never links, spawns or unlocks.
    """
    keys: list[KeyInfo] = []
    try:
        identities = await supervisor.list_keys()
        live = True
        key_count: Optional[int] = len(identities)
        keys = [KeyInfo(i.key_type, i.fingerprint, i.comment) for i in identities]
    except EndpointUnreachable:
        live = False
        key_count = None

    record = gatekeeper.current()
    managed = supervisor.read_record()
    return StatusReport(
        canonical_socket=str(supervisor.canonical_path),
        endpoint_kind=supervisor.endpoint_kind(),
        endpoint_target=supervisor.canonical_target(),
        live=live,
        key_count=key_count,
        keys=keys,
        session_fresh=record is not None and record.is_fresh(),
        session_remaining=record.remaining() if record is not None else 0.0,
        session_verified_at=record.verified_at.isoformat() if record is not None else None,
        held=supervisor.is_held(),
        managed_pid=managed.pid if managed is not None else None,
    )


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m{secs:02d}s" if minutes else f"{secs}s"


def render_status(report: StatusReport) -> str:
    """Human-readable report."""
    lines = ["=== Proton Pass SSH Agent Status ===", f"Socket: {report.canonical_socket}"]

    if report.endpoint_target:
        source = report.endpoint_kind.value
        if report.managed_pid is not None and report.endpoint_kind is EndpointKind.MANAGED:
            source += f", PID {report.managed_pid}"
        lines.append(f"Provider: {report.endpoint_target} ({source})")

    if not report.live:
        lines.append("Status: socket not found or not answering")
    elif not report.key_count:
        lines.append("Status: locked (unlock Proton Pass to use keys)")
    else:
        lines.append("Status: unlocked")
        lines.append("")
        lines.append("Available keys:")
        for key in report.keys:
            label = key.comment or "(no comment)"
            lines.append(f"  - {label} [{key.key_type} {key.fingerprint}]")

    lines.append("")
    if report.session_fresh:
        lines.append(f"Session: fresh, {_format_duration(report.session_remaining)} remaining")
    elif report.session_verified_at:
        lines.append(f"Session: expired (last verified {report.session_verified_at})")
    else:
        lines.append("Session: none")
    if report.held:
        lines.append("Lock: held (next gated git operation or 'proton-gate unlock' releases it)")
    return "\n".join(lines)
