"""Agent endpoint discovery, the vault CLI adapter and the Agent Supervisor."""

from .locator import SocketLocator
from .models import AgentEndpoint, EndpointKind, ManagedProcess, SupervisorState
from .supervisor import AgentSupervisor
from .vault import VaultCli

__all__ = [
    "AgentEndpoint",
    "AgentSupervisor",
    "EndpointKind",
    "ManagedProcess",
    "SocketLocator",
    "SupervisorState",
    "VaultCli",
]
