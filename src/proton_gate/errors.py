"""Error taxonomy for gating failures."""

from enum import Enum


class FailureReason(str, Enum):
    """Machine-readable reason attached to every gate failure."""

    ENDPOINT_UNREACHABLE = "endpoint_unreachable"
    VAULT_LOCKED = "vault_locked"
    UNLOCK_TIMEOUT = "unlock_timeout"
    PROCESS_SPAWN_FAILURE = "process_spawn_failure"
    SIGNING_MISCONFIGURED = "signing_misconfigured"
    SESSION_STORE_IO = "session_store_io"
    NO_SESSION = "no_session"
    CANCELLED = "cancelled"


class GateError(Exception):
    """Base class for all gating errors."""

    reason: FailureReason = FailureReason.ENDPOINT_UNREACHABLE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EndpointUnreachable(GateError):
    """No agent provider could be found or reached. Retrying may help."""

    reason = FailureReason.ENDPOINT_UNREACHABLE


class VaultLocked(GateError):
    """A provider is reachable but serves no keys."""

    reason = FailureReason.VAULT_LOCKED


class UnlockTimeout(GateError):
    """The user did not unlock the vault within the wait bound."""

    reason = FailureReason.UNLOCK_TIMEOUT


class ProcessSpawnFailure(GateError):
    """The managed agent failed to start or its socket never appeared."""

    reason = FailureReason.PROCESS_SPAWN_FAILURE


class SigningMisconfigured(GateError):
    """Signing was requested but git is not set up to sign with this agent."""

    reason = FailureReason.SIGNING_MISCONFIGURED


class SessionStoreIOError(GateError):
    """The persisted session record could not be read or written."""

    reason = FailureReason.SESSION_STORE_IO
