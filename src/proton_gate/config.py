"""Centralized configuration for proton-gate."""

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger


CONFIG_FILE_ENV = "PROTON_GATE_CONFIG"


def _default_config_path() -> Path:
    """Resolve the YAML config path (env override, then XDG location)."""
    env_path = os.getenv(CONFIG_FILE_ENV)
    if env_path:
        return Path(env_path).expanduser()
    base = os.getenv("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "proton-gate" / "config.yaml"


def load_file_settings(path: Path | None = None) -> dict[str, Any]:
    """
    Load optional settings from the YAML config file.

    A missing file yields an empty mapping. Unreadable or malformed files
    are logged and ignored so a broken config never locks the user out.

    Args:
        path: Explicit config path (defaults to the resolved config location)

    Returns:
        Mapping of setting key to raw value
    """
    config_path = path or _default_config_path()
    if not config_path.is_file():
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable config file {config_path}: {e}")
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {config_path}: top level must be a mapping")
        return {}
    return data


_FILE_SETTINGS = load_file_settings()


def _setting(env_name: str | None, file_key: str, default: Any) -> Any:
    """Resolve one setting with env > config file > default precedence."""
    if env_name:
        value = os.getenv(env_name)
        if value not in (None, ""):
            return value
    value = _FILE_SETTINGS.get(file_key)
    if value is not None:
        return value
    return default


def _parse_seconds(value: Any, name: str) -> float:
    """Parse and validate a duration in seconds."""
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {name}: expected seconds, got {value!r}")
    return seconds


def _expand(value: Any) -> str:
    return os.path.expandvars(os.path.expanduser(str(value)))


def _optional_path(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return _expand(value)


def _default_state_dir() -> str:
    runtime_dir = os.getenv("XDG_RUNTIME_DIR")
    if runtime_dir:
        return str(Path(runtime_dir) / "proton-gate")
    return str(Path.home() / ".local" / "state" / "proton-gate")


def _default_native_sockets() -> list[str]:
    """Provider-specific locations where the desktop app serves its agent."""
    home = Path.home()
    candidates = [
        home / ".local" / "share" / "proton-pass" / "ssh-agent.sock",
        home / ".config" / "Proton Pass" / "ssh-agent.sock",
    ]
    runtime_dir = os.getenv("XDG_RUNTIME_DIR")
    if runtime_dir:
        candidates.insert(0, Path(runtime_dir) / "proton-pass" / "ssh-agent.sock")
    return [str(path) for path in candidates]


def _native_sockets() -> list[str]:
    configured = _FILE_SETTINGS.get("native_sockets")
    if isinstance(configured, list) and configured:
        return [_expand(item) for item in configured]
    return _default_native_sockets()


class Config:
    """
    proton-gate configuration with environment variable overrides.

    Values resolve once at import time: environment variable first, then
    the YAML config file, then the built-in default.
    """

    # ========================================================================
    # Paths
    # ========================================================================
    STATE_DIR: str = _expand(_setting("PROTON_GATE_STATE_DIR", "state_dir", _default_state_dir()))
    CANONICAL_SOCKET: str = _expand(
        _setting(
            "PROTON_GATE_CANONICAL_SOCKET",
            "canonical_socket",
            str(Path.home() / ".ssh" / "proton-pass-agent.sock"),
        )
    )
    MANAGED_SOCKET: str = str(Path(STATE_DIR) / "managed-agent.sock")
    SESSION_FILE: str = str(Path(STATE_DIR) / "session.json")
    MANAGED_RECORD_FILE: str = str(Path(STATE_DIR) / "managed.json")
    HOLD_FILE: str = str(Path(STATE_DIR) / "hold")
    LOCK_FILE: str = str(Path(STATE_DIR) / "supervisor.lock")
    AUDIT_LOG_PATH: str = str(Path(STATE_DIR) / "audit.jsonl")
    LOG_FILE: str = str(Path(STATE_DIR) / "proton-gate.log")

    # ========================================================================
    # Socket discovery
    # ========================================================================
    SOCKET_OVERRIDE: str | None = _optional_path(
        _setting("PROTON_GATE_SOCKET", "socket_override", None)
    )
    NATIVE_SOCKETS: list[str] = _native_sockets()
    PROBE_TIMEOUT: float = _parse_seconds(_setting(None, "probe_timeout", 0.5), "probe_timeout")

    # ========================================================================
    # Vault CLI
    # ========================================================================
    VAULT_CLI: str | None = _optional_path(_setting("PROTON_PASS_CLI", "vault_cli", None))
    VAULT_CLI_NAME: str = "pass-cli"
    VAULT_QUERY_TIMEOUT: float = 10.0
    APP_TITLE: str = str(_setting(None, "app_title", "Proton Pass"))

    # ========================================================================
    # Supervisor timing
    # ========================================================================
    CHECK_INTERVAL: float = _parse_seconds(
        _setting("PROTON_GATE_CHECK_INTERVAL", "check_interval", 3), "PROTON_GATE_CHECK_INTERVAL"
    )
    RESTART_DELAY: float = _parse_seconds(
        _setting("PROTON_GATE_RESTART_DELAY", "restart_delay", 2), "PROTON_GATE_RESTART_DELAY"
    )
    SPAWN_TIMEOUT: float = _parse_seconds(_setting(None, "spawn_timeout", 5), "spawn_timeout")
    SPAWN_POLL_INTERVAL: float = 1.0
    SPAWN_ATTEMPTS: int = int(_setting(None, "spawn_attempts", 3))
    SHUTDOWN_GRACE: float = _parse_seconds(_setting(None, "shutdown_grace", 3), "shutdown_grace")
    LOCK_WAIT_TIMEOUT: float = 30.0

    # ========================================================================
    # Session gate
    # ========================================================================
    UNLOCK_TIMEOUT: float = _parse_seconds(
        _setting("PROTON_UNLOCK_TIMEOUT", "unlock_timeout", 60), "PROTON_UNLOCK_TIMEOUT"
    )
    UNLOCK_POLL_INTERVAL: float = 1.0
    SESSION_TTL: float = _parse_seconds(
        _setting("PROTON_SESSION_TTL", "session_ttl", 900), "PROTON_SESSION_TTL"
    )

    # ========================================================================
    # Interceptor
    # ========================================================================
    GIT_EXECUTABLE: str = str(_setting("PROTON_GATE_GIT", "git", "git"))

    # ========================================================================
    # Logging
    # ========================================================================
    LOG_LEVEL: str | None = _setting("PROTON_GATE_LOG_LEVEL", "log_level", None)
    AUDIT_ROTATION_BYTES: int = 10 * 1024 * 1024
    AUDIT_RETENTION_DAYS: int = 30

    @classmethod
    def validate(cls) -> bool:
        """
        Validate configuration consistency.

        Checks:
        - All durations are > 0
        - Spawn attempts is >= 1
        - Canonical and managed socket paths differ

        Returns:
            True if validation passes

        Raises:
            ValueError: If validation fails
        """
        errors = []

        durations = {
            "PROBE_TIMEOUT": cls.PROBE_TIMEOUT,
            "CHECK_INTERVAL": cls.CHECK_INTERVAL,
            "RESTART_DELAY": cls.RESTART_DELAY,
            "SPAWN_TIMEOUT": cls.SPAWN_TIMEOUT,
            "SHUTDOWN_GRACE": cls.SHUTDOWN_GRACE,
            "UNLOCK_TIMEOUT": cls.UNLOCK_TIMEOUT,
            "SESSION_TTL": cls.SESSION_TTL,
        }
        for name, value in durations.items():
            if value <= 0:
                errors.append(f"{name} must be > 0, got {value}")

        if cls.SPAWN_ATTEMPTS < 1:
            errors.append(f"SPAWN_ATTEMPTS must be >= 1, got {cls.SPAWN_ATTEMPTS}")

        if Path(cls.CANONICAL_SOCKET) == Path(cls.MANAGED_SOCKET):
            errors.append("CANONICAL_SOCKET and MANAGED_SOCKET must be different paths")

        if errors:
            raise ValueError(f"Config validation failed: {'; '.join(errors)}")

        return True
