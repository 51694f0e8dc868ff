"""Command Interceptor: gate the git operations that need key material."""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import os
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from loguru import logger

from .audit import AuditLogger, get_audit_logger
from .config import Config
from .errors import FailureReason, GateError, SigningMisconfigured
from .session.gatekeeper import SessionGatekeeper

EXIT_GATE_FAILED = 77  # EX_NOPERM
EXIT_MISCONFIGURED = 78  # EX_CONFIG
EXIT_NOT_FOUND = 127
EXIT_CANCELLED = 130

TRANSPORT_COMMANDS = frozenset({"push", "fetch", "pull", "clone"})

# git global options that take a separate value
_GLOBAL_VALUE_OPTIONS = frozenset(
    {"-C", "-c", "--git-dir", "--work-tree", "--namespace", "--super-prefix", "--config-env"}
)
# global options that change which configuration `git config` sees
_CONFIG_SCOPE_OPTIONS = frozenset({"-C", "-c", "--git-dir", "--work-tree", "--config-env", "--bare"})

_COMMIT_SHORT_VALUE = frozenset("mFCct")
_COMMIT_SHORT_ATTACHED = frozenset("u")
_COMMIT_LONG_VALUE = frozenset(
    {
        "--message",
        "--file",
        "--author",
        "--date",
        "--cleanup",
        "--fixup",
        "--squash",
        "--reuse-message",
        "--reedit-message",
        "--template",
        "--trailer",
        "--pathspec-from-file",
    }
)

_TAG_SHORT_VALUE = frozenset("mF")
_TAG_LONG_VALUE = frozenset(
    {
        "--message",
        "--file",
        "--cleanup",
        "--contains",
        "--no-contains",
        "--merged",
        "--no-merged",
        "--points-at",
        "--sort",
        "--format",
    }
)
# options that only make sense when listing tags
_TAG_LIST_OPTIONS = frozenset(
    {
        "--contains",
        "--no-contains",
        "--merged",
        "--no-merged",
        "--points-at",
        "--sort",
        "--format",
        "--column",
    }
)

_LITERAL_KEY_PREFIXES = ("ssh-", "ecdsa-", "sk-")

_TRUE_VALUES = frozenset({"true", "yes", "on", "1", ""})


class GateReason(str, Enum):
    """Why an operation needs the vault."""

    PUSH = "push"
    SIGNING_COMMIT = "signing_commit"
    SIGNING_TAG = "signing_tag"
    NONE = "none"

    @property
    def is_signing(self) -> bool:
        return self in (GateReason.SIGNING_COMMIT, GateReason.SIGNING_TAG)


@dataclass(frozen=True)
class GateDecision:
    """Per-invocation gating decision. Never persisted."""

    required: bool
    reason: GateReason
    command: Optional[str] = None
    signing_key: Optional[str] = None  # key given on the command line

    def to_dict(self) -> dict:
        return {
            "required": self.required,
            "reason": self.reason.value,
            "command": self.command,
            "signing_key": self.signing_key,
        }


@dataclass(frozen=True)
class GateOutcome:
    """Result of gating one invocation, before delegation."""

    decision: GateDecision
    allowed: bool
    reason: Optional[FailureReason] = None
    message: str = ""

    @property
    def exit_code(self) -> int:
        if self.allowed:
            return 0
        if self.reason is FailureReason.SIGNING_MISCONFIGURED:
            return EXIT_MISCONFIGURED
        if self.reason is FailureReason.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_GATE_FAILED


# ----------------------------------------------------------------------
# argv parsing
# ----------------------------------------------------------------------


def split_git_argv(argv: Sequence[str]) -> tuple[list[str], Optional[str], list[str]]:
    """
    Split ``git`` arguments into (global options, sub-command, sub-command args).

    The sub-command is None when argv holds only global options
    (e.g. ``git --version``).
    """
    global_opts: list[str] = []
    i = 0
    while i < len(argv):
        arg = argv[i]
        if not arg.startswith("-"):
            return global_opts, arg, list(argv[i + 1 :])
        global_opts.append(arg)
        i += 1
        if arg in _GLOBAL_VALUE_OPTIONS and i < len(argv):
            global_opts.append(argv[i])
            i += 1
    return global_opts, None, []


def config_scope_options(global_opts: Sequence[str]) -> list[str]:
    """Subset of global options that must be forwarded to ``git config`` reads."""
    scoped: list[str] = []
    i = 0
    while i < len(global_opts):
        arg = global_opts[i]
        name = arg.split("=", 1)[0]
        takes_value = arg in _GLOBAL_VALUE_OPTIONS
        if name in _CONFIG_SCOPE_OPTIONS:
            scoped.append(arg)
            if takes_value and i + 1 < len(global_opts):
                scoped.append(global_opts[i + 1])
        i += 2 if takes_value else 1
    return scoped


def _split_long(arg: str) -> tuple[str, bool, str]:
    name, sep, value = arg.partition("=")
    return name, bool(sep), value


def _scan_commit(args: Sequence[str]) -> tuple[Optional[bool], Optional[str]]:
    """Explicit signing request in ``git commit`` args: (sign, key id)."""
    sign: Optional[bool] = None
    key: Optional[str] = None
    i = 0
    while i < len(args):
        arg = args[i]
        i += 1
        if arg == "--":
            break
        if arg.startswith("--"):
            name, has_value, value = _split_long(arg)
            if name == "--gpg-sign":
                sign, key = True, value or None
            elif name == "--no-gpg-sign":
                sign, key = False, None
            elif name in _COMMIT_LONG_VALUE and not has_value:
                i += 1
            continue
        if not arg.startswith("-") or arg == "-":
            continue
        cluster = arg[1:]
        for pos, flag in enumerate(cluster):
            rest = cluster[pos + 1 :]
            if flag == "S":
                sign, key = True, rest or None
                break
            if flag in _COMMIT_SHORT_ATTACHED:
                break
            if flag in _COMMIT_SHORT_VALUE:
                if not rest:
                    i += 1
                break
    return sign, key


def _scan_tag(args: Sequence[str]) -> tuple[Optional[bool], Optional[str], bool]:
    """Explicit signing request in ``git tag`` args: (sign, key id, creates a tag)."""
    sign: Optional[bool] = None
    key: Optional[str] = None
    listing = False
    positionals: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        i += 1
        if arg == "--":
            positionals.extend(args[i:])
            break
        if arg.startswith("--"):
            name, has_value, value = _split_long(arg)
            if name == "--sign":
                sign = True
            elif name == "--no-sign":
                sign, key = False, None
            elif name == "--local-user":
                sign = True
                if has_value:
                    key = value or None
                elif i < len(args):
                    key = args[i]
                    i += 1
            elif name in ("--list", "--delete", "--verify") or name in _TAG_LIST_OPTIONS:
                listing = True
                if name in _TAG_LONG_VALUE and not has_value:
                    i += 1
            elif name in _TAG_LONG_VALUE and not has_value:
                i += 1
            continue
        if not arg.startswith("-") or arg == "-":
            positionals.append(arg)
            continue
        cluster = arg[1:]
        for pos, flag in enumerate(cluster):
            rest = cluster[pos + 1 :]
            if flag == "s":
                sign = True
            elif flag == "u":
                sign = True
                if rest:
                    key = rest
                elif i < len(args):
                    key = args[i]
                    i += 1
                break
            elif flag in "ldv":
                listing = True
            elif flag == "n":
                # -n takes an optional attached line count
                listing = True
                break
            elif flag in _TAG_SHORT_VALUE:
                if not rest:
                    i += 1
                break
    creates = not listing and bool(positionals)
    return sign, key, creates


def config_true(value: Any) -> bool:
    """git boolean semantics for a raw config value (None means unset)."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def classify(name: Optional[str], args: Sequence[str], config: Mapping[str, Any]) -> GateDecision:
    """
    Decide whether a git sub-command needs the vault.

    Rules, first match wins:
    1. push/fetch/pull/clone -> PUSH
    2. commit with -S/--gpg-sign, or commit.gpgsign (unless --no-gpg-sign) -> SIGNING_COMMIT
    3. tag with -s/--sign/-u, or tag.gpgsign when creating (unless --no-sign) -> SIGNING_TAG
    4. anything else -> no gate

    Args:
        name: Sub-command name
        args: Sub-command arguments
        config: git configuration values keyed like ``commit.gpgsign``
    """
    if name in TRANSPORT_COMMANDS:
        return GateDecision(required=True, reason=GateReason.PUSH, command=name)

    if name == "commit":
        sign, key = _scan_commit(args)
        if sign is None:
            sign = config_true(config.get("commit.gpgsign"))
        if sign:
            return GateDecision(
                required=True, reason=GateReason.SIGNING_COMMIT, command=name, signing_key=key
            )

    if name == "tag":
        sign, key, creates = _scan_tag(args)
        if sign is None:
            sign = creates and config_true(config.get("tag.gpgsign"))
        if sign:
            return GateDecision(
                required=True, reason=GateReason.SIGNING_TAG, command=name, signing_key=key
            )

    return GateDecision(required=False, reason=GateReason.NONE, command=name)


# ----------------------------------------------------------------------
# Signing preconditions
# ----------------------------------------------------------------------


def _is_literal_key(value: str) -> bool:
    return value.startswith("key::") or value.startswith(_LITERAL_KEY_PREFIXES)


def check_signing_setup(config: Mapping[str, Any], signing_key: Optional[str] = None) -> Optional[str]:
    """
    Verify git is set up to sign through the SSH agent.

    Requires ``gpg.format = ssh`` and a signing key (command-line key id,
    ``user.signingkey`` or ``gpg.ssh.defaultKeyCommand``). A key naming a
    file must exist.

    Returns:
        The signing key reference, or None when a default key command is used

    Raises:
        SigningMisconfigured: If any precondition fails
    """
    fmt = str(config.get("gpg.format") or "openpgp").strip().lower()
    if fmt != "ssh":
        raise SigningMisconfigured(
            f"git signs with gpg.format={fmt}; run 'git config --global gpg.format ssh' "
            "to sign with the SSH agent"
        )

    key = signing_key or config.get("user.signingkey")
    if not key:
        if config.get("gpg.ssh.defaultKeyCommand"):
            return None
        raise SigningMisconfigured(
            "No signing key configured; set user.signingkey to the public key of an agent key"
        )

    key = str(key)
    if not _is_literal_key(key):
        path = Path(os.path.expanduser(key))
        if not path.is_file():
            raise SigningMisconfigured(f"Signing key file {path} does not exist")
    return key


def _public_key_text(key: str) -> Optional[str]:
    if key.startswith("key::"):
        return key[len("key::") :]
    if key.startswith(_LITERAL_KEY_PREFIXES):
        return key

    path = Path(os.path.expanduser(key))
    for candidate in (path, path.with_name(path.name + ".pub")):
        try:
            with open(candidate, "r", encoding="utf-8") as f:
                first_line = f.readline().strip()
        except (OSError, UnicodeDecodeError):
            continue
        if first_line.startswith(_LITERAL_KEY_PREFIXES):
            return first_line
    return None


def signing_key_blob(key: str) -> Optional[bytes]:
    """
    Public key blob named by a signing key reference.

    Returns None when the reference does not resolve to a public key
    (e.g. a private key file with no ``.pub`` next to it).
    """
    text = _public_key_text(key)
    if text is None:
        return None
    parts = text.split()
    if len(parts) < 2:
        return None
    try:
        return base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError):
        return None


# ----------------------------------------------------------------------
# git access
# ----------------------------------------------------------------------


class GitConfig:
    """Read configuration through the real git, honouring global options."""

    def __init__(self, git: Optional[str] = None, global_opts: Sequence[str] = ()):
        self.git = git or Config.GIT_EXECUTABLE
        self.scope = config_scope_options(global_opts)

    async def get(self, key: str) -> Optional[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git,
                *self.scope,
                "config",
                "--get",
                key,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("Cannot run {} to read {}: {}", self.git, key, e)
            return None
        stdout, _ = await proc.communicate()
        if proc.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace").strip()

    async def read(self, keys: Iterable[str]) -> dict[str, Optional[str]]:
        return {key: await self.get(key) for key in keys}


def _exit_status(returncode: int) -> int:
    """Shell-style exit status for a finished child."""
    if returncode < 0:
        return 128 - returncode
    return returncode


class CommandInterceptor:
    """
    Thin front-end that forwards to the real git.

    Operations that need key material pass through the Session Gatekeeper
    first; everything else is delegated straight away. The delegated exit
    code is returned unchanged.
    """

    def __init__(
        self,
        gatekeeper: SessionGatekeeper,
        *,
        git: Optional[str] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.gatekeeper = gatekeeper
        self.git = git or Config.GIT_EXECUTABLE
        self._audit = audit

    @property
    def audit(self) -> AuditLogger:
        return self._audit or get_audit_logger()

    def git_config(self, global_opts: Sequence[str] = ()) -> GitConfig:
        return GitConfig(self.git, global_opts)

    async def decide(
        self, name: Optional[str], args: Sequence[str], global_opts: Sequence[str] = ()
    ) -> GateDecision:
        """Classify an invocation, reading only the config keys it depends on."""
        keys = {"commit": ["commit.gpgsign"], "tag": ["tag.gpgsign"]}.get(name or "", [])
        config = await self.git_config(global_opts).read(keys) if keys else {}
        return classify(name, args, config)

    async def check(
        self, name: Optional[str], args: Sequence[str], global_opts: Sequence[str] = ()
    ) -> GateOutcome:
        """Run the gate for one invocation without delegating."""
        decision = await self.decide(name, args, global_opts)
        if not decision.required:
            return GateOutcome(decision=decision, allowed=True)

        logger.info("Gate required | command={} reason={}", name, decision.reason.value)
        self.audit.log_gate_decision(name or "", True, decision.reason.value)

        signing_key: Optional[str] = None
        if decision.reason.is_signing:
            config = await self.git_config(global_opts).read(
                ["gpg.format", "user.signingkey", "gpg.ssh.defaultKeyCommand"]
            )
            try:
                signing_key = check_signing_setup(config, decision.signing_key)
            except SigningMisconfigured as e:
                return self._blocked(decision, e.reason, e.message)

        result = await self.gatekeeper.ensure_fresh(interactive=True)
        if not result.ok:
            reason = result.reason or FailureReason.ENDPOINT_UNREACHABLE
            return self._blocked(decision, reason, result.message)

        if signing_key is not None:
            try:
                await self._check_key_served(signing_key)
            except GateError as e:
                return self._blocked(decision, e.reason, e.message)

        return GateOutcome(decision=decision, allowed=True)

    async def _check_key_served(self, signing_key: str) -> None:
        blob = signing_key_blob(signing_key)
        if blob is None:
            return
        identities = await self.gatekeeper.supervisor.list_keys()
        if not any(identity.key_blob == blob for identity in identities):
            raise SigningMisconfigured(
                f"Signing key {signing_key} is not served by the agent; "
                "add it to the vault or point user.signingkey at an agent key"
            )

    def _blocked(self, decision: GateDecision, reason: FailureReason, message: str) -> GateOutcome:
        logger.warning("Gate blocked | command={} reason={} {}", decision.command, reason.value, message)
        self.audit.log_gate_blocked(decision.command or "", reason.value, message)
        return GateOutcome(decision=decision, allowed=False, reason=reason, message=message)

    async def intercept(
        self, name: Optional[str], args: Sequence[str], global_opts: Sequence[str] = ()
    ) -> int:
        """
        Gate, then delegate.

        Returns:
            The delegated exit code, or a gate failure code (77, 78, 130)
            when the operation was not run
        """
        outcome = await self.check(name, args, global_opts)
        if not outcome.allowed:
            self.gatekeeper.notify(f"git {name} aborted: {outcome.message}")
            return outcome.exit_code

        argv = [*global_opts, *([name] if name else []), *args]
        return await self.delegate(argv, gated=outcome.decision.required)

    async def run(self, argv: Sequence[str]) -> int:
        """Entry point for ``proton-git <git args...>``."""
        global_opts, name, args = split_git_argv(argv)
        return await self.intercept(name, args, global_opts)

    async def delegate(self, argv: Sequence[str], *, gated: bool = False) -> int:
        """Run the real git with inherited stdio and return its exit status."""
        env = None
        if gated:
            env = dict(os.environ)
            env["SSH_AUTH_SOCK"] = str(self.gatekeeper.supervisor.canonical_path)

        try:
            proc = await asyncio.create_subprocess_exec(self.git, *argv, env=env)
        except OSError as e:
            self.gatekeeper.notify(f"cannot run {self.git}: {e}")
            return EXIT_NOT_FOUND

        try:
            returncode = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.send_signal(signal.SIGINT)
                await proc.wait()
            raise
        return _exit_status(returncode)
