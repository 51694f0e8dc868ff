"""Pytest fixtures and test utilities for the proton-gate test suite."""

import asyncio
import base64
import os
import shutil
import stat
import struct
import sys
import tempfile
from pathlib import Path
from typing import Optional

import pytest

from proton_gate.agent.protocol import (
    SSH2_AGENT_IDENTITIES_ANSWER,
    SSH_AGENT_FAILURE,
    AgentIdentity,
    encode_message,
)
from proton_gate.agent.locator import SocketLocator
from proton_gate.agent.supervisor import AgentSupervisor
from proton_gate.agent.vault import VaultCli
from proton_gate.audit import AuditLogger, set_audit_logger
from proton_gate.config import Config

FAKE_PASS_CLI = Path(__file__).with_name("fake_pass_cli.py")


def make_identity(comment: str = "test@proton") -> AgentIdentity:
    """Fake ed25519 identity with a deterministic blob."""
    key_type = b"ssh-ed25519"
    key = comment.encode().ljust(32, b"\0")[:32]
    blob = len(key_type).to_bytes(4, "big") + key_type + len(key).to_bytes(4, "big") + key
    return AgentIdentity(key_blob=blob, comment=comment)


def public_key_line(identity: AgentIdentity) -> str:
    """Key in ``ssh-add -L`` form."""
    encoded = base64.b64encode(identity.key_blob).decode("ascii")
    return f"{identity.key_type} {encoded} {identity.comment}"


def encode_identities_answer(identities: list[AgentIdentity]) -> bytes:
    """Frame an identities answer the way a real agent does."""
    payload = struct.pack(">I", len(identities))
    for identity in identities:
        comment = identity.comment.encode("utf-8")
        payload += struct.pack(">I", len(identity.key_blob)) + identity.key_blob
        payload += struct.pack(">I", len(comment)) + comment
    return encode_message(SSH2_AGENT_IDENTITIES_ANSWER, payload)


class FakeAgent:
    """
    In-process agent speaking the key-listing protocol on a Unix socket.

    ``identities`` can be changed while running; ``locked`` switches the
    reply to SSH_AGENT_FAILURE.
    """

    def __init__(self, path: str, identities: Optional[list[AgentIdentity]] = None):
        self.path = path
        self.identities = identities if identities is not None else [make_identity()]
        self.locked = False
        self.requests = 0
        self._server: Optional[asyncio.AbstractServer] = None

    async def _handle(self, reader, writer):
        try:
            while True:
                header = await reader.readexactly(4)
                await reader.readexactly(int.from_bytes(header, "big"))
                self.requests += 1
                if self.locked:
                    writer.write(encode_message(SSH_AGENT_FAILURE))
                else:
                    writer.write(encode_identities_answer(self.identities))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    async def start(self) -> "FakeAgent":
        self._server = await asyncio.start_unix_server(self._handle, path=self.path)
        return self

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


# ============================================================================
# DIRECTORY / CONFIG FIXTURES
# ============================================================================


@pytest.fixture
def short_tmp():
    """
    Temporary directory with a short path.

    Unix socket paths are limited to ~108 bytes, which pytest's tmp_path
    can exceed.
    """
    path = tempfile.mkdtemp(prefix="pg-", dir="/tmp")
    try:
        yield Path(path)
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture(autouse=True)
def audit_log(tmp_path):
    """Route audit records to a per-test file."""
    audit = AuditLogger(str(tmp_path / "audit.jsonl"))
    set_audit_logger(audit)
    yield audit
    set_audit_logger(None)


@pytest.fixture
def isolated_config(short_tmp, monkeypatch):
    """
    Point every Config path at a throwaway directory.

    Yields:
        The state directory
    """
    state_dir = short_tmp / "state"
    monkeypatch.setattr(Config, "STATE_DIR", str(state_dir))
    monkeypatch.setattr(Config, "CANONICAL_SOCKET", str(short_tmp / "canonical.sock"))
    monkeypatch.setattr(Config, "MANAGED_SOCKET", str(state_dir / "managed-agent.sock"))
    monkeypatch.setattr(Config, "SESSION_FILE", str(state_dir / "session.json"))
    monkeypatch.setattr(Config, "MANAGED_RECORD_FILE", str(state_dir / "managed.json"))
    monkeypatch.setattr(Config, "HOLD_FILE", str(state_dir / "hold"))
    monkeypatch.setattr(Config, "LOCK_FILE", str(state_dir / "supervisor.lock"))
    monkeypatch.setattr(Config, "AUDIT_LOG_PATH", str(state_dir / "audit.jsonl"))
    monkeypatch.setattr(Config, "LOG_FILE", str(state_dir / "proton-gate.log"))
    monkeypatch.setattr(Config, "SOCKET_OVERRIDE", None)
    monkeypatch.setattr(Config, "NATIVE_SOCKETS", [])
    monkeypatch.setattr(Config, "VAULT_CLI", str(short_tmp / "missing-pass-cli"))
    yield state_dir


# ============================================================================
# AGENT FIXTURES
# ============================================================================


@pytest.fixture
async def fake_agent(short_tmp):
    """Running in-process agent at ``<short_tmp>/native.sock``."""
    agent = await FakeAgent(str(short_tmp / "native.sock")).start()
    try:
        yield agent
    finally:
        await agent.stop()


@pytest.fixture
def vault_dir(short_tmp):
    """Marker directory controlling the fake vault CLI."""
    path = short_tmp / "vault"
    path.mkdir()
    return path


@pytest.fixture
def fake_pass_cli(short_tmp, vault_dir):
    """Executable wrapper around tests/fake_pass_cli.py bound to ``vault_dir``."""
    wrapper = short_tmp / "pass-cli"
    wrapper.write_text(
        "#!/bin/sh\n"
        f'exec "{sys.executable}" "{FAKE_PASS_CLI}" --state-dir "{vault_dir}" "$@"\n'
    )
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR)
    return str(wrapper)


@pytest.fixture
async def make_supervisor(short_tmp, fake_pass_cli):
    """
    Factory for supervisors with fast timings and isolated paths.

    Any supervisor created is shut down at teardown so no fake agent
    process outlives the test.
    """
    created: list[AgentSupervisor] = []

    def factory(**overrides) -> AgentSupervisor:
        options = dict(
            canonical_path=str(short_tmp / "canonical.sock"),
            state_dir=str(short_tmp / "state"),
            vault=VaultCli(fake_pass_cli, query_timeout=5.0),
            candidates=[],
            check_interval=0.1,
            restart_delay=0.1,
            spawn_timeout=5.0,
            spawn_poll_interval=0.05,
            spawn_attempts=1,
            probe_timeout=1.0,
            auth_wait_timeout=1.0,
            shutdown_grace=1.0,
            lock_wait_timeout=10.0,
        )
        options.update(overrides)
        candidates = options.pop("candidates")
        if "locator" not in options:
            options["locator"] = SocketLocator(
                override="",
                candidates=candidates,
                exclude=[options["canonical_path"], str(Path(options["state_dir"]) / "managed-agent.sock")],
                probe_timeout=options["probe_timeout"],
            )
        supervisor = AgentSupervisor(**options)
        created.append(supervisor)
        return supervisor

    yield factory

    for supervisor in created:
        await supervisor.force_stop()
