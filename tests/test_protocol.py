"""Tests for the agent key-listing client."""

import asyncio
import struct

import pytest

from proton_gate.agent.protocol import (
    SSH2_AGENT_IDENTITIES_ANSWER,
    SSH_AGENT_FAILURE,
    AgentProtocolError,
    encode_message,
    parse_identities_answer,
    request_identities,
)

from tests.conftest import encode_identities_answer, make_identity, public_key_line


def _body(message: bytes) -> bytes:
    return message[4:]


def test_parse_failure_reply_means_no_keys():
    assert parse_identities_answer(bytes([SSH_AGENT_FAILURE])) == []


def test_parse_identities_answer():
    identities = [make_identity("work"), make_identity("home")]
    parsed = parse_identities_answer(_body(encode_identities_answer(identities)))

    assert [i.comment for i in parsed] == ["work", "home"]
    assert parsed[0].key_blob == identities[0].key_blob


def test_parse_rejects_truncated_reply():
    body = bytes([SSH2_AGENT_IDENTITIES_ANSWER]) + struct.pack(">I", 2)
    with pytest.raises(AgentProtocolError, match="Truncated"):
        parse_identities_answer(body)


def test_parse_rejects_unexpected_type():
    with pytest.raises(AgentProtocolError, match="Unexpected"):
        parse_identities_answer(bytes([99]))


def test_parse_rejects_empty_reply():
    with pytest.raises(AgentProtocolError):
        parse_identities_answer(b"")


def test_encode_message_framing():
    assert encode_message(11) == b"\x00\x00\x00\x01\x0b"


def test_identity_rendering():
    identity = make_identity("me@example")
    assert identity.key_type == "ssh-ed25519"
    assert identity.fingerprint.startswith("SHA256:")
    assert not identity.fingerprint.endswith("=")
    assert public_key_line(identity).startswith("ssh-ed25519 AAAA")
    assert public_key_line(identity).endswith(" me@example")


@pytest.mark.asyncio
async def test_request_identities_from_agent(fake_agent):
    identities = await request_identities(fake_agent.path)
    assert [i.comment for i in identities] == ["test@proton"]


@pytest.mark.asyncio
async def test_request_identities_locked_agent(fake_agent):
    fake_agent.locked = True
    assert await request_identities(fake_agent.path) == []


@pytest.mark.asyncio
async def test_request_identities_missing_socket(short_tmp):
    with pytest.raises(AgentProtocolError, match="unreachable"):
        await request_identities(short_tmp / "absent.sock")


@pytest.mark.asyncio
async def test_request_identities_times_out_on_silent_peer(short_tmp):
    async def silent(reader, writer):
        await asyncio.sleep(5)
        writer.close()

    path = str(short_tmp / "silent.sock")
    server = await asyncio.start_unix_server(silent, path=path)
    try:
        with pytest.raises(AgentProtocolError, match="did not answer"):
            await request_identities(path, timeout=0.2)
    finally:
        server.close()
