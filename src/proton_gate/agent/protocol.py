"""Minimal client for the SSH agent key-listing request."""

import asyncio
import base64
import hashlib
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Union

SSH_AGENT_FAILURE = 5
SSH2_AGENTC_REQUEST_IDENTITIES = 11
SSH2_AGENT_IDENTITIES_ANSWER = 12

# Replies larger than this are treated as a protocol error rather than read.
MAX_REPLY_BYTES = 256 * 1024


class AgentProtocolError(Exception):
    """The peer is not speaking the agent protocol or the transport failed."""


@dataclass(frozen=True)
class AgentIdentity:
    """One key offered by an agent."""

    key_blob: bytes
    comment: str

    @property
    def key_type(self) -> str:
        if len(self.key_blob) < 4:
            return ""
        (length,) = struct.unpack(">I", self.key_blob[:4])
        return self.key_blob[4 : 4 + length].decode("ascii", errors="replace")

    @property
    def fingerprint(self) -> str:
        """OpenSSH-style SHA256 fingerprint."""
        digest = hashlib.sha256(self.key_blob).digest()
        return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


class _Reader:
    def __init__(self, data: bytes):
        self._data = data
        self._offset = 0

    def uint32(self) -> int:
        if self._offset + 4 > len(self._data):
            raise AgentProtocolError("Truncated agent reply")
        (value,) = struct.unpack(">I", self._data[self._offset : self._offset + 4])
        self._offset += 4
        return value

    def string(self) -> bytes:
        length = self.uint32()
        end = self._offset + length
        if end > len(self._data):
            raise AgentProtocolError("Truncated agent reply")
        value = self._data[self._offset : end]
        self._offset = end
        return value


def encode_message(message_type: int, payload: bytes = b"") -> bytes:
    """Frame one agent message (uint32 length, type byte, payload)."""
    return struct.pack(">IB", len(payload) + 1, message_type) + payload


def parse_identities_answer(body: bytes) -> list[AgentIdentity]:
    """
    Parse the body of an agent reply (type byte onwards).

    An SSH_AGENT_FAILURE reply is treated as "reachable but serving no
    keys", which is how a locked provider typically answers.

    Raises:
        AgentProtocolError: If the reply is malformed or of an unexpected type
    """
    if not body:
        raise AgentProtocolError("Empty agent reply")

    message_type = body[0]
    if message_type == SSH_AGENT_FAILURE:
        return []
    if message_type != SSH2_AGENT_IDENTITIES_ANSWER:
        raise AgentProtocolError(f"Unexpected agent reply type {message_type}")

    reader = _Reader(body[1:])
    count = reader.uint32()
    identities = []
    for _ in range(count):
        blob = reader.string()
        comment = reader.string().decode("utf-8", errors="replace")
        identities.append(AgentIdentity(key_blob=blob, comment=comment))
    return identities


async def _request_identities(path: str) -> list[AgentIdentity]:
    reader, writer = await asyncio.open_unix_connection(path)
    try:
        writer.write(encode_message(SSH2_AGENTC_REQUEST_IDENTITIES))
        await writer.drain()
        header = await reader.readexactly(4)
        (length,) = struct.unpack(">I", header)
        if length == 0 or length > MAX_REPLY_BYTES:
            raise AgentProtocolError(f"Invalid agent reply length {length}")
        body = await reader.readexactly(length)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
    return parse_identities_answer(body)


async def request_identities(
    path: Union[str, Path], timeout: float = 0.5
) -> list[AgentIdentity]:
    """
    Ask the agent at ``path`` which keys it serves.

    Args:
        path: Unix socket path
        timeout: Bound on connect plus request, in seconds

    Returns:
        Identities offered by the agent (empty when locked)

    Raises:
        AgentProtocolError: On any transport or protocol failure
    """
    try:
        return await asyncio.wait_for(_request_identities(str(path)), timeout=timeout)
    except AgentProtocolError:
        raise
    except asyncio.TimeoutError as e:
        raise AgentProtocolError(f"Agent at {path} did not answer within {timeout}s") from e
    except (OSError, asyncio.IncompleteReadError) as e:
        raise AgentProtocolError(f"Agent at {path} unreachable: {e}") from e
