"""
Unit Tests for SessionGatekeeper

Tests SessionGatekeeper methods:
- is_fresh() / touch() / invalidate(): session record lifecycle
- ensure_fresh(): fast path, purge on miss, interactive unlock wait
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from proton_gate.agent.models import EndpointKind
from proton_gate.errors import EndpointUnreachable, FailureReason, UnlockTimeout, VaultLocked
from proton_gate.session.gatekeeper import FreshnessResult, SessionGatekeeper
from proton_gate.session.models import SessionRecord
from proton_gate.session.store import SessionStore


def _supervisor(key_count=1, kind=EndpointKind.NATIVE, authenticated=True):
    supervisor = MagicMock()
    supervisor.stop_event = asyncio.Event()
    supervisor.ensure_live = AsyncMock()
    supervisor.key_count = AsyncMock(return_value=key_count)
    supervisor.force_stop = AsyncMock()
    supervisor.is_held = MagicMock(return_value=False)
    supervisor.release_hold = MagicMock()
    supervisor.endpoint_kind = MagicMock(return_value=kind)
    supervisor.vault.is_authenticated = AsyncMock(return_value=authenticated)
    return supervisor


@pytest.fixture
def store(tmp_path):
    return SessionStore(str(tmp_path / "session.json"))


@pytest.fixture
def notices():
    return []


def _gatekeeper(supervisor, store, notices, **kwargs):
    options = dict(
        ttl=900,
        unlock_timeout=1.0,
        poll_interval=0.02,
        notify=notices.append,
        focus=MagicMock(),
    )
    options.update(kwargs)
    return SessionGatekeeper(supervisor, store=store, **options)


# ============================================================================
# SESSION RECORD
# ============================================================================


def test_touch_then_is_fresh(store, notices):
    gatekeeper = _gatekeeper(_supervisor(), store, notices)

    assert not gatekeeper.is_fresh()
    gatekeeper.touch()

    assert gatekeeper.is_fresh()
    assert 0 < gatekeeper.remaining() <= 900


def test_expired_record_is_not_fresh(store, notices):
    store.save(
        SessionRecord(
            verified_at=datetime.now(timezone.utc) - timedelta(seconds=901), ttl_seconds=900
        )
    )
    gatekeeper = _gatekeeper(_supervisor(), store, notices)

    assert not gatekeeper.is_fresh()
    assert gatekeeper.remaining() == 0.0


def test_invalidate_always_expires(store, notices, audit_log):
    gatekeeper = _gatekeeper(_supervisor(), store, notices)
    gatekeeper.touch()

    gatekeeper.invalidate()
    assert not gatekeeper.is_fresh()

    # idempotent
    gatekeeper.invalidate()
    assert not gatekeeper.is_fresh()
    assert "session_invalidated" in audit_log.log_path.read_text()


def test_unreadable_record_is_not_fresh(store, notices):
    store.path.write_text("garbage")
    gatekeeper = _gatekeeper(_supervisor(), store, notices)

    assert not gatekeeper.is_fresh()


@pytest.mark.unit
def test_freshness_result_from_error():
    result = FreshnessResult.from_error(UnlockTimeout("Timed out after 5s waiting for unlock"))

    assert not result.ok
    assert result.reason is FailureReason.UNLOCK_TIMEOUT
    assert result.message == "Timed out after 5s waiting for unlock"


# ============================================================================
# ENSURE FRESH
# ============================================================================


@pytest.mark.asyncio
async def test_fast_path_when_fresh_and_serving_keys(store, notices):
    supervisor = _supervisor(key_count=2)
    gatekeeper = _gatekeeper(supervisor, store, notices)
    gatekeeper.touch()

    result = await gatekeeper.ensure_fresh(interactive=True)

    assert result.ok
    assert result.key_count == 2
    supervisor.force_stop.assert_not_awaited()
    assert notices == []


@pytest.mark.asyncio
async def test_fresh_but_no_keys_purges(store, notices):
    supervisor = _supervisor(key_count=0)
    gatekeeper = _gatekeeper(supervisor, store, notices)
    gatekeeper.touch()

    result = await gatekeeper.ensure_fresh(interactive=False)

    assert not result.ok
    assert result.reason is FailureReason.NO_SESSION
    supervisor.force_stop.assert_awaited_once()
    assert not gatekeeper.is_fresh()


@pytest.mark.asyncio
async def test_managed_agent_with_ended_vault_session_is_purged(store, notices):
    supervisor = _supervisor(key_count=1, kind=EndpointKind.MANAGED, authenticated=False)
    gatekeeper = _gatekeeper(supervisor, store, notices)
    gatekeeper.touch()

    result = await gatekeeper.ensure_fresh(interactive=False)

    assert not result.ok
    supervisor.force_stop.assert_awaited_once()


@pytest.mark.asyncio
async def test_non_interactive_miss_fails_immediately(store, notices):
    supervisor = _supervisor()
    gatekeeper = _gatekeeper(supervisor, store, notices)

    result = await gatekeeper.ensure_fresh(interactive=False)

    assert not result.ok
    assert result.reason is FailureReason.NO_SESSION
    supervisor.force_stop.assert_awaited_once()
    supervisor.ensure_live.assert_not_awaited()
    assert any("expired" in notice for notice in notices)


@pytest.mark.asyncio
async def test_interactive_unlock_succeeds_and_touches(store, notices, audit_log):
    supervisor = _supervisor(key_count=1)
    supervisor.ensure_live.side_effect = [
        EndpointUnreachable("not yet"),
        EndpointUnreachable("not yet"),
        None,
    ]
    focus = MagicMock()
    gatekeeper = _gatekeeper(supervisor, store, notices, focus=focus)

    result = await gatekeeper.ensure_fresh(interactive=True)

    assert result.ok
    assert gatekeeper.is_fresh()
    supervisor.force_stop.assert_awaited_once()
    supervisor.release_hold.assert_called_once()
    focus.assert_called_once()
    assert supervisor.ensure_live.await_count == 3
    assert any("unlocked" in notice for notice in notices)
    assert "session_verified" in audit_log.log_path.read_text()


@pytest.mark.asyncio
async def test_interactive_unlock_awaits_async_focus(store, notices):
    focus = AsyncMock()
    gatekeeper = _gatekeeper(_supervisor(), store, notices, focus=focus)

    result = await gatekeeper.ensure_fresh(interactive=True)

    assert result.ok
    focus.assert_awaited_once()


@pytest.mark.asyncio
async def test_interactive_unlock_waits_for_keys(store, notices):
    supervisor = _supervisor()
    supervisor.key_count.side_effect = [0, 0, 3]
    gatekeeper = _gatekeeper(supervisor, store, notices)

    result = await gatekeeper.ensure_fresh(interactive=True)

    assert result.ok
    assert result.key_count == 3


@pytest.mark.asyncio
async def test_interactive_unlock_times_out(store, notices):
    supervisor = _supervisor()
    supervisor.ensure_live.side_effect = EndpointUnreachable("no provider")
    gatekeeper = _gatekeeper(supervisor, store, notices, unlock_timeout=0.2)

    started = asyncio.get_running_loop().time()
    result = await gatekeeper.ensure_fresh(interactive=True)
    elapsed = asyncio.get_running_loop().time() - started

    assert not result.ok
    assert result.reason is FailureReason.UNLOCK_TIMEOUT
    assert "no provider" in result.message
    assert elapsed < 2
    assert not gatekeeper.is_fresh()


@pytest.mark.asyncio
async def test_interactive_unlock_timeout_is_reported_once(store, notices):
    supervisor = _supervisor()
    supervisor.ensure_live.side_effect = EndpointUnreachable("no provider")
    gatekeeper = _gatekeeper(supervisor, store, notices, unlock_timeout=0.1)

    await gatekeeper.ensure_fresh(interactive=True)

    assert len([n for n in notices if n.startswith("Timed out")]) == 1


@pytest.mark.asyncio
async def test_interactive_unlock_bounds_agent_checks_by_unlock_timeout(store, notices):
    supervisor = _supervisor()
    gatekeeper = _gatekeeper(supervisor, store, notices, unlock_timeout=5.0)

    started = asyncio.get_running_loop().time()
    result = await gatekeeper.ensure_fresh(interactive=True)

    assert result.ok
    deadline = supervisor.ensure_live.await_args.kwargs["deadline"]
    assert started < deadline <= started + 5.0 + 0.1

@pytest.mark.asyncio
async def test_interactive_unlock_cancelled_by_stop_event(store, notices):
    supervisor = _supervisor()
    supervisor.ensure_live.side_effect = EndpointUnreachable("no provider")
    gatekeeper = _gatekeeper(supervisor, store, notices, unlock_timeout=30)
    asyncio.get_running_loop().call_later(0.1, gatekeeper.stop_event.set)

    result = await gatekeeper.ensure_fresh(interactive=True)

    assert not result.ok
    assert result.reason is FailureReason.CANCELLED


@pytest.mark.asyncio
async def test_lock_during_wait_aborts_on_next_poll(store, notices):
    supervisor = _supervisor()
    supervisor.ensure_live.side_effect = EndpointUnreachable("no provider")
    supervisor.is_held.side_effect = [False, False, True]
    gatekeeper = _gatekeeper(supervisor, store, notices, unlock_timeout=30)

    result = await gatekeeper.ensure_fresh(interactive=True)

    assert not result.ok
    assert result.reason is FailureReason.NO_SESSION
    assert "Locked" in result.message
    assert not gatekeeper.is_fresh()


@pytest.mark.asyncio
async def test_lock_landing_as_unlock_succeeds_is_not_touched(store, notices, audit_log):
    supervisor = _supervisor()
    # clear on the poll, held by the time the session would be recorded
    supervisor.is_held.side_effect = [False, True]
    gatekeeper = _gatekeeper(supervisor, store, notices)

    result = await gatekeeper.ensure_fresh(interactive=True)

    assert not result.ok
    assert result.reason is FailureReason.NO_SESSION
    assert not gatekeeper.is_fresh()
    assert "session_verified" not in audit_log.log_path.read_text()

@pytest.mark.asyncio
async def test_touch_failure_after_unlock_still_succeeds(tmp_path, notices):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    store = SessionStore(str(blocker / "session.json"))
    gatekeeper = _gatekeeper(_supervisor(), store, notices)

    result = await gatekeeper.ensure_fresh(interactive=True)

    assert result.ok


# ============================================================================
# VERIFY LIVE
# ============================================================================


@pytest.mark.asyncio
async def test_verify_live_returns_key_count(store, notices):
    gatekeeper = _gatekeeper(_supervisor(key_count=2), store, notices)

    assert await gatekeeper.verify_live() == 2


@pytest.mark.asyncio
async def test_verify_live_rejects_empty_agent(store, notices):
    gatekeeper = _gatekeeper(_supervisor(key_count=0), store, notices)

    with pytest.raises(VaultLocked):
        await gatekeeper.verify_live()


@pytest.mark.asyncio
async def test_verify_live_rejects_unanswering_socket(store, notices):
    gatekeeper = _gatekeeper(_supervisor(key_count=None), store, notices)

    with pytest.raises(EndpointUnreachable):
        await gatekeeper.verify_live()


@pytest.mark.asyncio
async def test_verify_live_checks_vault_only_for_managed(store, notices):
    native = _supervisor(kind=EndpointKind.NATIVE, authenticated=False)
    assert await _gatekeeper(native, store, notices).verify_live() == 1
    native.vault.is_authenticated.assert_not_awaited()

    managed = _supervisor(kind=EndpointKind.MANAGED, authenticated=False)
    with pytest.raises(VaultLocked, match="Vault session ended"):
        await _gatekeeper(managed, store, notices).verify_live()
