"""Tests for the audio permission workflow."""

import pytest
import pytest_asyncio

from conftest import acking, participant
from cotog_rtc.protocol import (
    MSG_AUDIO_PERMISSION_REQUEST,
    MSG_AUDIO_PERMISSION_RESPONSE,
    MSG_PERMISSION_REQUESTED,
    MSG_PERMISSION_RESOLVED,
    MSG_PERMISSIONS_SNAPSHOT,
    MSG_ROSTER,
)
from cotog_rtc.session.manager import Credentials
from cotog_rtc.session.state import AUDIO_CONNECTING
from cotog_rtc.voice.permissions import PermissionStatus

ROSTER = [participant("alice", "owner"), participant("bob"), participant("carol")]


async def _join(manager, channels, participant_id, role):
    channels.on_join = acking(participant_id, role, roster=ROSTER)
    await manager.connect("R1", Credentials(token=participant_id))
    return channels.current


@pytest_asyncio.fixture
async def as_member(manager, channels):
    return await _join(manager, channels, "bob", "member")


@pytest_asyncio.fixture
async def as_owner(manager, channels):
    return await _join(manager, channels, "alice", "owner")


def events(workflow, name):
    calls = []
    workflow.on(name, lambda pid: calls.append(pid))
    return calls


# ── Requesting ────────────────────────────────────────────────────────────────


class TestRequest:
    @pytest.mark.asyncio
    async def test_member_request_goes_pending_once(self, manager, as_member):
        permissions = manager.permissions
        assert permissions.status() == PermissionStatus.UNREQUESTED

        assert await permissions.request() is True
        assert permissions.status() == PermissionStatus.PENDING
        assert await permissions.request() is False

        assert as_member.sent_types().count(MSG_AUDIO_PERMISSION_REQUEST) == 1

    @pytest.mark.asyncio
    async def test_owner_is_implicitly_granted(self, manager, as_owner):
        assert manager.permissions.status() == PermissionStatus.GRANTED
        assert await manager.permissions.request() is True
        assert MSG_AUDIO_PERMISSION_REQUEST not in as_owner.sent_types()

    @pytest.mark.asyncio
    async def test_failed_send_reverts_to_unrequested(self, manager, as_member):
        as_member.closed = True
        assert await manager.permissions.request() is False
        assert manager.permissions.status() == PermissionStatus.UNREQUESTED
        assert manager.state.pending_requests == ()

    @pytest.mark.asyncio
    async def test_denied_member_may_ask_again(self, manager, as_member):
        await manager.permissions.request()
        as_member.deliver(MSG_PERMISSION_RESOLVED, participantId="bob", granted=False, resolverId="alice")
        assert manager.permissions.status() == PermissionStatus.DENIED

        assert await manager.permissions.request() is True
        assert manager.permissions.status() == PermissionStatus.PENDING

    @pytest.mark.asyncio
    async def test_request_requires_session(self, manager):
        assert await manager.permissions.request() is False


# ── Resolving ─────────────────────────────────────────────────────────────────


class TestResolve:
    @pytest.mark.asyncio
    async def test_owner_sees_and_grants_request(self, manager, as_owner):
        requested = events(manager.permissions, "requested")
        granted = events(manager.permissions, "granted")

        as_owner.deliver(MSG_PERMISSION_REQUESTED, participantId="bob", requestedAt="t0")
        assert requested == ["bob"]
        assert [r.participant_id for r in manager.state.pending_requests] == ["bob"]

        assert await manager.permissions.resolve("bob", True) is True
        assert as_owner.last(MSG_AUDIO_PERMISSION_RESPONSE) == {
            "roomId": "R1",
            "participantId": "bob",
            "granted": True,
        }
        assert manager.permissions.status("bob") == PermissionStatus.GRANTED
        assert manager.state.pending_requests == ()
        assert manager.state.participant("bob").audio_state == AUDIO_CONNECTING
        assert granted == ["bob"]

    @pytest.mark.asyncio
    async def test_relay_echo_of_resolution_does_not_refire(self, manager, as_owner):
        granted = events(manager.permissions, "granted")
        as_owner.deliver(MSG_PERMISSION_REQUESTED, participantId="bob", requestedAt="t0")
        await manager.permissions.resolve("bob", True)
        as_owner.deliver(MSG_PERMISSION_RESOLVED, participantId="bob", granted=True, resolverId="alice")
        assert granted == ["bob"]

    @pytest.mark.asyncio
    async def test_member_cannot_resolve(self, manager, as_member):
        assert await manager.permissions.resolve("carol", True) is False
        assert MSG_AUDIO_PERMISSION_RESPONSE not in as_member.sent_types()

    @pytest.mark.asyncio
    async def test_cannot_resolve_privileged(self, manager, as_owner):
        assert await manager.permissions.resolve("alice", False) is False


# ── Inbound ───────────────────────────────────────────────────────────────────


class TestInbound:
    @pytest.mark.asyncio
    async def test_grant_for_local_member(self, manager, as_member):
        granted = events(manager.permissions, "granted")
        await manager.permissions.request()

        as_member.deliver(MSG_PERMISSION_RESOLVED, participantId="bob", granted=True, resolverId="alice")

        assert manager.permissions.status() == PermissionStatus.GRANTED
        assert granted == ["bob"]

    @pytest.mark.asyncio
    async def test_resolution_from_non_privileged_resolver_is_ignored(self, manager, as_member):
        await manager.permissions.request()
        as_member.deliver(MSG_PERMISSION_RESOLVED, participantId="bob", granted=True, resolverId="carol")
        assert manager.permissions.status() == PermissionStatus.PENDING

    @pytest.mark.asyncio
    async def test_resolution_without_known_resolver_is_ignored(self, manager, as_member):
        await manager.permissions.request()
        as_member.deliver(MSG_PERMISSION_RESOLVED, participantId="bob", granted=True)
        as_member.deliver(MSG_PERMISSION_RESOLVED, participantId="bob", granted=True, resolverId="mallory")
        assert manager.permissions.status() == PermissionStatus.PENDING

    @pytest.mark.asyncio
    async def test_departure_returns_to_unrequested(self, manager, as_owner):
        as_owner.deliver(MSG_PERMISSION_REQUESTED, participantId="carol", requestedAt="t0")
        await manager.permissions.resolve("carol", True)

        as_owner.deliver(MSG_ROSTER, participants=ROSTER[:2])
        as_owner.deliver(MSG_ROSTER, participants=ROSTER)

        assert manager.permissions.status("carol") == PermissionStatus.UNREQUESTED

    @pytest.mark.asyncio
    async def test_snapshot_transitions_fire_events(self, manager, as_member):
        granted = events(manager.permissions, "granted")
        denied = events(manager.permissions, "denied")

        as_member.deliver(MSG_PERMISSIONS_SNAPSHOT, table={"bob": "granted", "carol": "denied"})

        assert granted == ["bob"]
        assert denied == ["carol"]
        assert manager.permissions.status("alice") == PermissionStatus.GRANTED
