"""Tests for the development relay.

The first half drives the message handlers directly with fake connections;
the second half runs the relay on a real port and joins it with
SessionConnectionManager over websockets.
"""

import asyncio
from http import HTTPStatus
from unittest import mock

import pytest
import pytest_asyncio

from cotog_rtc.config import RelayConfig, RoomDefinition, SessionTimings
from cotog_rtc.exceptions import AuthenticationError
from cotog_rtc.protocol import (
    JOIN_ERROR_AUTHENTICATION,
    JOIN_ERROR_DUPLICATE,
    JOIN_ERROR_INVALID_ROOM_ID,
    JOIN_ERROR_ROOM_FULL,
    JOIN_ERROR_ROOM_NOT_FOUND,
    MSG_AUDIO_PERMISSION_REQUEST,
    MSG_AUDIO_PERMISSION_RESPONSE,
    MSG_CHAT_HISTORY,
    MSG_CHAT_RECEIVED,
    MSG_CHAT_SEND,
    MSG_DOCUMENT_CHANGED,
    MSG_DOCUMENT_EDIT,
    MSG_JOIN,
    MSG_JOIN_ACK,
    MSG_JOIN_ERROR,
    MSG_KICKED,
    MSG_LANGUAGE_CHANGE,
    MSG_LANGUAGE_CHANGED,
    MSG_LEAVE,
    MSG_PERMISSION_REQUESTED,
    MSG_PERMISSION_RESOLVED,
    MSG_ROOM_CLOSED,
    MSG_ROSTER,
    MSG_SIGNAL_OFFER,
    MSG_TYPING,
    MSG_TYPING_CHANGED,
    MSG_VOICE_JOIN,
    MSG_VOICE_PEER_JOINED,
    MSG_VOICE_PEER_LEFT,
    parse_message,
)
from cotog_rtc.relay import Client, RelayServer
from cotog_rtc.session.manager import Credentials, SessionConnectionManager
from cotog_rtc.voice.permissions import PermissionStatus

ICE = [{"urls": "stun:relay.test:3478"}]


class FakeConnection:
    def __init__(self):
        self.received = []

    async def send(self, raw):
        self.received.append(parse_message(raw))

    def types(self):
        return [msg_type for msg_type, _ in self.received]

    def last(self, msg_type):
        for received_type, fields in reversed(self.received):
            if received_type == msg_type:
                return fields
        raise AssertionError(f"{msg_type} was never received")


async def deliver(relay, client, msg_type, **fields):
    """Dispatch one message the way RelayServer.handler does."""
    if msg_type not in (MSG_JOIN, MSG_LEAVE) and not relay._in_room(client, fields):
        return
    await relay._handlers[msg_type](client, msg_type, fields)


@pytest.fixture
def relay():
    room = RoomDefinition("R1", "pw", owner="alice", moderators=["mod"], max_members=3)
    return RelayServer(RelayConfig(rooms={"R1": room}, history_limit=2), ice_servers=ICE)


async def join(relay, participant_id, password="pw", room_id="R1"):
    client = Client(FakeConnection(), participant_id)
    await deliver(
        relay,
        client,
        MSG_JOIN,
        roomId=room_id,
        credentials={"roomPassword": password},
        attemptId=f"attempt-{participant_id}",
    )
    return client


# ── Authentication ────────────────────────────────────────────────────────────


class TestAuthentication:
    def test_token_is_participant_id_without_token_table(self, relay):
        assert relay.authenticate("alice") == "alice"
        assert relay.authenticate(None) is None

    def test_token_table(self):
        relay = RelayServer(RelayConfig(tokens={"tok-a": "alice"}))
        assert relay.authenticate("tok-a") == "alice"
        assert relay.authenticate("alice") is None

    def test_upgrade_rejected_without_bearer(self, relay):
        connection = mock.Mock()
        request = mock.Mock(headers={"Authorization": "Basic abc"})

        response = relay.process_request(connection, request)

        assert response is connection.respond.return_value
        assert connection.respond.call_args.args[0] == HTTPStatus.UNAUTHORIZED

    def test_upgrade_accepted(self, relay):
        connection = mock.Mock()
        request = mock.Mock(headers={"Authorization": "Bearer alice"})
        assert relay.process_request(connection, request) is None
        connection.respond.assert_not_called()


# ── Membership ────────────────────────────────────────────────────────────────


class TestJoin:
    @pytest.mark.asyncio
    async def test_ack_carries_snapshot(self, relay):
        alice = await join(relay, "alice")

        assert alice.connection.types() == [MSG_JOIN_ACK, MSG_CHAT_HISTORY]
        ack = alice.connection.last(MSG_JOIN_ACK)
        assert ack["participantId"] == "alice"
        assert ack["role"] == "owner"
        assert ack["attemptId"] == "attempt-alice"
        assert ack["iceServers"] == ICE
        assert ack["roomSnapshot"]["audioPermissions"] == {"alice": "granted"}
        assert ack["roomSnapshot"]["metadata"]["maxMembers"] == 3

    @pytest.mark.asyncio
    async def test_others_receive_roster(self, relay):
        alice = await join(relay, "alice")
        bob = await join(relay, "bob")

        roster = alice.connection.last(MSG_ROSTER)["participants"]
        assert [p["participantId"] for p in roster] == ["alice", "bob"]
        assert MSG_ROSTER not in bob.connection.types()
        assert bob.connection.last(MSG_JOIN_ACK)["role"] == "member"

    @pytest.mark.asyncio
    async def test_moderator_role(self, relay):
        mod = await join(relay, "mod")
        assert mod.connection.last(MSG_JOIN_ACK)["role"] == "moderator"

    @pytest.mark.parametrize(
        "room_id,password,reason",
        [
            ("bad id!", "pw", JOIN_ERROR_INVALID_ROOM_ID),
            ("R9", "pw", JOIN_ERROR_ROOM_NOT_FOUND),
            ("R1", "wrong", JOIN_ERROR_AUTHENTICATION),
        ],
    )
    @pytest.mark.asyncio
    async def test_join_errors(self, relay, room_id, password, reason):
        client = await join(relay, "bob", password=password, room_id=room_id)
        assert client.connection.types() == [MSG_JOIN_ERROR]
        assert client.connection.last(MSG_JOIN_ERROR)["reason"] == reason
        assert client.room is None

    @pytest.mark.asyncio
    async def test_duplicate_membership(self, relay):
        await join(relay, "bob")
        second = await join(relay, "bob")
        assert second.connection.last(MSG_JOIN_ERROR)["reason"] == JOIN_ERROR_DUPLICATE

    @pytest.mark.asyncio
    async def test_leave_from_new_connection_evicts_stale_membership(self, relay):
        await join(relay, "bob")
        second = await join(relay, "bob")
        await deliver(relay, second, MSG_LEAVE, roomId="R1")

        third = await join(relay, "bob")
        assert third.connection.last(MSG_JOIN_ACK)["participantId"] == "bob"

    @pytest.mark.asyncio
    async def test_room_full(self, relay):
        for pid in ("alice", "bob", "carol"):
            await join(relay, pid)
        dave = await join(relay, "dave")
        assert dave.connection.last(MSG_JOIN_ERROR)["reason"] == JOIN_ERROR_ROOM_FULL

    @pytest.mark.asyncio
    async def test_leave_updates_roster(self, relay):
        alice = await join(relay, "alice")
        bob = await join(relay, "bob")
        await deliver(relay, bob, MSG_LEAVE, roomId="R1")

        roster = alice.connection.last(MSG_ROSTER)["participants"]
        assert [p["participantId"] for p in roster] == ["alice"]
        assert bob.room is None

    @pytest.mark.asyncio
    async def test_messages_before_join_are_ignored(self, relay):
        alice = await join(relay, "alice")
        stranger = Client(FakeConnection(), "eve")
        await deliver(relay, stranger, MSG_CHAT_SEND, roomId="R1", text="hi")
        assert MSG_CHAT_RECEIVED not in alice.connection.types()


# ── Room traffic ──────────────────────────────────────────────────────────────


class TestRoomTraffic:
    @pytest.mark.asyncio
    async def test_chat_reaches_everyone_and_history_is_bounded(self, relay):
        alice = await join(relay, "alice")
        bob = await join(relay, "bob")
        for text in ("one", "two", "three"):
            await deliver(relay, bob, MSG_CHAT_SEND, roomId="R1", text=text)
        await deliver(relay, bob, MSG_CHAT_SEND, roomId="R1", text="   ")

        assert alice.connection.last(MSG_CHAT_RECEIVED)["message"]["text"] == "three"
        assert bob.connection.types().count(MSG_CHAT_RECEIVED) == 3

        carol = await join(relay, "carol")
        history = carol.connection.last(MSG_CHAT_HISTORY)["messages"]
        assert [m["text"] for m in history] == ["two", "three"]

    @pytest.mark.asyncio
    async def test_typing_excludes_sender(self, relay):
        alice = await join(relay, "alice")
        bob = await join(relay, "bob")
        await deliver(relay, bob, MSG_TYPING, roomId="R1", isTyping=True)

        assert alice.connection.last(MSG_TYPING_CHANGED) == {"participantId": "bob", "isTyping": True}
        assert MSG_TYPING_CHANGED not in bob.connection.types()

    @pytest.mark.asyncio
    async def test_document_edit_echoes_to_editor(self, relay):
        alice = await join(relay, "alice")
        bob = await join(relay, "bob")
        await deliver(relay, bob, MSG_DOCUMENT_EDIT, roomId="R1", content="x = 1", languageId="python")

        expected = {"content": "x = 1", "languageId": "python", "editorId": "bob"}
        assert alice.connection.last(MSG_DOCUMENT_CHANGED) == expected
        assert bob.connection.last(MSG_DOCUMENT_CHANGED) == expected

        carol = await join(relay, "carol")
        assert carol.connection.last(MSG_JOIN_ACK)["roomSnapshot"]["document"]["content"] == "x = 1"

    @pytest.mark.asyncio
    async def test_language_change_requires_privilege(self, relay):
        alice = await join(relay, "alice")
        bob = await join(relay, "bob")

        await deliver(relay, bob, MSG_LANGUAGE_CHANGE, roomId="R1", languageId="java")
        assert MSG_LANGUAGE_CHANGED not in alice.connection.types()

        await deliver(relay, alice, MSG_LANGUAGE_CHANGE, roomId="R1", languageId="cobol")
        assert MSG_LANGUAGE_CHANGED not in bob.connection.types()

        await deliver(relay, alice, MSG_LANGUAGE_CHANGE, roomId="R1", languageId="java", content="class A {}")
        assert bob.connection.last(MSG_LANGUAGE_CHANGED)["languageId"] == "java"
        assert bob.connection.last(MSG_CHAT_RECEIVED)["message"]["kind"] == "system"
        assert MSG_LANGUAGE_CHANGED not in alice.connection.types()


# ── Permissions and voice ─────────────────────────────────────────────────────


class TestVoice:
    @pytest.mark.asyncio
    async def test_request_goes_to_privileged_members(self, relay):
        alice = await join(relay, "alice")
        mod = await join(relay, "mod")
        bob = await join(relay, "bob")

        await deliver(relay, bob, MSG_AUDIO_PERMISSION_REQUEST, roomId="R1")
        await deliver(relay, bob, MSG_AUDIO_PERMISSION_REQUEST, roomId="R1")

        assert alice.connection.types().count(MSG_PERMISSION_REQUESTED) == 1
        assert mod.connection.last(MSG_PERMISSION_REQUESTED)["participantId"] == "bob"
        assert MSG_PERMISSION_REQUESTED not in bob.connection.types()

    @pytest.mark.asyncio
    async def test_voice_join_requires_grant(self, relay):
        alice = await join(relay, "alice")
        bob = await join(relay, "bob")
        await deliver(relay, alice, MSG_VOICE_JOIN, roomId="R1")

        await deliver(relay, bob, MSG_VOICE_JOIN, roomId="R1")
        assert MSG_VOICE_PEER_JOINED not in alice.connection.types()

        await deliver(relay, bob, MSG_AUDIO_PERMISSION_REQUEST, roomId="R1")
        await deliver(relay, alice, MSG_AUDIO_PERMISSION_RESPONSE, roomId="R1", participantId="bob", granted=True)
        assert bob.connection.last(MSG_PERMISSION_RESOLVED) == {
            "participantId": "bob",
            "granted": True,
            "resolverId": "alice",
        }

        await deliver(relay, bob, MSG_VOICE_JOIN, roomId="R1")
        assert alice.connection.last(MSG_VOICE_PEER_JOINED) == {"participantId": "bob"}
        assert MSG_VOICE_PEER_JOINED not in bob.connection.types()

    @pytest.mark.asyncio
    async def test_member_cannot_resolve(self, relay):
        await join(relay, "alice")
        bob = await join(relay, "bob")
        carol = await join(relay, "carol")
        await deliver(relay, carol, MSG_AUDIO_PERMISSION_REQUEST, roomId="R1")
        await deliver(relay, bob, MSG_AUDIO_PERMISSION_RESPONSE, roomId="R1", participantId="carol", granted=True)
        assert MSG_PERMISSION_RESOLVED not in carol.connection.types()

    @pytest.mark.asyncio
    async def test_signals_are_forwarded_with_sender(self, relay):
        alice = await join(relay, "alice")
        bob = await join(relay, "bob")
        offer = {"sdp": "v=0", "type": "offer"}
        await deliver(relay, alice, MSG_SIGNAL_OFFER, roomId="R1", targetParticipantId="bob", payload=offer)

        assert bob.connection.last(MSG_SIGNAL_OFFER) == {"fromParticipantId": "alice", "payload": offer}
        assert MSG_SIGNAL_OFFER not in alice.connection.types()

    @pytest.mark.asyncio
    async def test_denial_removes_from_voice(self, relay):
        alice = await join(relay, "alice")
        bob = await join(relay, "bob")
        await deliver(relay, alice, MSG_VOICE_JOIN, roomId="R1")
        await deliver(relay, bob, MSG_AUDIO_PERMISSION_REQUEST, roomId="R1")
        await deliver(relay, alice, MSG_AUDIO_PERMISSION_RESPONSE, roomId="R1", participantId="bob", granted=True)
        await deliver(relay, bob, MSG_VOICE_JOIN, roomId="R1")

        await deliver(relay, alice, MSG_AUDIO_PERMISSION_RESPONSE, roomId="R1", participantId="bob", granted=False)

        assert alice.connection.last(MSG_VOICE_PEER_LEFT) == {"participantId": "bob"}
        assert "bob" not in relay.rooms["R1"].voice


class TestAdministration:
    @pytest.mark.asyncio
    async def test_kick(self, relay):
        alice = await join(relay, "alice")
        bob = await join(relay, "bob")

        assert await relay.kick("R1", "bob") is True
        assert bob.connection.types()[-1] == MSG_KICKED
        assert "bob" not in relay.rooms["R1"].members
        assert [p["participantId"] for p in alice.connection.last(MSG_ROSTER)["participants"]] == ["alice"]
        assert await relay.kick("R1", "bob") is False

    @pytest.mark.asyncio
    async def test_close_room(self, relay):
        alice = await join(relay, "alice")
        assert await relay.close_room("R1") is True
        assert alice.connection.types()[-1] == MSG_ROOM_CLOSED
        assert "R1" not in relay.rooms


# ── Over a real socket ────────────────────────────────────────────────────────


async def wait_until(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def live_relay():
    room = RoomDefinition("R1", "pw", owner="alice")
    relay = RelayServer(
        RelayConfig(rooms={"R1": room}, tokens={"tok-alice": "alice", "tok-bob": "bob"}),
        ice_servers=ICE,
    )
    server = await relay.start("127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield relay, f"ws://127.0.0.1:{port}"
    server.close()
    await server.wait_closed()


@pytest_asyncio.fixture
async def sessions(live_relay):
    _, url = live_relay
    timings = SessionTimings(connect_timeout=5.0, join_timeout=5.0, debounce_interval=0.0)
    created = []

    def make():
        session = SessionConnectionManager(url=url, timings=timings)
        created.append(session)
        return session

    yield make
    for session in created:
        await session.disconnect()


class TestLive:
    @pytest.mark.asyncio
    async def test_two_members_chat(self, sessions):
        alice, bob = sessions(), sessions()
        await alice.connect("R1", Credentials("tok-alice", "pw"))
        await bob.connect("R1", Credentials("tok-bob", "pw"))

        assert alice.role == "owner"
        assert bob.ice_servers == ICE
        await wait_until(lambda: "bob" in alice.state.participant_ids())

        assert await bob.send_chat("hello")
        await wait_until(lambda: [m.text for m in alice.state.chat_log] == ["hello"])

    @pytest.mark.asyncio
    async def test_permission_round_trip(self, sessions):
        alice, bob = sessions(), sessions()
        await alice.connect("R1", Credentials("tok-alice", "pw"))
        await bob.connect("R1", Credentials("tok-bob", "pw"))

        assert await bob.permissions.request()
        await wait_until(lambda: len(alice.state.pending_requests) == 1)
        assert await alice.permissions.resolve("bob", True)
        await wait_until(lambda: bob.permissions.status() == PermissionStatus.GRANTED)

    @pytest.mark.asyncio
    async def test_bad_token_is_refused_on_upgrade(self, sessions):
        with pytest.raises(AuthenticationError):
            await sessions().connect("R1", Credentials("tok-eve", "pw"))

    @pytest.mark.asyncio
    async def test_wrong_password(self, sessions):
        with pytest.raises(AuthenticationError):
            await sessions().connect("R1", Credentials("tok-bob", "nope"))

    @pytest.mark.asyncio
    async def test_kick_ends_session(self, live_relay, sessions):
        relay, _ = live_relay
        bob = sessions()
        ended = []
        bob.on("session_ended", ended.append)
        await bob.connect("R1", Credentials("tok-bob", "pw"))

        await relay.kick("R1", "bob")
        await wait_until(lambda: ended == ["kicked"])
        assert not bob.is_joined

    @pytest.mark.asyncio
    async def test_dropped_socket_frees_membership(self, live_relay, sessions):
        relay, _ = live_relay
        bob = sessions()
        await bob.connect("R1", Credentials("tok-bob", "pw"))
        assert "bob" in relay.rooms["R1"].members

        await bob._channel.websocket.close()
        await wait_until(lambda: "bob" not in relay.rooms["R1"].members)
