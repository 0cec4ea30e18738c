"""Shared fakes for session and voice tests.

FakeChannel stands in for the WebSocket transport, FakeAdapter for an aiortc
peer connection and FakeMediaProvider for the microphone and speakers. All of
them record what they were asked to do so tests can assert on it.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from cotog_rtc.config import SessionTimings
from cotog_rtc.exceptions import MediaAcquisitionError, TransportDropError
from cotog_rtc.protocol import MSG_JOIN, MSG_JOIN_ACK, MSG_JOIN_ERROR
from cotog_rtc.session.channel import SignalingChannel
from cotog_rtc.session.manager import SessionConnectionManager
from cotog_rtc.voice.media import LocalMedia, MediaProvider, RemoteMedia
from cotog_rtc.voice.peer import PeerConnectionAdapter


async def settle(rounds: int = 10) -> None:
    """Let scheduled callbacks and emitted coroutine handlers run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ── Signaling ─────────────────────────────────────────────────────────────────


class FakeChannel(SignalingChannel):
    def __init__(self, factory: "FakeChannelFactory"):
        super().__init__()
        self.factory = factory
        self.sent: List[tuple] = []
        self.opened = False
        self.closed = False
        self.url = None
        self.token = None

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed

    async def open(self, url: str, token: Optional[str] = None) -> None:
        self.url = url
        self.token = token
        if self.factory.open_delay:
            await asyncio.sleep(self.factory.open_delay)
        if self.factory.open_errors:
            raise self.factory.open_errors.pop(0)
        self.opened = True

    async def send(self, msg_type: str, **fields: Any) -> None:
        if not self.is_open:
            raise TransportDropError(f"Cannot send {msg_type}: channel is not open")
        self.sent.append((msg_type, fields))
        if msg_type == MSG_JOIN and self.factory.on_join is not None:
            self.factory.on_join(self, fields)

    async def close(self) -> None:
        self.closed = True
        self.release_subscriptions()

    def deliver(self, msg_type: str, **fields: Any) -> None:
        self._dispatch_message(msg_type, fields)

    def drop(self) -> None:
        """Simulate an unexpected transport closure."""
        self.closed = True
        self._dispatch_close(False)

    def sent_types(self) -> List[str]:
        return [msg_type for msg_type, _ in self.sent]

    def last(self, msg_type: str) -> Dict[str, Any]:
        for sent_type, fields in reversed(self.sent):
            if sent_type == msg_type:
                return fields
        raise AssertionError(f"{msg_type} was never sent")


class FakeChannelFactory:
    """Callable passed as ``channel_factory``; records every channel it makes.

    Attributes:
        on_join: ``on_join(channel, fields)`` called when a join is sent.
        open_errors: Exceptions raised by successive ``open()`` calls.
        open_delay: Seconds each ``open()`` takes.
    """

    def __init__(self):
        self.channels: List[FakeChannel] = []
        self.on_join: Optional[Callable[[FakeChannel, Dict[str, Any]], None]] = None
        self.open_errors: List[Exception] = []
        self.open_delay: float = 0

    def __call__(self) -> FakeChannel:
        channel = FakeChannel(self)
        self.channels.append(channel)
        return channel

    @property
    def current(self) -> FakeChannel:
        return self.channels[-1]


def participant(participant_id: str, role: str = "member", audio_state: str = "off"):
    return {
        "participantId": participant_id,
        "displayName": participant_id.title(),
        "role": role,
        "audioState": audio_state,
    }


def acking(
    participant_id: str = "alice",
    role: str = "owner",
    roster: Optional[List[Dict[str, Any]]] = None,
    **snapshot: Any,
):
    """Build an ``on_join`` hook that answers every join with a join-ack."""
    if roster is None:
        roster = [participant(participant_id, role)]

    def on_join(channel: FakeChannel, fields: Dict[str, Any]) -> None:
        channel.deliver(
            MSG_JOIN_ACK,
            participantId=participant_id,
            role=role,
            attemptId=fields["attemptId"],
            roomSnapshot={"roster": roster, **snapshot},
            iceServers=[{"urls": "stun:relay.test:3478"}],
        )

    return on_join


def rejecting(*reasons: str):
    """Build an ``on_join`` hook answering successive joins with join-errors."""
    queue = list(reasons)

    def on_join(channel: FakeChannel, fields: Dict[str, Any]) -> None:
        reason = queue.pop(0) if len(queue) > 1 else queue[0]
        channel.deliver(MSG_JOIN_ERROR, reason=reason, message=f"rejected: {reason}")

    return on_join


# ── Peer connections ──────────────────────────────────────────────────────────


class FakeAdapter(PeerConnectionAdapter):
    def __init__(self, remote_id: str, ice_servers=None):
        super().__init__(remote_id)
        self.ice_servers = ice_servers
        self.local_media = None
        self.local_description = None
        self.remote_description = None
        self.candidates: List[Dict[str, Any]] = []
        self.closed = False
        self.fail_on: set = set()
        self._state = "new"

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    @property
    def connection_state(self) -> str:
        return self._state

    def add_local_media(self, media) -> None:
        self.local_media = media

    async def create_offer(self):
        if "create_offer" in self.fail_on:
            raise RuntimeError("offer failed")
        self.local_description = {"sdp": f"offer-to-{self.remote_id}", "type": "offer"}
        return self.local_description

    async def create_answer(self):
        if self.remote_description is None:
            raise RuntimeError("no remote offer")
        self.local_description = {"sdp": f"answer-to-{self.remote_id}", "type": "answer"}
        return self.local_description

    async def set_remote_description(self, description):
        if "set_remote_description" in self.fail_on:
            raise ValueError("bad sdp")
        self.remote_description = description

    async def add_ice_candidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self._state = "closed"

    def set_state(self, state: str) -> None:
        self._state = state
        self.emit("connectionstatechange", state)


class FakeFactory:
    def __init__(self):
        self.created: List[FakeAdapter] = []

    def create(self, remote_id: str, ice_servers=None) -> FakeAdapter:
        adapter = FakeAdapter(remote_id, ice_servers)
        self.created.append(adapter)
        return adapter

    def latest(self, remote_id: str) -> FakeAdapter:
        for adapter in reversed(self.created):
            if adapter.remote_id == remote_id:
                return adapter
        raise AssertionError(f"No adapter created for {remote_id}")


# ── Media ─────────────────────────────────────────────────────────────────────


class FakeTrack:
    kind = "audio"

    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeSink:
    def __init__(self):
        self.tracks = []
        self.started = False
        self.stopped = False

    def addTrack(self, track):
        self.tracks.append(track)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True


class FakeMediaProvider(MediaProvider):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.acquired: List[LocalMedia] = []
        self.constraints: List[Dict[str, Any]] = []
        self.sinks: List[RemoteMedia] = []

    async def acquire(self, constraints):
        self.constraints.append(constraints)
        if self.error is not None:
            raise self.error
        media = LocalMedia([FakeTrack()])
        self.acquired.append(media)
        return media

    def create_sink(self, participant_id, track):
        media = RemoteMedia(participant_id, track, FakeSink())
        self.sinks.append(media)
        return media


# ── Fixtures ──────────────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def timings():
    """Fast timings so backoff and recovery tests finish quickly."""
    return SessionTimings(
        connect_timeout=1.0,
        join_timeout=0.5,
        debounce_interval=3.0,
        max_reconnect_attempts=3,
        backoff_base=0.01,
        backoff_cap=0.04,
        duplicate_recovery_delay=0.01,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channels():
    return FakeChannelFactory()


@pytest.fixture
def manager(timings, channels, clock):
    return SessionConnectionManager(
        url="ws://relay.test:8080",
        timings=timings,
        channel_factory=channels,
        clock=clock,
    )


@pytest.fixture
def media_provider():
    return FakeMediaProvider()


@pytest.fixture
def peer_factory():
    return FakeFactory()


@pytest.fixture
def media_error():
    return MediaAcquisitionError("no microphone")
