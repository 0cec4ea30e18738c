"""Room session lifecycle: join, dedup, reconnection and inbound event routing.

SessionConnectionManager owns the single signaling channel of a client, the
RoomStateStore it feeds, and every timer involved in keeping the session
alive. It emits pyee events (the same style as aiortc objects) so the UI and
the VoiceController can follow along without polling.
"""

import asyncio
import functools
import hashlib
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pyee.asyncio import AsyncIOEventEmitter

from cotog_rtc.config import SessionTimings, get_config
from cotog_rtc.exceptions import (
    AuthenticationError,
    ConnectError,
    ConnectionBusyError,
    ConnectionCancelledError,
    DuplicateMembershipError,
    InvalidRoomIdError,
    RoomFullError,
    RoomNotFoundError,
    SessionTerminatedError,
    TransportDropError,
    TransportTimeoutError,
)
from cotog_rtc.protocol import (
    JOIN_ERROR_AUTHENTICATION,
    JOIN_ERROR_DUPLICATE,
    JOIN_ERROR_INVALID_ROOM_ID,
    JOIN_ERROR_ROOM_FULL,
    JOIN_ERROR_ROOM_NOT_FOUND,
    MSG_AUDIO_STATE_CHANGED,
    MSG_CHAT_HISTORY,
    MSG_CHAT_RECEIVED,
    MSG_CHAT_SEND,
    MSG_DOCUMENT_CHANGED,
    MSG_DOCUMENT_EDIT,
    MSG_JOIN,
    MSG_JOIN_ACK,
    MSG_JOIN_ERROR,
    MSG_LANGUAGE_CHANGE,
    MSG_LANGUAGE_CHANGED,
    MSG_LEAVE,
    MSG_PERMISSION_REQUESTED,
    MSG_PERMISSION_RESOLVED,
    MSG_PERMISSIONS_SNAPSHOT,
    MSG_ROSTER,
    MSG_SPEAKING,
    MSG_SPEAKING_CHANGED,
    MSG_TYPING,
    MSG_TYPING_CHANGED,
    MSG_VOICE_PEER_JOINED,
    MSG_VOICE_PEER_LEFT,
    PRIVILEGED_ROLES,
    ROLE_MEMBER,
    SIGNAL_KINDS,
    SUPPORTED_LANGUAGES,
    TERMINAL_MESSAGE_TYPES,
)
from cotog_rtc.session.channel import SignalingChannel, WebSocketSignalingChannel
from cotog_rtc.session.state import (
    AUDIO_OFF,
    AUDIO_ON,
    AudioToggled,
    ChatHistoryLoaded,
    DocumentChanged,
    Joined,
    LanguageChanged,
    LocalDocumentEdited,
    Message,
    MessageReceived,
    Participant,
    Reset,
    RoomState,
    RoomStateStore,
    RosterChanged,
    SpeakingChanged,
    TypingChanged,
)
from cotog_rtc.session.timers import TaskSlot, backoff_delay
from cotog_rtc.voice.permissions import AudioPermissionWorkflow

logger = logging.getLogger(__name__)

ROOM_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# join-error reason code -> exception raised from connect()
JOIN_ERRORS = {
    JOIN_ERROR_AUTHENTICATION: AuthenticationError,
    JOIN_ERROR_ROOM_NOT_FOUND: RoomNotFoundError,
    JOIN_ERROR_INVALID_ROOM_ID: InvalidRoomIdError,
    JOIN_ERROR_ROOM_FULL: RoomFullError,
    JOIN_ERROR_DUPLICATE: DuplicateMembershipError,
}


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    JOINED = "joined"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"


@dataclass(frozen=True)
class Credentials:
    """Secrets presented when joining a room.

    Attributes:
        token: Bearer token sent in the WebSocket upgrade request.
        room_password: Room password sent in the join message.
    """

    token: Optional[str] = None
    room_password: Optional[str] = None

    def digest(self) -> str:
        """SHA-256 over both secrets, safe to keep alongside an attempt."""
        digest = hashlib.sha256()
        digest.update((self.token or "").encode("utf-8"))
        digest.update(b"\x00")
        digest.update((self.room_password or "").encode("utf-8"))
        return digest.hexdigest()

    def to_wire(self) -> Dict[str, Any]:
        if self.room_password is None:
            return {}
        return {"roomPassword": self.room_password}


@dataclass
class ConnectionAttempt:
    """One join handshake. Exists only until the ack or a failure."""

    room_id: str
    credentials_digest: str
    started_at: float
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    recovered: bool = False


@dataclass
class Session:
    session_id: str
    room_id: str
    participant_id: str
    role: str
    connection_state: ConnectionState = ConnectionState.JOINED


class SessionConnectionManager(AsyncIOEventEmitter):
    """Client side of a room session.

    Events:
        connection_state_changed(state): ConnectionState transition.
        room_state_changed(state): RoomState after any effective mutation.
        reconnecting(attempt, delay): A reconnect has been scheduled.
        fatal_error(exc): The session was lost and will not be retried.
        session_ended(reason): The session is gone ("disconnect", "error",
            "kicked", "roomClosed" or "serverShutdown").
        participants_departed(ids): Participants removed from the roster.
        voice_peer_joined(participant_id): A remote joined the voice mesh.
        voice_peer_left(participant_id): A remote left the voice mesh.
        signal(from_id, kind, payload): Inbound mesh signaling.

    Args:
        url: Signaling WebSocket URL. Defaults to the configured relay.
        timings: Handshake and reconnection policy.
        channel_factory: Callable returning a new SignalingChannel.
        clock: Monotonic clock used for the debounce window.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timings: Optional[SessionTimings] = None,
        channel_factory: Optional[Callable[[], SignalingChannel]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self.url = url or get_config().get_websocket_url()
        self.timings = timings or SessionTimings()
        self._channel_factory = channel_factory or WebSocketSignalingChannel
        self._clock = clock

        self.store = RoomStateStore()
        self.session: Optional[Session] = None
        self.connection_state = ConnectionState.IDLE
        self.ice_servers: List[Dict[str, Any]] = []

        self._channel: Optional[SignalingChannel] = None
        self._generation: Optional[str] = None
        self._attempt: Optional[ConnectionAttempt] = None
        self._ack: Optional[asyncio.Future] = None
        self._target: Optional[Tuple[str, Credentials]] = None
        self._joining = False
        self._closing = False
        self._last_attempt_at: Optional[float] = None
        self._reconnect_attempts = 0

        self._reconnect_slot = TaskSlot("reconnect")
        self._recovery_slot = TaskSlot("duplicate-recovery")
        self._teardown_slot = TaskSlot("teardown")

        self.permissions = AudioPermissionWorkflow(self)

        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            MSG_JOIN_ACK: self._handle_join_ack,
            MSG_JOIN_ERROR: self._handle_join_error,
            MSG_ROSTER: self._handle_roster,
            MSG_CHAT_RECEIVED: self._handle_chat_received,
            MSG_CHAT_HISTORY: self._handle_chat_history,
            MSG_TYPING_CHANGED: self._handle_typing_changed,
            MSG_DOCUMENT_CHANGED: self._handle_document_changed,
            MSG_LANGUAGE_CHANGED: self._handle_language_changed,
            MSG_AUDIO_STATE_CHANGED: self._handle_audio_state_changed,
            MSG_SPEAKING_CHANGED: self._handle_speaking_changed,
            MSG_PERMISSION_REQUESTED: self.permissions.handle_requested,
            MSG_PERMISSION_RESOLVED: self.permissions.handle_resolved,
            MSG_PERMISSIONS_SNAPSHOT: self.permissions.handle_snapshot,
            MSG_VOICE_PEER_JOINED: self._handle_voice_peer_joined,
            MSG_VOICE_PEER_LEFT: self._handle_voice_peer_left,
        }
        for msg_type in SIGNAL_KINDS:
            self._handlers[msg_type] = functools.partial(self._handle_signal, msg_type)
        for msg_type in TERMINAL_MESSAGE_TYPES:
            self._handlers[msg_type] = functools.partial(self._handle_terminal, msg_type)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> RoomState:
        return self.store.state

    @property
    def participant_id(self) -> Optional[str]:
        return self.session.participant_id if self.session else None

    @property
    def role(self) -> Optional[str]:
        return self.session.role if self.session else None

    @property
    def is_joined(self) -> bool:
        return self.connection_state == ConnectionState.JOINED and self.session is not None

    # -------------------------------------------------------------------------
    # Join / leave
    # -------------------------------------------------------------------------

    async def connect(
        self, room_id: str, credentials: Optional[Credentials] = None
    ) -> Session:
        """Join a room.

        Args:
            room_id: Room to join.
            credentials: Token and room password.

        Returns:
            The joined Session. If already joined to ``room_id`` the existing
            Session is returned without touching the network.

        Raises:
            ConnectionBusyError: Teardown in progress, another attempt in
                flight, or called within the debounce interval.
            InvalidRoomIdError: ``room_id`` is malformed.
            ConnectError: Any other handshake failure.
        """
        credentials = credentials or Credentials()

        if self.is_joined and self.session.room_id == room_id:
            return self.session
        if self._closing:
            raise ConnectionBusyError("teardown")
        if self._joining or self.connection_state in (
            ConnectionState.CONNECTING,
            ConnectionState.RECONNECTING,
        ):
            raise ConnectionBusyError("in_flight")
        now = self._clock()
        if (
            self._last_attempt_at is not None
            and now - self._last_attempt_at < self.timings.debounce_interval
        ):
            raise ConnectionBusyError("debounce")
        if not isinstance(room_id, str) or not ROOM_ID_PATTERN.match(room_id):
            raise InvalidRoomIdError(f"Malformed room id: {room_id!r}")

        if self.session is not None:
            logger.info(f"Leaving room {self.session.room_id} to join {room_id}")
            await self.disconnect()

        self._last_attempt_at = now
        self._reconnect_attempts = 0
        self._target = (room_id, credentials)
        self._joining = True
        try:
            session = await self._run_attempt(room_id, credentials)
        except ConnectionCancelledError:
            raise
        except ConnectError as e:
            logger.error(f"Failed to join room {room_id}: {e}")
            await self._fail(e, notify=False)
            raise
        except asyncio.CancelledError:
            await self._fail(ConnectionCancelledError("connect() cancelled"), notify=False)
            raise
        finally:
            self._joining = False

        logger.info(f"Joined room {room_id} as {session.participant_id} ({session.role})")
        return session

    async def _run_attempt(
        self, room_id: str, credentials: Credentials, reconnecting: bool = False
    ) -> Session:
        attempt = ConnectionAttempt(
            room_id=room_id,
            credentials_digest=credentials.digest(),
            started_at=self._clock(),
        )
        self._attempt = attempt
        self._generation = attempt.attempt_id
        self._set_connection_state(
            ConnectionState.RECONNECTING if reconnecting else ConnectionState.CONNECTING
        )

        await self._teardown_channel()
        channel = self._channel_factory()
        self._channel = channel
        channel.subscribe(functools.partial(self._on_message, attempt.attempt_id))
        channel.on_close(functools.partial(self._on_channel_closed, attempt.attempt_id))

        ack = asyncio.get_running_loop().create_future()
        self._ack = ack
        try:
            try:
                await asyncio.wait_for(
                    channel.open(self.url, credentials.token),
                    self.timings.connect_timeout,
                )
            except asyncio.TimeoutError as e:
                raise TransportTimeoutError(
                    f"Signaling channel did not open within "
                    f"{self.timings.connect_timeout}s"
                ) from e
            self._check_current(attempt)

            logger.debug(f"Sending join for {room_id} (attempt {attempt.attempt_id[:8]})")
            await self._send_join(channel, attempt, credentials)

            try:
                return await asyncio.wait_for(ack, self.timings.join_timeout)
            except asyncio.TimeoutError as e:
                raise TransportTimeoutError(
                    f"No join-ack within {self.timings.join_timeout}s"
                ) from e
        except BaseException:
            if self._channel is channel:
                await self._teardown_channel()
            raise
        finally:
            if self._ack is ack:
                self._ack = None
            if ack.done() and not ack.cancelled():
                # Mark the exception retrieved when nobody awaited it.
                ack.exception()
            if self._attempt is attempt:
                self._attempt = None
            self._recovery_slot.cancel()

    async def _send_join(
        self,
        channel: SignalingChannel,
        attempt: ConnectionAttempt,
        credentials: Credentials,
    ) -> None:
        await channel.send(
            MSG_JOIN,
            roomId=attempt.room_id,
            credentials=credentials.to_wire(),
            attemptId=attempt.attempt_id,
        )

    def _check_current(self, attempt: ConnectionAttempt) -> None:
        if self._generation != attempt.attempt_id:
            raise ConnectionCancelledError(
                f"Attempt {attempt.attempt_id[:8]} was superseded"
            )

    async def disconnect(self) -> None:
        """Leave the room intentionally and release every resource.

        Cancels all timers, invalidates the current attempt, and fails an
        in-flight connect() with ConnectionCancelledError. Safe to call
        repeatedly.
        """
        if self.connection_state == ConnectionState.IDLE and self._channel is None:
            return

        room_id = self.session.room_id if self.session else None
        self._closing = True
        self._set_connection_state(ConnectionState.CLOSING)
        try:
            self._cancel_timers()
            self._generation = None
            ack = self._ack
            if ack is not None and not ack.done():
                ack.set_exception(ConnectionCancelledError("Disconnected during join"))

            channel = self._channel
            if room_id and channel is not None and channel.is_open:
                try:
                    await channel.send(MSG_LEAVE, roomId=room_id)
                except TransportDropError as e:
                    logger.debug(f"Could not send leave: {e}")
            await self._teardown_channel()
        finally:
            self._closing = False

        self.session = None
        self._target = None
        self._attempt = None
        self._last_attempt_at = None
        self.ice_servers = []
        self.dispatch(Reset())
        self._set_connection_state(ConnectionState.IDLE)
        logger.info(f"Disconnected from room {room_id}")
        self.emit("session_ended", "disconnect")

    async def _fail(
        self, exc: ConnectError, notify: bool = True, reason: str = "error"
    ) -> None:
        """Drop the session after a non-retryable error."""
        self._closing = True
        try:
            self._cancel_timers()
            self._generation = None
            self._attempt = None
            await self._teardown_channel()
        finally:
            self._closing = False

        had_session = self.session is not None
        self.session = None
        self._target = None
        self.ice_servers = []
        self.dispatch(Reset())
        self._set_connection_state(ConnectionState.IDLE)

        if notify:
            logger.error(f"Session ended ({reason}): {exc}")
            self.emit("fatal_error", exc)
        if notify or had_session:
            self.emit("session_ended", reason)

    def _cancel_timers(self) -> None:
        self._reconnect_slot.cancel()
        self._recovery_slot.cancel()
        self._teardown_slot.cancel()

    async def _teardown_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        channel.release_subscriptions()
        try:
            await channel.close()
        except (ConnectError, OSError) as e:
            logger.warning(f"Error closing signaling channel: {e}")

    def _set_connection_state(self, state: ConnectionState) -> None:
        if self.connection_state == state:
            return
        logger.debug(f"Connection state: {self.connection_state.value} -> {state.value}")
        self.connection_state = state
        if self.session is not None:
            self.session.connection_state = state
        self.emit("connection_state_changed", state)

    # -------------------------------------------------------------------------
    # Reconnection
    # -------------------------------------------------------------------------

    def _on_channel_closed(self, attempt_id: str, intentional: bool) -> None:
        if attempt_id != self._generation or intentional:
            return

        ack = self._ack
        if ack is not None and not ack.done():
            ack.set_exception(
                TransportDropError("Signaling channel closed during join")
            )
            return

        if self.connection_state == ConnectionState.JOINED:
            logger.warning("Signaling connection lost")
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_attempts >= self.timings.max_reconnect_attempts:
            logger.error(
                f"Giving up after {self._reconnect_attempts} reconnect attempts"
            )
            self._teardown_slot.schedule(
                0, self._fail, TransportDropError("Reconnect attempts exhausted")
            )
            return

        delay = backoff_delay(
            self._reconnect_attempts, self.timings.backoff_base, self.timings.backoff_cap
        )
        self._reconnect_attempts += 1
        self._set_connection_state(ConnectionState.RECONNECTING)
        logger.info(
            f"Reconnecting in {delay:.1f}s (attempt {self._reconnect_attempts}/"
            f"{self.timings.max_reconnect_attempts})"
        )
        self.emit("reconnecting", self._reconnect_attempts, delay)
        self._reconnect_slot.schedule(delay, self._reconnect)

    async def _reconnect(self) -> None:
        if self._target is None:
            return
        room_id, credentials = self._target
        try:
            await self._run_attempt(room_id, credentials, reconnecting=True)
        except ConnectionCancelledError:
            return
        except ConnectError as e:
            if e.retryable:
                logger.warning(f"Reconnect attempt {self._reconnect_attempts} failed: {e}")
                self._schedule_reconnect()
            elif isinstance(e, SessionTerminatedError):
                await self._fail(e, reason=e.reason)
            else:
                await self._fail(e)
            return
        logger.info(f"Rejoined room {room_id}")

    # -------------------------------------------------------------------------
    # Inbound messages
    # -------------------------------------------------------------------------

    def _on_message(self, attempt_id: str, msg_type: str, fields: Dict[str, Any]) -> None:
        if attempt_id != self._generation:
            logger.debug(f"Dropping {msg_type} from stale attempt {attempt_id[:8]}")
            return

        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.debug(f"Ignoring unhandled message type: {msg_type}")
            return

        try:
            handler(fields)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed {msg_type} message: {e}")

    def _handle_join_ack(self, fields: Dict[str, Any]) -> None:
        ack, attempt = self._ack, self._attempt
        if ack is None or ack.done() or attempt is None:
            logger.debug("Ignoring join-ack with no join in flight")
            return
        ack_attempt = fields.get("attemptId")
        if ack_attempt is not None and ack_attempt != attempt.attempt_id:
            logger.debug(f"Ignoring join-ack for attempt {ack_attempt[:8]}")
            return

        participant_id = fields["participantId"]
        role = fields.get("role") or ROLE_MEMBER
        self.ice_servers = list(fields.get("iceServers") or [])
        self.session = Session(
            session_id=uuid.uuid4().hex,
            room_id=attempt.room_id,
            participant_id=participant_id,
            role=role,
        )
        self._reconnect_attempts = 0
        self._attempt = None
        # Applied before resolving so messages that follow the ack land on top
        # of the snapshot.
        self.dispatch(
            Joined(attempt.room_id, participant_id, role, fields.get("roomSnapshot") or {})
        )
        self._set_connection_state(ConnectionState.JOINED)
        ack.set_result(self.session)

    def _handle_join_error(self, fields: Dict[str, Any]) -> None:
        ack, attempt = self._ack, self._attempt
        if ack is None or ack.done() or attempt is None:
            return

        reason = fields.get("reason")
        message = fields.get("message") or reason or "join rejected"

        if reason == JOIN_ERROR_DUPLICATE and not attempt.recovered:
            attempt.recovered = True
            logger.warning("Relay reports duplicate membership, leaving and rejoining")
            self._recovery_slot.schedule(0, self._recover_duplicate, attempt)
            return

        exc_class = JOIN_ERRORS.get(reason, ConnectError)
        ack.set_exception(exc_class(message))

    async def _recover_duplicate(self, attempt: ConnectionAttempt) -> None:
        if self._attempt is not attempt or self._channel is None:
            return
        try:
            await self._channel.send(MSG_LEAVE, roomId=attempt.room_id)
        except TransportDropError as e:
            self._fail_ack(e)
            return
        self._recovery_slot.schedule(
            self.timings.duplicate_recovery_delay, self._rejoin, attempt
        )

    async def _rejoin(self, attempt: ConnectionAttempt) -> None:
        if self._attempt is not attempt or self._channel is None or self._target is None:
            return
        try:
            await self._send_join(self._channel, attempt, self._target[1])
        except TransportDropError as e:
            self._fail_ack(e)

    def _fail_ack(self, exc: ConnectError) -> None:
        ack = self._ack
        if ack is not None and not ack.done():
            ack.set_exception(exc)

    def _handle_terminal(self, msg_type: str, fields: Dict[str, Any]) -> None:
        logger.warning(f"Session terminated by relay: {msg_type}")
        exc = SessionTerminatedError(msg_type)
        ack = self._ack
        if ack is not None and not ack.done():
            ack.set_exception(exc)
            return
        self._generation = None
        self._teardown_slot.schedule(0, self._terminate, exc)

    async def _terminate(self, exc: SessionTerminatedError) -> None:
        await self._fail(exc, reason=exc.reason)

    def _handle_roster(self, fields: Dict[str, Any]) -> None:
        participants = tuple(Participant.from_wire(p) for p in fields["participants"])
        before = set(self.state.participant_ids())
        self.dispatch(RosterChanged(participants))
        departed = before - {p.participant_id for p in participants}
        if departed:
            logger.info(f"Participants left: {', '.join(sorted(departed))}")
            self.emit("participants_departed", sorted(departed))

    def _handle_chat_received(self, fields: Dict[str, Any]) -> None:
        self.dispatch(MessageReceived(Message.from_wire(fields["message"])))

    def _handle_chat_history(self, fields: Dict[str, Any]) -> None:
        messages = tuple(Message.from_wire(m) for m in fields["messages"])
        self.dispatch(ChatHistoryLoaded(messages))

    def _handle_typing_changed(self, fields: Dict[str, Any]) -> None:
        self.dispatch(TypingChanged(fields["participantId"], bool(fields["isTyping"])))

    def _handle_document_changed(self, fields: Dict[str, Any]) -> None:
        self.dispatch(
            DocumentChanged(
                content=fields["content"],
                language_id=fields.get("languageId"),
                editor_id=fields.get("editorId"),
            )
        )

    def _handle_language_changed(self, fields: Dict[str, Any]) -> None:
        self.dispatch(
            LanguageChanged(
                language_id=fields["languageId"],
                content=fields.get("content"),
                editor_id=fields.get("editorId"),
            )
        )

    def _handle_audio_state_changed(self, fields: Dict[str, Any]) -> None:
        self.dispatch(AudioToggled(fields["participantId"], fields["audioState"]))

    def _handle_speaking_changed(self, fields: Dict[str, Any]) -> None:
        self.dispatch(SpeakingChanged(frozenset(fields["participantIds"])))

    def _handle_voice_peer_joined(self, fields: Dict[str, Any]) -> None:
        participant_id = fields["participantId"]
        if participant_id == self.participant_id:
            return
        self.dispatch(AudioToggled(participant_id, AUDIO_ON))
        self.emit("voice_peer_joined", participant_id)

    def _handle_voice_peer_left(self, fields: Dict[str, Any]) -> None:
        participant_id = fields["participantId"]
        if participant_id == self.participant_id:
            return
        self.dispatch(AudioToggled(participant_id, AUDIO_OFF))
        self.emit("voice_peer_left", participant_id)

    def _handle_signal(self, msg_type: str, fields: Dict[str, Any]) -> None:
        from_id = fields["fromParticipantId"]
        self.emit("signal", from_id, SIGNAL_KINDS[msg_type], fields.get("payload"))

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def dispatch(self, action: Any) -> bool:
        """Apply an action to the room state, emitting room_state_changed.

        Returns:
            True if the state changed.
        """
        changed = self.store.apply(action)
        if changed:
            self.emit("room_state_changed", self.store.state)
        return changed

    async def send(self, msg_type: str, **fields: Any) -> bool:
        """Send a room-scoped message. ``roomId`` is filled in.

        Returns:
            False if not joined or the transport failed.
        """
        channel = self._channel
        if not self.is_joined or channel is None:
            logger.debug(f"Not joined, dropping {msg_type}")
            return False
        try:
            await channel.send(msg_type, roomId=self.session.room_id, **fields)
        except TransportDropError as e:
            logger.warning(f"Failed to send {msg_type}: {e}")
            return False
        return True

    async def send_chat(self, text: str) -> bool:
        if not text or not text.strip():
            return False
        return await self.send(MSG_CHAT_SEND, text=text)

    async def set_typing(self, is_typing: bool) -> bool:
        return await self.send(MSG_TYPING, isTyping=bool(is_typing))

    async def edit_document(self, content: str, language_id: Optional[str] = None) -> bool:
        """Apply an edit locally, then send it to the room."""
        if not self.is_joined:
            return False
        self.dispatch(LocalDocumentEdited(content, language_id))
        return await self.send(
            MSG_DOCUMENT_EDIT,
            content=content,
            languageId=self.state.document.language_id,
        )

    async def change_language(
        self, language_id: str, content: Optional[str] = None
    ) -> bool:
        """Switch the room language. Owner and moderators only."""
        if not self.is_joined:
            return False
        if self.role not in PRIVILEGED_ROLES:
            logger.warning("Only the owner or a moderator can change the language")
            return False
        if language_id not in SUPPORTED_LANGUAGES:
            logger.warning(f"Unsupported language: {language_id}")
            return False
        self.dispatch(LanguageChanged(language_id, content, self.participant_id))
        return await self.send(
            MSG_LANGUAGE_CHANGE,
            languageId=language_id,
            content=self.state.document.content,
        )

    async def set_speaking(self, is_speaking: bool) -> bool:
        return await self.send(MSG_SPEAKING, isSpeaking=bool(is_speaking))
