"""Single-process WebSocket relay for local development and tests.

Implements the room side of the wire protocol: bearer-token check on the
upgrade request, room passwords, owner/moderator roles, duplicate membership
and room-full rejection, chat history, a last-write-wins shared document,
the audio permission table, the voice set and signal forwarding. One relay
process serves every room; there is no persistence.

Usage:
    cotog-rtc relay --host 0.0.0.0 --port 8080
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Deque, Dict, List, Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from cotog_rtc.config import DEFAULT_ICE_SERVERS, RelayConfig, RoomDefinition
from cotog_rtc.protocol import (
    DEFAULT_LANGUAGE,
    JOIN_ERROR_AUTHENTICATION,
    JOIN_ERROR_DUPLICATE,
    JOIN_ERROR_INVALID_ROOM_ID,
    JOIN_ERROR_ROOM_FULL,
    JOIN_ERROR_ROOM_NOT_FOUND,
    MSG_AUDIO_PERMISSION_REQUEST,
    MSG_AUDIO_PERMISSION_RESPONSE,
    MSG_AUDIO_STATE_CHANGED,
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
    MSG_SERVER_SHUTDOWN,
    MSG_SPEAKING,
    MSG_SPEAKING_CHANGED,
    MSG_TYPING,
    MSG_TYPING_CHANGED,
    MSG_VOICE_JOIN,
    MSG_VOICE_LEAVE,
    MSG_VOICE_PEER_JOINED,
    MSG_VOICE_PEER_LEFT,
    PRIVILEGED_ROLES,
    ROLE_MEMBER,
    ROLE_MODERATOR,
    ROLE_OWNER,
    SIGNAL_KINDS,
    SUPPORTED_LANGUAGES,
    format_message,
    parse_message,
)
from cotog_rtc.session.manager import ROOM_ID_PATTERN
from cotog_rtc.session.state import (
    AUDIO_OFF,
    AUDIO_ON,
    DEFAULT_DOCUMENT,
    PERMISSION_DENIED,
    PERMISSION_GRANTED,
    PERMISSION_PENDING,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _bearer(header: Optional[str]) -> Optional[str]:
    if not header or not header.startswith("Bearer "):
        return None
    return header[len("Bearer "):].strip() or None


@dataclass
class Member:
    participant_id: str
    connection: Any
    role: str = ROLE_MEMBER
    audio_state: str = AUDIO_OFF

    def to_wire(self) -> Dict[str, Any]:
        return {
            "participantId": self.participant_id,
            "displayName": self.participant_id,
            "role": self.role,
            "audioState": self.audio_state,
        }


@dataclass
class Room:
    definition: RoomDefinition
    history_limit: int = 100
    members: Dict[str, Member] = field(default_factory=dict)
    chat_history: Deque[Dict[str, Any]] = field(init=False)
    document: Dict[str, Any] = field(
        default_factory=lambda: {
            "content": DEFAULT_DOCUMENT,
            "languageId": DEFAULT_LANGUAGE,
            "lastEditorId": None,
        }
    )
    permissions: Dict[str, str] = field(default_factory=dict)
    voice: Dict[str, None] = field(default_factory=dict)
    speaking: set = field(default_factory=set)

    def __post_init__(self):
        self.chat_history = deque(maxlen=self.history_limit)

    @property
    def room_id(self) -> str:
        return self.definition.room_id

    def role_for(self, participant_id: str) -> str:
        if participant_id == self.definition.owner:
            return ROLE_OWNER
        if participant_id in self.definition.moderators:
            return ROLE_MODERATOR
        return ROLE_MEMBER

    def roster(self) -> List[Dict[str, Any]]:
        return [member.to_wire() for member in self.members.values()]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "roster": self.roster(),
            "document": dict(self.document),
            "audioPermissions": dict(self.permissions),
            "speaking": sorted(self.speaking),
            "metadata": {
                "name": self.definition.name or self.room_id,
                "maxMembers": self.definition.max_members,
            },
        }


@dataclass
class Client:
    """One WebSocket connection and the room it joined, if any."""

    connection: Any
    participant_id: str
    room: Optional[Room] = None


class RelayServer:
    """Room relay over ``websockets``.

    Args:
        config: Rooms, tokens and history limit.
        ice_servers: ICE servers handed to clients in join-ack.
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
    ):
        self.config = config or RelayConfig()
        self.ice_servers = ice_servers if ice_servers is not None else list(DEFAULT_ICE_SERVERS)
        self.rooms: Dict[str, Room] = {
            room_id: Room(definition, history_limit=self.config.history_limit)
            for room_id, definition in self.config.rooms.items()
        }
        self._server: Optional[Server] = None
        self._handlers = {
            MSG_JOIN: self._handle_join,
            MSG_LEAVE: self._handle_leave,
            MSG_CHAT_SEND: self._handle_chat,
            MSG_TYPING: self._handle_typing,
            MSG_DOCUMENT_EDIT: self._handle_document_edit,
            MSG_LANGUAGE_CHANGE: self._handle_language_change,
            MSG_AUDIO_PERMISSION_REQUEST: self._handle_permission_request,
            MSG_AUDIO_PERMISSION_RESPONSE: self._handle_permission_response,
            MSG_VOICE_JOIN: self._handle_voice_join,
            MSG_VOICE_LEAVE: self._handle_voice_leave,
            MSG_SPEAKING: self._handle_speaking,
        }
        for msg_type in SIGNAL_KINDS:
            self._handlers[msg_type] = self._handle_signal

    # -------------------------------------------------------------------------
    # Connection handling
    # -------------------------------------------------------------------------

    def authenticate(self, token: Optional[str]) -> Optional[str]:
        """Map a bearer token to a participant id, or None if rejected.

        Without configured tokens, any non-empty token is accepted and used
        as the participant id.
        """
        if not token:
            return None
        if self.config.tokens:
            return self.config.tokens.get(token)
        return token

    def process_request(self, connection: ServerConnection, request):
        """Reject the upgrade with 401 when the bearer token is not accepted."""
        token = _bearer(request.headers.get("Authorization"))
        if self.authenticate(token) is None:
            logger.warning("Rejected connection: missing or invalid token")
            return connection.respond(HTTPStatus.UNAUTHORIZED, "Invalid token\n")
        return None

    async def handler(self, connection: ServerConnection):
        """Handle a WebSocket connection."""
        token = _bearer(connection.request.headers.get("Authorization"))
        client = Client(connection, self.authenticate(token))
        logger.info(f"Connected: {client.participant_id}")

        try:
            async for raw in connection:
                try:
                    msg_type, fields = parse_message(raw)
                except ValueError as e:
                    logger.warning(f"Invalid message from {client.participant_id}: {e}")
                    continue

                handler = self._handlers.get(msg_type)
                if handler is None:
                    logger.debug(f"Ignoring {msg_type} from {client.participant_id}")
                    continue
                if msg_type not in (MSG_JOIN, MSG_LEAVE) and not self._in_room(client, fields):
                    logger.debug(f"Ignoring {msg_type}: {client.participant_id} not in room")
                    continue
                await handler(client, msg_type, fields)

        except ConnectionClosed:
            logger.info(f"Connection closed: {client.participant_id}")
        finally:
            room = client.room
            if room is not None:
                member = room.members.get(client.participant_id)
                if member is not None and member.connection is connection:
                    await self._remove_member(room, client.participant_id)
                client.room = None

    def _in_room(self, client: Client, fields: Dict[str, Any]) -> bool:
        room = client.room
        if room is None or fields.get("roomId") != room.room_id:
            return False
        member = room.members.get(client.participant_id)
        return member is not None and member.connection is client.connection

    async def _send(self, connection, msg_type: str, **fields: Any) -> None:
        try:
            await connection.send(format_message(msg_type, **fields))
        except ConnectionClosed:
            logger.debug(f"Dropped {msg_type}: connection closed")

    async def _broadcast(
        self, room: Room, msg_type: str, exclude: Optional[str] = None, **fields: Any
    ) -> None:
        for member in list(room.members.values()):
            if member.participant_id != exclude:
                await self._send(member.connection, msg_type, **fields)

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    async def _join_error(self, client: Client, reason: str, message: str) -> None:
        logger.info(f"Join rejected for {client.participant_id}: {reason}")
        await self._send(client.connection, MSG_JOIN_ERROR, reason=reason, message=message)

    async def _handle_join(self, client: Client, msg_type: str, fields: Dict[str, Any]):
        room_id = fields.get("roomId")
        if not isinstance(room_id, str) or not ROOM_ID_PATTERN.match(room_id):
            await self._join_error(client, JOIN_ERROR_INVALID_ROOM_ID, "Invalid room id")
            return
        room = self.rooms.get(room_id)
        if room is None:
            await self._join_error(client, JOIN_ERROR_ROOM_NOT_FOUND, f"Room {room_id} not found")
            return
        password = (fields.get("credentials") or {}).get("roomPassword")
        if password != room.definition.password:
            await self._join_error(client, JOIN_ERROR_AUTHENTICATION, "Wrong room password")
            return
        participant_id = client.participant_id
        if participant_id in room.members:
            await self._join_error(
                client, JOIN_ERROR_DUPLICATE, f"{participant_id} is already in the room"
            )
            return
        if len(room.members) >= room.definition.max_members:
            await self._join_error(client, JOIN_ERROR_ROOM_FULL, "Room is full")
            return

        role = room.role_for(participant_id)
        room.members[participant_id] = Member(participant_id, client.connection, role)
        if role in PRIVILEGED_ROLES:
            room.permissions[participant_id] = PERMISSION_GRANTED
        client.room = room
        logger.info(f"{participant_id} joined {room_id} as {role} ({len(room.members)} members)")

        await self._send(
            client.connection,
            MSG_JOIN_ACK,
            participantId=participant_id,
            role=role,
            attemptId=fields.get("attemptId"),
            roomSnapshot=room.snapshot(),
            iceServers=self.ice_servers,
        )
        await self._send(
            client.connection, MSG_CHAT_HISTORY, messages=list(room.chat_history)
        )
        await self._broadcast(room, MSG_ROSTER, exclude=participant_id, participants=room.roster())

    async def _handle_leave(self, client: Client, msg_type: str, fields: Dict[str, Any]):
        room = self.rooms.get(fields.get("roomId"))
        if room is None:
            return
        member = room.members.get(client.participant_id)
        if member is None:
            return
        if member.connection is not client.connection:
            # Stale membership left behind by an earlier connection.
            logger.info(f"Evicting stale membership of {client.participant_id}")
        await self._remove_member(room, client.participant_id)
        if client.room is room:
            client.room = None

    async def _remove_member(self, room: Room, participant_id: str) -> None:
        if room.members.pop(participant_id, None) is None:
            return
        room.permissions.pop(participant_id, None)
        await self._leave_voice(room, participant_id)
        logger.info(f"{participant_id} left {room.room_id} ({len(room.members)} members)")
        await self._broadcast(room, MSG_ROSTER, participants=room.roster())

    async def kick(self, room_id: str, participant_id: str) -> bool:
        """Remove a participant from a room, telling them first."""
        room = self.rooms.get(room_id)
        member = room.members.get(participant_id) if room else None
        if member is None:
            return False
        await self._send(member.connection, MSG_KICKED)
        await self._remove_member(room, participant_id)
        return True

    async def close_room(self, room_id: str) -> bool:
        """End a room for every member."""
        room = self.rooms.pop(room_id, None)
        if room is None:
            return False
        await self._broadcast(room, MSG_ROOM_CLOSED)
        room.members.clear()
        logger.info(f"Closed room {room_id}")
        return True

    async def shutdown(self) -> None:
        """Tell every member the relay is going away."""
        for room in self.rooms.values():
            await self._broadcast(room, MSG_SERVER_SHUTDOWN)
            room.members.clear()

    # -------------------------------------------------------------------------
    # Room traffic
    # -------------------------------------------------------------------------

    async def _handle_chat(self, client: Client, msg_type: str, fields: Dict[str, Any]):
        text = fields.get("text")
        if not isinstance(text, str) or not text.strip():
            return
        await self._post_message(client.room, client.participant_id, text, "user")

    async def _post_message(
        self, room: Room, participant_id: str, text: str, kind: str
    ) -> None:
        message = {
            "messageId": uuid.uuid4().hex,
            "participantId": participant_id,
            "displayName": participant_id if kind == "user" else "System",
            "text": text,
            "sentAt": _now(),
            "kind": kind,
        }
        room.chat_history.append(message)
        await self._broadcast(room, MSG_CHAT_RECEIVED, message=message)

    async def _handle_typing(self, client: Client, msg_type: str, fields: Dict[str, Any]):
        await self._broadcast(
            client.room,
            MSG_TYPING_CHANGED,
            exclude=client.participant_id,
            participantId=client.participant_id,
            isTyping=bool(fields.get("isTyping")),
        )

    async def _handle_document_edit(
        self, client: Client, msg_type: str, fields: Dict[str, Any]
    ):
        content = fields.get("content")
        if not isinstance(content, str):
            return
        room = client.room
        language_id = fields.get("languageId")
        if language_id in SUPPORTED_LANGUAGES:
            room.document["languageId"] = language_id
        room.document["content"] = content
        room.document["lastEditorId"] = client.participant_id
        # Sent back to the editor as well; clients drop their own echoes.
        await self._broadcast(
            room,
            MSG_DOCUMENT_CHANGED,
            content=content,
            languageId=room.document["languageId"],
            editorId=client.participant_id,
        )

    async def _handle_language_change(
        self, client: Client, msg_type: str, fields: Dict[str, Any]
    ):
        room = client.room
        member = room.members[client.participant_id]
        language_id = fields.get("languageId")
        if member.role not in PRIVILEGED_ROLES or language_id not in SUPPORTED_LANGUAGES:
            logger.warning(f"Rejected language change to {language_id} by {member.participant_id}")
            return
        content = fields.get("content")
        room.document["languageId"] = language_id
        if isinstance(content, str):
            room.document["content"] = content
        room.document["lastEditorId"] = member.participant_id
        await self._broadcast(
            room,
            MSG_LANGUAGE_CHANGED,
            exclude=member.participant_id,
            languageId=language_id,
            content=room.document["content"],
            editorId=member.participant_id,
        )
        await self._post_message(
            room, "system", f"{member.participant_id} changed the language to {language_id}", "system"
        )

    # -------------------------------------------------------------------------
    # Audio permissions and voice
    # -------------------------------------------------------------------------

    async def _handle_permission_request(
        self, client: Client, msg_type: str, fields: Dict[str, Any]
    ):
        room = client.room
        participant_id = client.participant_id
        if room.members[participant_id].role in PRIVILEGED_ROLES:
            return
        if room.permissions.get(participant_id) in (PERMISSION_PENDING, PERMISSION_GRANTED):
            return
        room.permissions[participant_id] = PERMISSION_PENDING
        requested_at = _now()
        for member in list(room.members.values()):
            if member.role in PRIVILEGED_ROLES:
                await self._send(
                    member.connection,
                    MSG_PERMISSION_REQUESTED,
                    participantId=participant_id,
                    requestedAt=requested_at,
                )

    async def _handle_permission_response(
        self, client: Client, msg_type: str, fields: Dict[str, Any]
    ):
        room = client.room
        resolver = room.members[client.participant_id]
        target_id = fields.get("participantId")
        target = room.members.get(target_id)
        if resolver.role not in PRIVILEGED_ROLES or target is None:
            return
        if target.role in PRIVILEGED_ROLES:
            return
        granted = bool(fields.get("granted"))
        room.permissions[target_id] = PERMISSION_GRANTED if granted else PERMISSION_DENIED
        await self._broadcast(
            room,
            MSG_PERMISSION_RESOLVED,
            participantId=target_id,
            granted=granted,
            resolverId=resolver.participant_id,
        )
        if not granted and target_id in room.voice:
            await self._leave_voice(room, target_id)

    async def _handle_voice_join(self, client: Client, msg_type: str, fields: Dict[str, Any]):
        room = client.room
        participant_id = client.participant_id
        if room.permissions.get(participant_id) != PERMISSION_GRANTED:
            logger.warning(f"Rejected voiceJoin from {participant_id}: not granted")
            return
        if participant_id in room.voice:
            # Re-announce after a reconnect
            room.voice.pop(participant_id)
        existing = list(room.voice)
        room.voice[participant_id] = None
        room.members[participant_id].audio_state = AUDIO_ON

        for other_id in existing:
            member = room.members.get(other_id)
            if member is not None:
                await self._send(
                    member.connection, MSG_VOICE_PEER_JOINED, participantId=participant_id
                )
        await self._broadcast(
            room,
            MSG_AUDIO_STATE_CHANGED,
            exclude=participant_id,
            participantId=participant_id,
            audioState=AUDIO_ON,
        )

    async def _handle_voice_leave(
        self, client: Client, msg_type: str, fields: Dict[str, Any]
    ):
        await self._leave_voice(client.room, client.participant_id)

    async def _leave_voice(self, room: Room, participant_id: str) -> None:
        if participant_id not in room.voice:
            return
        room.voice.pop(participant_id)
        member = room.members.get(participant_id)
        if member is not None:
            member.audio_state = AUDIO_OFF

        for other_id in list(room.voice):
            other = room.members.get(other_id)
            if other is not None:
                await self._send(other.connection, MSG_VOICE_PEER_LEFT, participantId=participant_id)
        if member is not None:
            await self._broadcast(
                room,
                MSG_AUDIO_STATE_CHANGED,
                exclude=participant_id,
                participantId=participant_id,
                audioState=AUDIO_OFF,
            )
        if participant_id in room.speaking:
            room.speaking.discard(participant_id)
            await self._broadcast(
                room, MSG_SPEAKING_CHANGED, participantIds=sorted(room.speaking)
            )

    async def _handle_speaking(self, client: Client, msg_type: str, fields: Dict[str, Any]):
        room = client.room
        participant_id = client.participant_id
        if participant_id not in room.voice:
            return
        before = set(room.speaking)
        if fields.get("isSpeaking"):
            room.speaking.add(participant_id)
        else:
            room.speaking.discard(participant_id)
        if room.speaking != before:
            await self._broadcast(
                room, MSG_SPEAKING_CHANGED, participantIds=sorted(room.speaking)
            )

    async def _handle_signal(self, client: Client, msg_type: str, fields: Dict[str, Any]):
        target = client.room.members.get(fields.get("targetParticipantId"))
        if target is None:
            logger.warning(
                f"Signal target not found: {fields.get('targetParticipantId')}"
            )
            return
        await self._send(
            target.connection,
            msg_type,
            fromParticipantId=client.participant_id,
            payload=fields.get("payload"),
        )
        logger.debug(f"Forwarded {msg_type} from {client.participant_id} to {target.participant_id}")

    # -------------------------------------------------------------------------
    # Serving
    # -------------------------------------------------------------------------

    async def start(self, host: str = "localhost", port: int = 8080) -> Server:
        """Start listening and return the websockets Server."""
        self._server = await serve(
            self.handler, host, port, process_request=self.process_request
        )
        logger.info(f"Relay listening on ws://{host}:{port} ({len(self.rooms)} rooms)")
        return self._server

    async def serve(self, host: str = "localhost", port: int = 8080) -> None:
        """Run until cancelled, then notify members and close."""
        server = await self.start(host, port)
        try:
            await asyncio.Future()  # Run forever
        finally:
            await self.shutdown()
            server.close()
            await server.wait_closed()
            logger.info("Relay stopped")
