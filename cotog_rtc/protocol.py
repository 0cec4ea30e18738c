"""Message protocol definitions for cotog-rtc.

This module defines the message types exchanged between a client and the room
relay over the signaling WebSocket.

Message Protocol Overview
-------------------------

Every message is a JSON object with a ``type`` field and type-specific fields
at the top level::

    {"type": "chatSend", "roomId": "R1", "text": "hello"}

The relay is the single authority for a room. Clients never talk to each
other over the signaling channel directly: peer-to-peer signaling messages
carry a ``targetParticipantId`` outbound and arrive with a
``fromParticipantId`` inbound.

Session Messages
----------------

**join** ``{roomId, credentials, attemptId}``
    Sent by: Client
    Purpose: Request membership. ``credentials`` holds the room password; the
    bearer token already authenticated the WebSocket upgrade.

**join-ack** ``{roomSnapshot, participantId, role, attemptId?, iceServers?}``
    Sent by: Relay
    Purpose: Membership granted. ``roomSnapshot`` carries roster, chat log,
    document, language, permission table and speaking set.

**join-error** ``{reason, message}``
    Sent by: Relay
    Purpose: Membership refused. ``reason`` is one of the JOIN_ERROR_* codes.

**leave** ``{roomId}``
    Sent by: Client

**kicked** / **roomClosed** / **serverShutdown** ``{}``
    Sent by: Relay
    Purpose: The session is over. Clients must not reconnect automatically.

Room State Messages
-------------------

Outbound: ``chatSend``, ``typing``, ``documentEdit``, ``languageChange``,
``speaking``. Inbound: ``roster``, ``chatReceived``, ``chatHistory``,
``typingChanged``, ``documentChanged``, ``languageChanged``,
``audioStateChanged``, ``speakingChanged``.

Audio Permission Messages
-------------------------

1. Member → Relay: audioPermissionRequest{roomId}
2. Relay → Room: permissionRequested{participantId, requestedAt}
3. Owner/Moderator → Relay: audioPermissionResponse{roomId, participantId, granted}
4. Relay → Room: permissionResolved{participantId, granted, resolverId}

``permissionsSnapshot{table}`` replaces the whole table.

Voice Mesh Messages
-------------------

1. Client A → Relay: voiceJoin{roomId}
2. Relay → existing voice members: voicePeerJoined{participantId: A}
3. Existing member B → Relay: signal-offer{roomId, targetParticipantId: A, payload}
4. Relay → A: signal-offer{fromParticipantId: B, payload}
5. A → B (via relay): signal-answer, then both sides trickle signal-ice
6. voiceLeave / disconnect → Relay → voice members: voicePeerLeft{participantId}
"""

import json
from typing import Any, Dict, Tuple

# Session messages
MSG_JOIN = "join"
MSG_JOIN_ACK = "join-ack"
MSG_JOIN_ERROR = "join-error"
MSG_LEAVE = "leave"
MSG_KICKED = "kicked"
MSG_ROOM_CLOSED = "roomClosed"
MSG_SERVER_SHUTDOWN = "serverShutdown"

# Room state messages (outbound)
MSG_CHAT_SEND = "chatSend"
MSG_TYPING = "typing"
MSG_DOCUMENT_EDIT = "documentEdit"
MSG_LANGUAGE_CHANGE = "languageChange"
MSG_SPEAKING = "speaking"

# Room state messages (inbound)
MSG_ROSTER = "roster"
MSG_CHAT_RECEIVED = "chatReceived"
MSG_CHAT_HISTORY = "chatHistory"
MSG_TYPING_CHANGED = "typingChanged"
MSG_DOCUMENT_CHANGED = "documentChanged"
MSG_LANGUAGE_CHANGED = "languageChanged"
MSG_AUDIO_STATE_CHANGED = "audioStateChanged"
MSG_SPEAKING_CHANGED = "speakingChanged"

# Audio permission messages
MSG_AUDIO_PERMISSION_REQUEST = "audioPermissionRequest"
MSG_AUDIO_PERMISSION_RESPONSE = "audioPermissionResponse"
MSG_PERMISSION_REQUESTED = "permissionRequested"
MSG_PERMISSION_RESOLVED = "permissionResolved"
MSG_PERMISSIONS_SNAPSHOT = "permissionsSnapshot"

# Voice mesh messages
MSG_VOICE_JOIN = "voiceJoin"
MSG_VOICE_LEAVE = "voiceLeave"
MSG_VOICE_PEER_JOINED = "voicePeerJoined"
MSG_VOICE_PEER_LEFT = "voicePeerLeft"
MSG_SIGNAL_OFFER = "signal-offer"
MSG_SIGNAL_ANSWER = "signal-answer"
MSG_SIGNAL_ICE = "signal-ice"

# Signal kinds carried by the signal-* messages
SIGNAL_OFFER = "offer"
SIGNAL_ANSWER = "answer"
SIGNAL_ICE = "ice"

SIGNAL_MESSAGE_TYPES = {
    SIGNAL_OFFER: MSG_SIGNAL_OFFER,
    SIGNAL_ANSWER: MSG_SIGNAL_ANSWER,
    SIGNAL_ICE: MSG_SIGNAL_ICE,
}
SIGNAL_KINDS = {msg_type: kind for kind, msg_type in SIGNAL_MESSAGE_TYPES.items()}

# Messages that end a session without reconnection
TERMINAL_MESSAGE_TYPES = (MSG_KICKED, MSG_ROOM_CLOSED, MSG_SERVER_SHUTDOWN)

# join-error reason codes
JOIN_ERROR_AUTHENTICATION = "authentication_failed"
JOIN_ERROR_ROOM_NOT_FOUND = "room_not_found"
JOIN_ERROR_INVALID_ROOM_ID = "invalid_room_id"
JOIN_ERROR_DUPLICATE = "duplicate_membership"
JOIN_ERROR_ROOM_FULL = "room_full"

# Roles
ROLE_OWNER = "owner"
ROLE_MODERATOR = "moderator"
ROLE_MEMBER = "member"
PRIVILEGED_ROLES = frozenset({ROLE_OWNER, ROLE_MODERATOR})

# Editor languages accepted by languageChange
SUPPORTED_LANGUAGES = ("javascript", "python", "html", "css", "cpp", "java")
DEFAULT_LANGUAGE = "javascript"


def format_message(msg_type: str, **fields: Any) -> str:
    """Encode a protocol message as a JSON string.

    Args:
        msg_type: The message type constant (e.g., MSG_CHAT_SEND).
        **fields: Message fields, placed at the top level next to ``type``.

    Returns:
        JSON-encoded message.

    Examples:
        >>> format_message(MSG_LEAVE, roomId="R1")
        '{"type": "leave", "roomId": "R1"}'
    """
    return json.dumps({"type": msg_type, **fields})


def parse_message(message: str) -> Tuple[str, Dict[str, Any]]:
    """Decode a JSON protocol message into its type and remaining fields.

    Args:
        message: Raw text frame received from the WebSocket.

    Returns:
        Tuple of (message_type, fields).

    Raises:
        ValueError: If the frame is not a JSON object with a string ``type``.

    Examples:
        >>> parse_message('{"type": "kicked"}')
        ('kicked', {})
    """
    data = json.loads(message)
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ValueError(f"Malformed protocol message: {message[:80]!r}")
    msg_type = data.pop("type")
    return msg_type, data
