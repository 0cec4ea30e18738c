"""Room state and its reducer.

RoomState is an immutable snapshot of everything synchronized for one room:
roster, chat log, shared document and language, audio permission table and
speaking set. It changes only through ``reduce(state, action)``, a pure
function over a closed set of action dataclasses. Each inbound relay event
maps to exactly one action, and actions apply synchronously in delivery
order, so no locking is required.

Document edits are last-write-wins by receipt order. Locally sent edits are
fingerprinted so the relay's delayed echo of our own edit never overwrites
newer local content.
"""

import hashlib
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from cotog_rtc.protocol import DEFAULT_LANGUAGE, PRIVILEGED_ROLES, ROLE_MEMBER

# Audio states
AUDIO_OFF = "off"
AUDIO_CONNECTING = "connecting"
AUDIO_ON = "on"

# Permission table values
PERMISSION_GRANTED = "granted"
PERMISSION_DENIED = "denied"
PERMISSION_PENDING = "pending"

# Number of locally sent document fingerprints remembered for echo detection
SENT_FINGERPRINT_WINDOW = 32

DEFAULT_DOCUMENT = (
    "// Welcome to collaborative coding!\n"
    "// Start typing to share your code with the team..."
)


def document_fingerprint(content: str, language_id: Optional[str]) -> str:
    """Fingerprint of a document edit, used to recognise our own echoes."""
    digest = hashlib.sha256()
    digest.update((language_id or "").encode("utf-8"))
    digest.update(b"\x00")
    digest.update(content.encode("utf-8"))
    return digest.hexdigest()


@dataclass(frozen=True)
class Participant:
    participant_id: str
    display_name: str
    role: str = ROLE_MEMBER
    audio_state: str = AUDIO_OFF

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "Participant":
        participant_id = data["participantId"]
        return cls(
            participant_id=participant_id,
            display_name=data.get("displayName") or participant_id,
            role=data.get("role", ROLE_MEMBER),
            audio_state=data.get("audioState", AUDIO_OFF),
        )


@dataclass(frozen=True)
class Message:
    message_id: str
    participant_id: str
    display_name: str
    text: str
    sent_at: str
    kind: str = "user"

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "Message":
        participant_id = data.get("participantId", "")
        return cls(
            message_id=str(data.get("messageId", "")),
            participant_id=participant_id,
            display_name=data.get("displayName") or participant_id,
            text=data.get("text", ""),
            sent_at=data.get("sentAt", ""),
            kind=data.get("kind", "user"),
        )


@dataclass(frozen=True)
class PermissionRequest:
    participant_id: str
    requested_at: str


@dataclass(frozen=True)
class DocumentState:
    content: str = DEFAULT_DOCUMENT
    language_id: str = DEFAULT_LANGUAGE
    last_editor_id: Optional[str] = None
    sent_fingerprints: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RoomState:
    """Synchronized state of one room, as seen by the local participant."""

    room_id: Optional[str] = None
    participant_id: Optional[str] = None
    role: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    roster: Tuple[Participant, ...] = ()
    chat_log: Tuple[Message, ...] = ()
    document: DocumentState = field(default_factory=DocumentState)
    audio_permissions: Mapping[str, str] = field(default_factory=dict)
    pending_requests: Tuple[PermissionRequest, ...] = ()
    typing: frozenset = frozenset()
    speaking: frozenset = frozenset()

    def participant(self, participant_id: str) -> Optional[Participant]:
        for participant in self.roster:
            if participant.participant_id == participant_id:
                return participant
        return None

    def participant_ids(self) -> Tuple[str, ...]:
        return tuple(p.participant_id for p in self.roster)


# =============================================================================
# Actions
# =============================================================================


@dataclass(frozen=True)
class Joined:
    room_id: str
    participant_id: str
    role: str
    snapshot: Mapping[str, Any]


@dataclass(frozen=True)
class RosterChanged:
    participants: Tuple[Participant, ...]


@dataclass(frozen=True)
class MessageReceived:
    message: Message


@dataclass(frozen=True)
class ChatHistoryLoaded:
    messages: Tuple[Message, ...]


@dataclass(frozen=True)
class DocumentChanged:
    content: str
    language_id: Optional[str]
    editor_id: Optional[str]


@dataclass(frozen=True)
class LocalDocumentEdited:
    content: str
    language_id: Optional[str]


@dataclass(frozen=True)
class LanguageChanged:
    language_id: str
    content: Optional[str]
    editor_id: Optional[str]


@dataclass(frozen=True)
class TypingChanged:
    participant_id: str
    is_typing: bool


@dataclass(frozen=True)
class AudioToggled:
    participant_id: str
    audio_state: str


@dataclass(frozen=True)
class PermissionRequested:
    participant_id: str
    requested_at: str


@dataclass(frozen=True)
class PermissionResolved:
    participant_id: str
    granted: bool


@dataclass(frozen=True)
class PermissionsSnapshot:
    table: Mapping[str, str]


@dataclass(frozen=True)
class SpeakingChanged:
    participant_ids: frozenset


@dataclass(frozen=True)
class Reset:
    pass


# =============================================================================
# Transitions
# =============================================================================


def _with_privileged_grants(
    table: Mapping[str, str], roster: Iterable[Participant]
) -> Dict[str, str]:
    result = dict(table)
    for participant in roster:
        if participant.is_privileged:
            result[participant.participant_id] = PERMISSION_GRANTED
    return result


def _on_joined(state: RoomState, action: Joined) -> RoomState:
    snapshot = action.snapshot
    roster = tuple(Participant.from_wire(p) for p in snapshot.get("roster", []))
    document = snapshot.get("document", {})
    return RoomState(
        room_id=action.room_id,
        participant_id=action.participant_id,
        role=action.role,
        metadata=dict(snapshot.get("metadata", {})),
        roster=roster,
        chat_log=tuple(Message.from_wire(m) for m in snapshot.get("chatLog", [])),
        document=DocumentState(
            content=document.get("content", DEFAULT_DOCUMENT),
            language_id=document.get("languageId") or DEFAULT_LANGUAGE,
            last_editor_id=document.get("lastEditorId"),
        ),
        audio_permissions=_with_privileged_grants(
            snapshot.get("audioPermissions", {}), roster
        ),
        speaking=frozenset(snapshot.get("speaking", [])),
    )


def _on_roster_changed(state: RoomState, action: RosterChanged) -> RoomState:
    present = {p.participant_id for p in action.participants}
    permissions = {
        pid: value for pid, value in state.audio_permissions.items() if pid in present
    }
    return replace(
        state,
        roster=action.participants,
        audio_permissions=_with_privileged_grants(permissions, action.participants),
        pending_requests=tuple(
            r for r in state.pending_requests if r.participant_id in present
        ),
        typing=state.typing & present,
        speaking=state.speaking & present,
    )


def _on_message_received(state: RoomState, action: MessageReceived) -> RoomState:
    return replace(state, chat_log=state.chat_log + (action.message,))


def _on_chat_history_loaded(state: RoomState, action: ChatHistoryLoaded) -> RoomState:
    return replace(state, chat_log=action.messages)


def _on_document_changed(state: RoomState, action: DocumentChanged) -> RoomState:
    if action.editor_id is not None and action.editor_id == state.participant_id:
        fingerprint = document_fingerprint(
            action.content, action.language_id or state.document.language_id
        )
        if fingerprint in state.document.sent_fingerprints:
            return state
    document = replace(
        state.document,
        content=action.content,
        language_id=action.language_id or state.document.language_id,
        last_editor_id=action.editor_id,
    )
    return replace(state, document=document)


def _on_local_document_edited(
    state: RoomState, action: LocalDocumentEdited
) -> RoomState:
    language_id = action.language_id or state.document.language_id
    fingerprint = document_fingerprint(action.content, language_id)
    sent = (state.document.sent_fingerprints + (fingerprint,))[
        -SENT_FINGERPRINT_WINDOW:
    ]
    document = DocumentState(
        content=action.content,
        language_id=language_id,
        last_editor_id=state.participant_id,
        sent_fingerprints=sent,
    )
    return replace(state, document=document)


def _on_language_changed(state: RoomState, action: LanguageChanged) -> RoomState:
    document = replace(
        state.document,
        language_id=action.language_id,
        content=(
            action.content if action.content is not None else state.document.content
        ),
        last_editor_id=action.editor_id,
    )
    return replace(state, document=document)


def _on_typing_changed(state: RoomState, action: TypingChanged) -> RoomState:
    if action.is_typing:
        typing = state.typing | {action.participant_id}
    else:
        typing = state.typing - {action.participant_id}
    if typing == state.typing:
        return state
    return replace(state, typing=typing)


def _on_audio_toggled(state: RoomState, action: AudioToggled) -> RoomState:
    participant = state.participant(action.participant_id)
    if participant is None or participant.audio_state == action.audio_state:
        return state
    roster = tuple(
        replace(p, audio_state=action.audio_state)
        if p.participant_id == action.participant_id
        else p
        for p in state.roster
    )
    speaking = state.speaking
    if action.audio_state == AUDIO_OFF:
        speaking = speaking - {action.participant_id}
    return replace(state, roster=roster, speaking=speaking)


def _on_permission_requested(
    state: RoomState, action: PermissionRequested
) -> RoomState:
    participant = state.participant(action.participant_id)
    if participant is not None and participant.is_privileged:
        return state
    if state.audio_permissions.get(action.participant_id) in (
        PERMISSION_PENDING,
        PERMISSION_GRANTED,
    ):
        return state
    if any(r.participant_id == action.participant_id for r in state.pending_requests):
        return state
    permissions = dict(state.audio_permissions)
    permissions[action.participant_id] = PERMISSION_PENDING
    request = PermissionRequest(action.participant_id, action.requested_at)
    return replace(
        state,
        audio_permissions=permissions,
        pending_requests=state.pending_requests + (request,),
    )


def _on_permission_resolved(state: RoomState, action: PermissionResolved) -> RoomState:
    participant = state.participant(action.participant_id)
    if participant is not None and participant.is_privileged:
        return state
    permissions = dict(state.audio_permissions)
    permissions[action.participant_id] = (
        PERMISSION_GRANTED if action.granted else PERMISSION_DENIED
    )
    roster = state.roster
    if action.granted and participant is not None and participant.audio_state == AUDIO_OFF:
        roster = tuple(
            replace(p, audio_state=AUDIO_CONNECTING)
            if p.participant_id == action.participant_id
            else p
            for p in state.roster
        )
    return replace(
        state,
        roster=roster,
        audio_permissions=permissions,
        pending_requests=tuple(
            r for r in state.pending_requests if r.participant_id != action.participant_id
        ),
    )


def _on_permissions_snapshot(
    state: RoomState, action: PermissionsSnapshot
) -> RoomState:
    table = _with_privileged_grants(action.table, state.roster)
    return replace(
        state,
        audio_permissions=table,
        pending_requests=tuple(
            r
            for r in state.pending_requests
            if table.get(r.participant_id) == PERMISSION_PENDING
        ),
    )


def _on_speaking_changed(state: RoomState, action: SpeakingChanged) -> RoomState:
    speaking = frozenset(action.participant_ids) & set(state.participant_ids())
    return replace(state, speaking=speaking)


def _on_reset(state: RoomState, action: Reset) -> RoomState:
    return RoomState()


_TRANSITIONS: Dict[type, Callable[[RoomState, Any], RoomState]] = {
    Joined: _on_joined,
    RosterChanged: _on_roster_changed,
    MessageReceived: _on_message_received,
    ChatHistoryLoaded: _on_chat_history_loaded,
    DocumentChanged: _on_document_changed,
    LocalDocumentEdited: _on_local_document_edited,
    LanguageChanged: _on_language_changed,
    TypingChanged: _on_typing_changed,
    AudioToggled: _on_audio_toggled,
    PermissionRequested: _on_permission_requested,
    PermissionResolved: _on_permission_resolved,
    PermissionsSnapshot: _on_permissions_snapshot,
    SpeakingChanged: _on_speaking_changed,
    Reset: _on_reset,
}


def reduce(state: RoomState, action: Any) -> RoomState:
    """Apply an action to a room state.

    Args:
        state: Current state (never mutated).
        action: One of the action dataclasses in this module.

    Returns:
        The next state. Unknown actions and no-op transitions return ``state``
        itself, so callers can detect "nothing changed" with ``is``.
    """
    transition = _TRANSITIONS.get(type(action))
    if transition is None:
        return state
    return transition(state, action)


class RoomStateStore:
    """Holds the current RoomState and applies actions to it.

    Attributes:
        state: The current RoomState.
    """

    def __init__(self, state: Optional[RoomState] = None):
        self.state = state if state is not None else RoomState()

    def apply(self, action: Any) -> bool:
        """Apply ``action`` and report whether the state changed."""
        new_state = reduce(self.state, action)
        if new_state is self.state:
            return False
        self.state = new_state
        return True
