"""Audio permission workflow.

Members ask for voice access; the owner or a moderator grants or denies it.
Owners and moderators never go through the workflow: they are always granted.
All state lives in the session's RoomState permission table so that a roster
change or a relay snapshot keeps it consistent without extra bookkeeping.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pyee.asyncio import AsyncIOEventEmitter

from cotog_rtc.protocol import (
    MSG_AUDIO_PERMISSION_REQUEST,
    MSG_AUDIO_PERMISSION_RESPONSE,
    PRIVILEGED_ROLES,
)
from cotog_rtc.session.state import (
    PERMISSION_DENIED,
    PERMISSION_GRANTED,
    PERMISSION_PENDING,
    PermissionRequested,
    PermissionResolved,
    PermissionsSnapshot,
    RoomState,
)

logger = logging.getLogger(__name__)


class PermissionStatus(str, Enum):
    UNREQUESTED = "unrequested"
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


_TABLE_STATUS = {
    PERMISSION_PENDING: PermissionStatus.PENDING,
    PERMISSION_GRANTED: PermissionStatus.GRANTED,
    PERMISSION_DENIED: PermissionStatus.DENIED,
}


def permission_status(state: RoomState, participant_id: str) -> PermissionStatus:
    """Read a participant's audio permission out of a RoomState."""
    participant = state.participant(participant_id)
    if participant is not None and participant.is_privileged:
        return PermissionStatus.GRANTED
    return _TABLE_STATUS.get(
        state.audio_permissions.get(participant_id), PermissionStatus.UNREQUESTED
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AudioPermissionWorkflow(AsyncIOEventEmitter):
    """Request/resolve flow for voice access, bound to one session.

    Events:
        requested(participant_id): A new pending request appeared.
        granted(participant_id): A participant's status became GRANTED.
        denied(participant_id): A participant's status became DENIED.

    Args:
        session: The owning SessionConnectionManager.
    """

    def __init__(self, session):
        super().__init__()
        self._session = session

    def status(self, participant_id: Optional[str] = None) -> PermissionStatus:
        """Status of ``participant_id`` (the local participant by default)."""
        session = self._session
        participant_id = participant_id or session.participant_id
        if participant_id is None:
            return PermissionStatus.UNREQUESTED
        if participant_id == session.participant_id and session.role in PRIVILEGED_ROLES:
            return PermissionStatus.GRANTED
        return permission_status(session.state, participant_id)

    async def request(self) -> bool:
        """Ask the room's owner/moderators for voice access.

        Returns:
            True if the local participant is privileged or a request was sent.
            False if not joined, a request is already pending, access is
            already granted, or sending failed.
        """
        session = self._session
        if not session.is_joined:
            return False
        if session.role in PRIVILEGED_ROLES:
            return True

        participant_id = session.participant_id
        current = self.status(participant_id)
        if current in (PermissionStatus.PENDING, PermissionStatus.GRANTED):
            logger.debug(f"Audio permission already {current.value}")
            return False

        previous = dict(session.state.audio_permissions)
        session.dispatch(PermissionRequested(participant_id, _now()))
        if not await session.send(MSG_AUDIO_PERMISSION_REQUEST):
            session.dispatch(PermissionsSnapshot(previous))
            return False
        logger.info("Requested audio permission")
        return True

    async def resolve(self, participant_id: str, granted: bool) -> bool:
        """Grant or deny a participant's request. Owner and moderators only.

        Returns:
            True if the response was sent.
        """
        session = self._session
        if not session.is_joined:
            return False
        if session.role not in PRIVILEGED_ROLES:
            logger.warning("Only the owner or a moderator can resolve audio requests")
            return False
        target = session.state.participant(participant_id)
        if target is not None and target.is_privileged:
            return False

        sent = await session.send(
            MSG_AUDIO_PERMISSION_RESPONSE,
            participantId=participant_id,
            granted=bool(granted),
        )
        if not sent:
            return False
        self._apply_resolution(participant_id, bool(granted))
        return True

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def handle_requested(self, fields: Dict[str, Any]) -> None:
        participant_id = fields["participantId"]
        changed = self._session.dispatch(
            PermissionRequested(participant_id, fields.get("requestedAt") or _now())
        )
        if changed:
            logger.info(f"{participant_id} requested audio permission")
            self.emit("requested", participant_id)

    def handle_resolved(self, fields: Dict[str, Any]) -> None:
        """Apply a resolution broadcast by the relay.

        Only resolutions attributed to a participant the roster shows as the
        owner or a moderator are applied.
        """
        participant_id = fields["participantId"]
        resolver_id = fields.get("resolverId")
        resolver = self._session.state.participant(resolver_id) if resolver_id else None
        if resolver is None or not resolver.is_privileged:
            logger.warning(
                f"Ignoring permission resolution for {participant_id} from "
                f"non-privileged resolver {resolver_id}"
            )
            return
        self._apply_resolution(participant_id, bool(fields["granted"]))

    def handle_snapshot(self, fields: Dict[str, Any]) -> None:
        table = fields["table"]
        state = self._session.state
        ids = set(state.audio_permissions) | set(table)
        before = {pid: self.status(pid) for pid in ids}
        self._session.dispatch(PermissionsSnapshot(dict(table)))
        for pid in sorted(ids):
            self._emit_transition(pid, before[pid], self.status(pid))

    def _apply_resolution(self, participant_id: str, granted: bool) -> None:
        before = self.status(participant_id)
        self._session.dispatch(PermissionResolved(participant_id, granted))
        self._emit_transition(participant_id, before, self.status(participant_id))

    def _emit_transition(
        self, participant_id: str, before: PermissionStatus, after: PermissionStatus
    ) -> None:
        if before == after:
            return
        if after == PermissionStatus.GRANTED:
            logger.info(f"Audio permission granted to {participant_id}")
            self.emit("granted", participant_id)
        elif after == PermissionStatus.DENIED:
            logger.info(f"Audio permission denied to {participant_id}")
            self.emit("denied", participant_id)
