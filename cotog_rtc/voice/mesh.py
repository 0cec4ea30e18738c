"""Full-mesh voice links, one PeerConnectionAdapter per remote participant.

Negotiation roles:
- The member already in voice initiates toward a newcomer: it attaches the
  local tracks, creates an offer and sends it.
- The newcomer responds: it applies the offer, answers and replies. A
  responder link may also be created ahead of time with add_remote; it then
  waits for the offer and is reused when it arrives.

Candidates that arrive before the remote description are buffered on the
link (or, before any link exists, per participant) and flushed once the
description is applied. If both sides offered at once, the side with the
lexicographically smaller participant id keeps its offer and the other side
drops its link and answers.
"""

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pyee.asyncio import AsyncIOEventEmitter

from cotog_rtc.exceptions import PeerNegotiationError
from cotog_rtc.protocol import SIGNAL_ANSWER, SIGNAL_ICE, SIGNAL_OFFER
from cotog_rtc.session.timers import TaskSlot
from cotog_rtc.voice.media import LocalMedia, MediaProvider, RemoteMedia
from cotog_rtc.voice.peer import PeerConnectionAdapter

logger = logging.getLogger(__name__)

# Local role on a link
ROLE_INITIATOR = "initiator"
ROLE_RESPONDER = "responder"

# Link states reported through link_state_changed
LINK_CONNECTING = "connecting"
LINK_CONNECTED = "connected"
LINK_FAILED = "failed"
LINK_CLOSED = "closed"

# Negotiation progress
NEGOTIATION_NEW = "new"
NEGOTIATION_HAVE_LOCAL_OFFER = "have-local-offer"
NEGOTIATION_HAVE_REMOTE_OFFER = "have-remote-offer"
NEGOTIATION_STABLE = "stable"
NEGOTIATION_CONNECTED = "connected"

SendSignal = Callable[[str, str, Any], Awaitable[bool]]


@dataclass
class PeerLink:
    remote_participant_id: str
    local_role: str
    adapter: PeerConnectionAdapter
    negotiation_state: str = NEGOTIATION_NEW
    state: str = LINK_CONNECTING
    pending_candidates: List[Dict[str, Any]] = field(default_factory=list)
    remote_media: Optional[RemoteMedia] = None
    deadline: TaskSlot = field(init=False)

    def __post_init__(self):
        self.deadline = TaskSlot(f"negotiation:{self.remote_participant_id}")


class PeerMeshManager(AsyncIOEventEmitter):
    """Owns every PeerLink of the local participant.

    Events:
        remote_media(participant_id, media): Remote audio is playing.
        link_state_changed(participant_id, state): "connecting", "connected",
            "failed" or "closed".

    Args:
        factory: Creates a PeerConnectionAdapter per remote.
        media_provider: Creates playback sinks for remote tracks.
        send_signal: ``await send_signal(participant_id, kind, payload)``.
        local_id: Local participant id, used for the glare tie-break.
        negotiation_timeout: Seconds a link may take to reach connected.
        ice_servers: ICE servers passed to the factory.
        admit: Predicate deciding whether an offer from a participant is
            answered. Defaults to accepting everyone.
    """

    def __init__(
        self,
        factory,
        media_provider: MediaProvider,
        send_signal: SendSignal,
        local_id: Optional[str] = None,
        negotiation_timeout: float = 15.0,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        admit: Optional[Callable[[str], bool]] = None,
    ):
        super().__init__()
        self._factory = factory
        self._media_provider = media_provider
        self._send_signal = send_signal
        self.local_id = local_id
        self.negotiation_timeout = negotiation_timeout
        self.ice_servers = ice_servers
        self._admit = admit
        self.local_media: Optional[LocalMedia] = None
        self.links: Dict[str, PeerLink] = {}
        self._early_candidates: Dict[str, List[Dict[str, Any]]] = {}

    def set_local_media(self, media: Optional[LocalMedia]) -> None:
        self.local_media = media

    def _is_current(self, link: PeerLink) -> bool:
        return self.links.get(link.remote_participant_id) is link

    def _create_link(self, participant_id: str, role: str) -> PeerLink:
        adapter = self._factory.create(participant_id, self.ice_servers)
        link = PeerLink(participant_id, role, adapter)
        self.links[participant_id] = link

        adapter.on("icecandidate", functools.partial(self._on_local_candidate, link))
        adapter.on("track", functools.partial(self._on_remote_track, link))
        adapter.on(
            "connectionstatechange", functools.partial(self._on_connection_state, link)
        )
        adapter.add_local_media(self.local_media)

        link.deadline.schedule(self.negotiation_timeout, self._on_negotiation_timeout, link)
        logger.info(f"Created {role} link to {participant_id}")
        self._set_link_state(link, LINK_CONNECTING)
        return link

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    async def add_remote(
        self, participant_id: str, role: str = ROLE_INITIATOR
    ) -> Optional[PeerLink]:
        """Create the link to a participant, offering if we initiate.

        Returns the existing link if there already is one, or None when no
        link can be created (no local media, or the remote is ourselves).
        """
        if participant_id == self.local_id:
            return None
        existing = self.links.get(participant_id)
        if existing is not None:
            return existing
        if self.local_media is None:
            logger.warning(f"Cannot link to {participant_id}: voice is not enabled")
            return None

        link = self._create_link(participant_id, role)
        if role != ROLE_INITIATOR:
            link.pending_candidates.extend(self._early_candidates.pop(participant_id, []))
            return link

        try:
            offer = await link.adapter.create_offer()
            if not self._is_current(link):
                return None
            link.negotiation_state = NEGOTIATION_HAVE_LOCAL_OFFER
            await self._send_signal(participant_id, SIGNAL_OFFER, offer)
        except Exception as e:
            await self._fail_link(link, e)
            return None
        return link

    async def remove_remote(self, participant_id: str) -> None:
        """Close the link to a participant. Safe to call repeatedly."""
        self._early_candidates.pop(participant_id, None)
        link = self.links.get(participant_id)
        if link is not None:
            await self._close_link(link, LINK_CLOSED)

    async def close_all(self) -> None:
        """Close every link and drop all buffered signaling state."""
        for link in list(self.links.values()):
            await self._close_link(link, LINK_CLOSED)
        self._early_candidates.clear()

    async def handle_signal(self, participant_id: str, kind: str, payload: Any) -> None:
        """Apply an offer, answer or candidate received from a participant."""
        if kind == SIGNAL_OFFER:
            await self._handle_offer(participant_id, payload)
        elif kind == SIGNAL_ANSWER:
            await self._handle_answer(participant_id, payload)
        elif kind == SIGNAL_ICE:
            await self._handle_candidate(participant_id, payload)
        else:
            logger.warning(f"Unknown signal kind from {participant_id}: {kind}")

    # -------------------------------------------------------------------------
    # Signaling
    # -------------------------------------------------------------------------

    async def _handle_offer(self, participant_id: str, offer: Dict[str, str]) -> None:
        if self.local_media is None:
            logger.debug(f"Ignoring offer from {participant_id}: voice is not enabled")
            return

        carried: List[Dict[str, Any]] = []
        link = self.links.get(participant_id)
        awaiting = (
            link is not None
            and link.local_role == ROLE_RESPONDER
            and link.negotiation_state == NEGOTIATION_NEW
        )
        if link is not None and not awaiting:
            if link.negotiation_state != NEGOTIATION_HAVE_LOCAL_OFFER:
                logger.warning(
                    f"Ignoring offer from {participant_id}: renegotiation is not supported"
                )
                return
            if self.local_id is not None and self.local_id < participant_id:
                logger.info(f"Offer collision with {participant_id}: keeping ours")
                return
            logger.info(f"Offer collision with {participant_id}: answering theirs")
            carried = list(link.pending_candidates)
            await self._close_link(link, LINK_CLOSED, notify=False)

        if self._admit is not None and not self._admit(participant_id):
            logger.warning(f"Ignoring offer from {participant_id}: not permitted")
            if awaiting:
                await self._close_link(link, LINK_CLOSED)
            return

        if not awaiting:
            link = self._create_link(participant_id, ROLE_RESPONDER)
            link.pending_candidates.extend(carried)
        link.pending_candidates.extend(self._early_candidates.pop(participant_id, []))
        link.negotiation_state = NEGOTIATION_HAVE_REMOTE_OFFER
        try:
            await link.adapter.set_remote_description(offer)
            if not self._is_current(link):
                return
            await self._flush_candidates(link)

            answer = await link.adapter.create_answer()
            if not self._is_current(link):
                return
            link.negotiation_state = NEGOTIATION_STABLE
            await self._send_signal(participant_id, SIGNAL_ANSWER, answer)
        except Exception as e:
            await self._fail_link(link, e)

    async def _handle_answer(self, participant_id: str, answer: Dict[str, str]) -> None:
        link = self.links.get(participant_id)
        if link is None or link.negotiation_state != NEGOTIATION_HAVE_LOCAL_OFFER:
            logger.warning(f"Ignoring unexpected answer from {participant_id}")
            return
        try:
            await link.adapter.set_remote_description(answer)
            if not self._is_current(link):
                return
            link.negotiation_state = NEGOTIATION_STABLE
            await self._flush_candidates(link)
        except Exception as e:
            await self._fail_link(link, e)

    async def _handle_candidate(
        self, participant_id: str, candidate: Dict[str, Any]
    ) -> None:
        link = self.links.get(participant_id)
        if link is None:
            self._early_candidates.setdefault(participant_id, []).append(candidate)
            return
        if not link.adapter.has_remote_description:
            link.pending_candidates.append(candidate)
            return
        await self._apply_candidate(link, candidate)

    async def _flush_candidates(self, link: PeerLink) -> None:
        pending, link.pending_candidates = link.pending_candidates, []
        if pending:
            logger.debug(
                f"Applying {len(pending)} buffered candidates from "
                f"{link.remote_participant_id}"
            )
        for candidate in pending:
            if not self._is_current(link):
                return
            await self._apply_candidate(link, candidate)

    async def _apply_candidate(self, link: PeerLink, candidate: Dict[str, Any]) -> None:
        try:
            await link.adapter.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning(
                f"Failed to add candidate from {link.remote_participant_id}: {e}"
            )

    # -------------------------------------------------------------------------
    # Adapter events
    # -------------------------------------------------------------------------

    async def _on_local_candidate(self, link: PeerLink, candidate: Dict[str, Any]) -> None:
        if self._is_current(link):
            await self._send_signal(link.remote_participant_id, SIGNAL_ICE, candidate)

    async def _on_remote_track(self, link: PeerLink, track: Any) -> None:
        if not self._is_current(link):
            return
        participant_id = link.remote_participant_id
        previous, link.remote_media = link.remote_media, None
        if previous is not None:
            await previous.release()
            if not self._is_current(link):
                return
        media = self._media_provider.create_sink(participant_id, track)
        link.remote_media = media
        await media.start()
        logger.info(f"Playing remote audio from {participant_id}")
        self.emit("remote_media", participant_id, media)

    async def _on_connection_state(self, link: PeerLink, state: str) -> None:
        if not self._is_current(link):
            return
        if state == "connected":
            link.deadline.cancel()
            link.negotiation_state = NEGOTIATION_CONNECTED
            self._set_link_state(link, LINK_CONNECTED)
        elif state == "failed":
            await self._fail_link(
                link, PeerNegotiationError(link.remote_participant_id, "transport failed")
            )
        elif state == "closed":
            await self._close_link(link, LINK_CLOSED)

    async def _on_negotiation_timeout(self, link: PeerLink) -> None:
        if not self._is_current(link) or link.state == LINK_CONNECTED:
            return
        await self._fail_link(
            link,
            PeerNegotiationError(
                link.remote_participant_id,
                f"not connected within {self.negotiation_timeout}s",
            ),
        )

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def _fail_link(self, link: PeerLink, error: Exception) -> None:
        logger.warning(f"Link to {link.remote_participant_id} failed: {error}")
        await self._close_link(link, LINK_FAILED)

    async def _close_link(self, link: PeerLink, final_state: str, notify: bool = True) -> None:
        if not self._is_current(link):
            return
        participant_id = link.remote_participant_id
        del self.links[participant_id]
        link.deadline.cancel()
        link.pending_candidates = []

        media, link.remote_media = link.remote_media, None
        if media is not None:
            await media.release()
        await link.adapter.close()

        logger.info(f"Closed link to {participant_id} ({final_state})")
        if notify:
            self._set_link_state(link, final_state)
        else:
            link.state = final_state

    def _set_link_state(self, link: PeerLink, state: str) -> None:
        link.state = state
        self.emit("link_state_changed", link.remote_participant_id, state)
