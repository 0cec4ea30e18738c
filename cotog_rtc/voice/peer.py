"""Peer connection adapter over aiortc.

The mesh talks to remote participants through PeerConnectionAdapter so that
negotiation logic can be exercised without a real ICE/DTLS stack. Session
descriptions and candidates cross this boundary as plain dictionaries, in the
same shape they travel on the wire:

    {"sdp": "...", "type": "offer"}
    {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from cotog_rtc.config import DEFAULT_ICE_SERVERS

logger = logging.getLogger(__name__)

# Keys accepted by RTCIceServer
_ICE_SERVER_KEYS = ("urls", "username", "credential", "credentialType")


class PeerConnectionAdapter(AsyncIOEventEmitter, ABC):
    """One direct media connection to a remote participant.

    Events:
        icecandidate(candidate): Local candidate to trickle to the remote.
        track(track): Remote media track received.
        connectionstatechange(state): "connecting", "connected", "failed"
            or "closed".
    """

    def __init__(self, remote_id: str):
        super().__init__()
        self.remote_id = remote_id

    @property
    @abstractmethod
    def has_remote_description(self) -> bool:
        """Whether a remote description has been applied."""

    @property
    @abstractmethod
    def connection_state(self) -> str:
        """Current transport state."""

    @abstractmethod
    def add_local_media(self, media) -> None:
        """Attach the local tracks to be sent to the remote."""

    @abstractmethod
    async def create_offer(self) -> Dict[str, str]:
        """Create an offer and apply it as the local description."""

    @abstractmethod
    async def create_answer(self) -> Dict[str, str]:
        """Create an answer and apply it as the local description."""

    @abstractmethod
    async def set_remote_description(self, description: Dict[str, str]) -> None:
        """Apply the remote offer or answer."""

    @abstractmethod
    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        """Apply a candidate trickled by the remote."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and stop all transceivers."""


class AiortcPeerConnection(PeerConnectionAdapter):
    """PeerConnectionAdapter backed by ``aiortc.RTCPeerConnection``.

    aiortc gathers candidates while applying the local description and
    embeds them in the SDP, so this adapter never emits ``icecandidate``.
    Remote trickled candidates are still applied.

    Args:
        remote_id: Remote participant id.
        configuration: RTCConfiguration with the ICE servers.
        relay: MediaRelay used to share the one local track between peers.
    """

    def __init__(
        self,
        remote_id: str,
        configuration: Optional[RTCConfiguration] = None,
        relay: Optional[MediaRelay] = None,
    ):
        super().__init__(remote_id)
        self.pc = RTCPeerConnection(configuration=configuration)
        self.relay = relay or MediaRelay()

        @self.pc.on("track")
        def on_track(track):
            logger.info(f"Received {track.kind} track from {self.remote_id}")
            if track.kind == "audio":
                self.emit("track", track)

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            state = self.pc.connectionState
            logger.info(f"Connection state with {self.remote_id}: {state}")
            self.emit("connectionstatechange", state)

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    def add_local_media(self, media) -> None:
        for track in media.tracks:
            self.pc.addTrack(self.relay.subscribe(track))

    async def create_offer(self) -> Dict[str, str]:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return {"sdp": self.pc.localDescription.sdp, "type": self.pc.localDescription.type}

    async def create_answer(self) -> Dict[str, str]:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return {"sdp": self.pc.localDescription.sdp, "type": self.pc.localDescription.type}

    async def set_remote_description(self, description: Dict[str, str]) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        sdp = candidate.get("candidate") or ""
        if not sdp:
            # End-of-candidates marker
            return
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        ice_candidate = candidate_from_sdp(sdp)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        await self.pc.close()


class PeerConnectionFactory:
    """Creates aiortc-backed adapters sharing one MediaRelay.

    Args:
        ice_servers: Default RTCIceServer dictionaries.
    """

    def __init__(self, ice_servers: Optional[List[Dict[str, Any]]] = None):
        self.ice_servers = ice_servers or list(DEFAULT_ICE_SERVERS)
        self.relay = MediaRelay()

    @staticmethod
    def configuration(ice_servers: List[Dict[str, Any]]) -> RTCConfiguration:
        servers = [
            RTCIceServer(**{k: v for k, v in server.items() if k in _ICE_SERVER_KEYS})
            for server in ice_servers
        ]
        return RTCConfiguration(iceServers=servers)

    def create(
        self, remote_id: str, ice_servers: Optional[List[Dict[str, Any]]] = None
    ) -> PeerConnectionAdapter:
        configuration = self.configuration(ice_servers or self.ice_servers)
        return AiortcPeerConnection(remote_id, configuration, self.relay)
