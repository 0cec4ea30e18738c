"""Glue between a room session and its voice mesh.

The VoiceController owns the local microphone and the PeerMeshManager. It
listens to the session (voice peers joining/leaving, departures, inbound
signals, reconnection, session end) and to the permission workflow, and
routes the mesh's outbound signals back through the session's channel.
"""

import asyncio
import logging
from typing import Any, List, Optional

from cotog_rtc.config import VoiceSettings, get_config
from cotog_rtc.exceptions import MediaAcquisitionError
from cotog_rtc.protocol import MSG_VOICE_JOIN, MSG_VOICE_LEAVE, SIGNAL_MESSAGE_TYPES
from cotog_rtc.session.manager import ConnectionState, SessionConnectionManager
from cotog_rtc.session.state import AUDIO_CONNECTING, AUDIO_OFF, AUDIO_ON, AudioToggled
from cotog_rtc.voice.media import AiortcMediaProvider, LocalMedia, MediaProvider
from cotog_rtc.voice.mesh import ROLE_INITIATOR, PeerMeshManager
from cotog_rtc.voice.peer import PeerConnectionFactory
from cotog_rtc.voice.permissions import PermissionStatus, permission_status

logger = logging.getLogger(__name__)


class VoiceController:
    """Voice for one SessionConnectionManager.

    Args:
        session: The room session.
        media_provider: Microphone and playback capability. Defaults to the
            aiortc-backed provider.
        factory: Peer connection factory. Defaults to aiortc adapters.
        settings: Voice settings. Defaults to the loaded configuration.
    """

    def __init__(
        self,
        session: SessionConnectionManager,
        media_provider: Optional[MediaProvider] = None,
        factory: Optional[PeerConnectionFactory] = None,
        settings: Optional[VoiceSettings] = None,
    ):
        self.session = session
        self.settings = settings or get_config().get_voice_settings()
        self.media_provider = media_provider or AiortcMediaProvider(self.settings)
        self.factory = factory or PeerConnectionFactory(self.settings.ice_servers)
        self.mesh = PeerMeshManager(
            self.factory,
            self.media_provider,
            self._send_signal,
            negotiation_timeout=self.settings.negotiation_timeout,
            ice_servers=self.settings.ice_servers,
            admit=self._admits,
        )
        self.local_media: Optional[LocalMedia] = None
        self.enabled = False
        self._enabling = False
        self._rejoin_pending = False

        session.on("voice_peer_joined", self._on_voice_peer_joined)
        session.on("voice_peer_left", self._on_voice_peer_left)
        session.on("participants_departed", self._on_participants_departed)
        session.on("signal", self._on_signal)
        session.on("connection_state_changed", self._on_connection_state_changed)
        session.on("session_ended", self._on_session_ended)
        session.permissions.on("granted", self._on_granted)
        session.permissions.on("denied", self._on_denied)

    def _admits(self, participant_id: str) -> bool:
        return permission_status(self.session.state, participant_id) == PermissionStatus.GRANTED

    def _ice_servers(self) -> List[dict]:
        return self.session.ice_servers or self.settings.ice_servers

    async def _send_signal(self, participant_id: str, kind: str, payload: Any) -> bool:
        return await self.session.send(
            SIGNAL_MESSAGE_TYPES[kind],
            targetParticipantId=participant_id,
            payload=payload,
        )

    async def _acquire_media(self) -> LocalMedia:
        try:
            return await asyncio.wait_for(
                self.media_provider.acquire(self.settings.media_constraints()),
                self.settings.media_timeout,
            )
        except asyncio.TimeoutError as e:
            raise MediaAcquisitionError(
                f"Microphone did not open within {self.settings.media_timeout}s"
            ) from e

    async def enable_voice(self) -> bool:
        """Open the microphone and join the room's voice mesh.

        Requires a GRANTED audio permission. A media failure turns voice off
        again without affecting the session.

        Returns:
            True if voice is enabled.
        """
        if self.enabled:
            return True
        if self._enabling or not self.session.is_joined:
            return False
        if self.session.permissions.status() != PermissionStatus.GRANTED:
            logger.warning("Cannot enable voice without audio permission")
            return False

        participant_id = self.session.participant_id
        self._enabling = True
        self.session.dispatch(AudioToggled(participant_id, AUDIO_CONNECTING))
        try:
            media = await self._acquire_media()
        except MediaAcquisitionError as e:
            logger.error(f"Voice unavailable: {e}")
            self.session.dispatch(AudioToggled(participant_id, AUDIO_OFF))
            return False
        finally:
            self._enabling = False

        if not self.session.is_joined or self.session.participant_id != participant_id:
            # Session went away while the microphone was opening.
            media.stop()
            return False

        self.local_media = media
        self.mesh.local_id = participant_id
        self.mesh.ice_servers = self._ice_servers()
        self.mesh.set_local_media(media)
        self.enabled = True

        await self.session.send(MSG_VOICE_JOIN)
        self.session.dispatch(AudioToggled(participant_id, AUDIO_ON))
        logger.info("Voice enabled")
        return True

    async def disable_voice(self, notify: bool = True) -> None:
        """Leave the voice mesh and release the microphone.

        Args:
            notify: Send voiceLeave to the room.
        """
        if not self.enabled and self.local_media is None:
            return
        self.enabled = False
        self._rejoin_pending = False
        await self.mesh.close_all()
        self.mesh.set_local_media(None)

        media, self.local_media = self.local_media, None
        if media is not None:
            media.stop()

        if notify and self.session.is_joined:
            await self.session.send(MSG_VOICE_LEAVE)
            self.session.dispatch(AudioToggled(self.session.participant_id, AUDIO_OFF))
        logger.info("Voice disabled")

    # -------------------------------------------------------------------------
    # Session events
    # -------------------------------------------------------------------------

    async def _on_voice_peer_joined(self, participant_id: str) -> None:
        if not self.enabled:
            return
        if not self._admits(participant_id):
            logger.warning(f"Not linking to {participant_id}: no audio permission")
            return
        await self.mesh.add_remote(participant_id, ROLE_INITIATOR)

    async def _on_voice_peer_left(self, participant_id: str) -> None:
        await self.mesh.remove_remote(participant_id)

    async def _on_participants_departed(self, participant_ids: List[str]) -> None:
        for participant_id in participant_ids:
            await self.mesh.remove_remote(participant_id)

    async def _on_signal(self, from_id: str, kind: str, payload: Any) -> None:
        if not self.enabled:
            logger.debug(f"Dropping {kind} from {from_id}: voice is not enabled")
            return
        await self.mesh.handle_signal(from_id, kind, payload)

    async def _on_connection_state_changed(self, state: ConnectionState) -> None:
        if not self.enabled:
            return
        if state == ConnectionState.RECONNECTING:
            if not self._rejoin_pending:
                logger.info("Connection lost, closing voice links")
                self._rejoin_pending = True
                await self.mesh.close_all()
        elif state == ConnectionState.JOINED and self._rejoin_pending:
            self._rejoin_pending = False
            if self.session.permissions.status() != PermissionStatus.GRANTED:
                await self.disable_voice(notify=False)
                return
            participant_id = self.session.participant_id
            self.mesh.local_id = participant_id
            self.mesh.ice_servers = self._ice_servers()
            logger.info("Rejoined, announcing voice again")
            await self.session.send(MSG_VOICE_JOIN)
            self.session.dispatch(AudioToggled(participant_id, AUDIO_ON))

    async def _on_session_ended(self, reason: str) -> None:
        await self.disable_voice(notify=False)

    async def _on_granted(self, participant_id: str) -> None:
        if participant_id == self.session.participant_id and not self.enabled:
            await self.enable_voice()

    async def _on_denied(self, participant_id: str) -> None:
        if participant_id == self.session.participant_id and self.enabled:
            await self.disable_voice()
