"""Local microphone capture and remote audio playback.

The MediaProvider is the seam between the voice mesh and real devices. The
aiortc-backed implementation opens the microphone with ffmpeg through
``MediaPlayer`` and plays remote audio through ``MediaRecorder`` (or discards
it with ``MediaBlackhole`` when no output device is configured).
"""

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Optional

from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from cotog_rtc.config import VoiceSettings
from cotog_rtc.exceptions import MediaAcquisitionError

logger = logging.getLogger(__name__)


class LocalMedia:
    """Tracks captured from the local microphone.

    Args:
        tracks: Captured MediaStreamTracks (audio first).
        on_stop: Called once after the tracks are stopped.
    """

    def __init__(self, tracks: Iterable[Any], on_stop: Optional[Callable[[], None]] = None):
        self.tracks = list(tracks)
        self._on_stop = on_stop
        self.stopped = False

    @property
    def audio_track(self):
        return self.tracks[0] if self.tracks else None

    def stop(self) -> None:
        """Stop every track. Safe to call repeatedly."""
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            track.stop()
        if self._on_stop is not None:
            self._on_stop()
        logger.debug("Local media stopped")


class RemoteMedia:
    """A remote participant's audio track bound to a playback sink."""

    def __init__(self, participant_id: str, track: Any, sink: Any):
        self.participant_id = participant_id
        self.track = track
        self.sink = sink
        self.released = False

    async def start(self) -> None:
        self.sink.addTrack(self.track)
        await self.sink.start()

    async def release(self) -> None:
        """Stop playback. Safe to call repeatedly."""
        if self.released:
            return
        self.released = True
        await self.sink.stop()
        logger.debug(f"Released remote media from {self.participant_id}")


class MediaProvider(ABC):
    """Capability to open the microphone and play remote audio."""

    @abstractmethod
    async def acquire(self, constraints: Dict[str, Any]) -> LocalMedia:
        """Open the local microphone.

        Raises:
            MediaAcquisitionError: If no audio can be captured.
        """

    @abstractmethod
    def create_sink(self, participant_id: str, track: Any) -> RemoteMedia:
        """Bind a remote track to a playback sink (not yet started)."""


class AiortcMediaProvider(MediaProvider):
    """MediaProvider backed by aiortc's ffmpeg media helpers."""

    def __init__(self, settings: Optional[VoiceSettings] = None):
        self.settings = settings or VoiceSettings()

    async def acquire(self, constraints: Dict[str, Any]) -> LocalMedia:
        # ffmpeg capture has no processing switches; constraints are advisory.
        logger.debug(f"Capture constraints: {constraints}")
        loop = asyncio.get_running_loop()
        try:
            player = await loop.run_in_executor(
                None,
                functools.partial(
                    MediaPlayer,
                    self.settings.input_device,
                    format=self.settings.input_format,
                ),
            )
        except Exception as e:
            raise MediaAcquisitionError(
                f"Cannot open microphone {self.settings.input_device!r}: {e}"
            ) from e

        if player.audio is None:
            if player.video is not None:
                player.video.stop()
            raise MediaAcquisitionError(
                f"Input {self.settings.input_device!r} has no audio stream"
            )

        logger.info(f"Microphone opened: {self.settings.input_device}")
        return LocalMedia([player.audio])

    def create_sink(self, participant_id: str, track: Any) -> RemoteMedia:
        if self.settings.output_device:
            sink = MediaRecorder(
                self.settings.output_device, format=self.settings.output_format
            )
        else:
            sink = MediaBlackhole()
        return RemoteMedia(participant_id, track, sink)
