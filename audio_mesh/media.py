"""Local audio track ownership, muting, capture and remote playback.

aiortc tracks have no ``enabled`` switch, so the mute gate wraps the captured
track in :class:`GatedAudioTrack`, which keeps the frame cadence and replaces
samples with silence while disabled. Muting therefore never touches any
session or triggers renegotiation.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

logger = logging.getLogger(__name__)


def silence_like(frame: av.AudioFrame) -> av.AudioFrame:
    """Return a silent frame with the same shape and timing as ``frame``."""
    silent = av.AudioFrame(
        format=frame.format.name, layout=frame.layout.name, samples=frame.samples
    )
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base
    return silent


class GatedAudioTrack(MediaStreamTrack):
    """Pass-through audio track that emits silence while disabled."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, enabled: bool = False):
        super().__init__()
        self._source = source
        self.enabled = enabled

    @property
    def source(self) -> MediaStreamTrack:
        return self._source

    async def recv(self):  # type: ignore[override]
        frame = await self._source.recv()
        if self.enabled or not isinstance(frame, av.AudioFrame):
            return frame
        return silence_like(frame)

    def stop(self) -> None:  # type: ignore[override]
        self._source.stop()
        super().stop()


class MuteGate:
    """Owns the single outbound audio track and its enabled state.

    Sessions only ever hold weak references to :attr:`track`.
    """

    def __init__(self):
        self._track: Optional[GatedAudioTrack] = None
        self._enabled = False

    @property
    def track(self) -> Optional[GatedAudioTrack]:
        return self._track

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_source(self, source: MediaStreamTrack) -> GatedAudioTrack:
        """Install a newly captured track. New tracks always start muted.

        Any previous track is stopped.
        """
        if source.kind != "audio":
            raise ValueError(f"Expected an audio track, got {source.kind}")
        previous = self._track
        self._enabled = False
        self._track = GatedAudioTrack(source, enabled=False)
        if previous is not None:
            previous.stop()
        logger.info(f"Local audio track ready (enabled: {self._enabled})")
        return self._track

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = bool(enabled)
        if self._track is not None:
            self._track.enabled = self._enabled
        else:
            logger.warning("No local audio track to toggle")
        logger.info(f"Local audio {'enabled' if self._enabled else 'muted'}")

    def stop(self) -> None:
        if self._track is not None:
            self._track.stop()
            self._track = None


def open_microphone(
    device: Optional[str] = None, fmt: Optional[str] = None
) -> Tuple[MediaPlayer, str]:
    """Open a microphone capture player.

    With an explicit device both ``device`` and ``fmt`` are used as given;
    otherwise PulseAudio then ALSA defaults are tried.

    Returns:
        The player and the backend format used.

    Raises:
        RuntimeError: If no capture backend could be opened.
    """
    candidates = [(device, fmt)] if device else [("default", "pulse"), ("default", "alsa")]
    errors = []
    for name, backend in candidates:
        try:
            player = MediaPlayer(name, format=backend)
        except Exception as e:
            errors.append(f"{backend}:{name}: {e}")
            continue
        if player.audio is None:
            errors.append(f"{backend}:{name}: no audio stream")
            continue
        logger.info(f"Capturing microphone from {backend}:{name}")
        return player, backend or "auto"

    raise RuntimeError(f"Could not open a microphone ({'; '.join(errors)})")


@dataclass
class RemoteAudioSink:
    """Plays one remote audio track, falling back to discarding it."""

    remote_id: str
    _recorder: Any = None

    async def start(self, track: MediaStreamTrack) -> None:
        if self._recorder is not None:
            return

        sink = "blackhole"
        recorder: Any = None
        for backend in ("pulse", "alsa"):
            try:
                recorder = MediaRecorder("default", format=backend)
                sink = f"{backend}:default"
                break
            except Exception as e:
                logger.debug(f"Playback via {backend} unavailable: {e}")
        if recorder is None:
            recorder = MediaBlackhole()

        recorder.addTrack(track)
        await recorder.start()
        self._recorder = recorder
        logger.info(f"Playing audio from {self.remote_id} via {sink}")

    async def stop(self) -> None:
        recorder, self._recorder = self._recorder, None
        if recorder is None:
            return
        try:
            await recorder.stop()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Error stopping playback for {self.remote_id}: {e}")
