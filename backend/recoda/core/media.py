"""Live media primitives and the platform interfaces the recorder drives.

Tracks and streams are concrete; device access and encoding are supplied by
the host platform through the ``MediaDevices`` and ``EncoderFactory``
protocols.
"""

import itertools
from typing import Any, Callable, Iterable, List, Optional, Protocol

import numpy as np

from recoda.core.logger import get_logger

logger = get_logger(__name__)

_track_ids = itertools.count(1)


class MediaTrack:
    def __init__(self, kind: str, label: str = ""):
        self.kind = kind
        self.label = label
        self.id = f"{kind}-{next(_track_ids)}"
        self.ready_state = "live"
        self._ended_listeners: List[Callable[[], None]] = []
        self._sinks: List[Callable[[Any], None]] = []

    @property
    def live(self) -> bool:
        return self.ready_state == "live"

    def stop(self):
        """Stop the track. Does not notify ended listeners."""
        self.ready_state = "ended"
        self._sinks.clear()

    def end(self):
        """The source went away outside our control (e.g. capture revoked)."""
        if not self.live:
            return
        self.ready_state = "ended"
        self._sinks.clear()
        for listener in list(self._ended_listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Ended listener failed on {self.id}: {e}")

    def on_ended(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._ended_listeners.append(listener)

        def unsubscribe():
            if listener in self._ended_listeners:
                self._ended_listeners.remove(listener)

        return unsubscribe

    def add_sink(self, sink: Callable[[Any], None]) -> Callable[[], None]:
        self._sinks.append(sink)

        def remove():
            if sink in self._sinks:
                self._sinks.remove(sink)

        return remove

    def push(self, data: Any):
        if not self.live:
            return
        for sink in list(self._sinks):
            sink(data)


class AudioTrack(MediaTrack):
    """Audio track carrying float32 sample blocks, mono ``(N,)`` or ``(N, C)``."""

    def __init__(self, label: str = "", sample_rate: int = 48000):
        super().__init__("audio", label)
        self.sample_rate = sample_rate

    def push(self, data: np.ndarray):
        super().push(np.asarray(data, dtype=np.float32))


class VideoTrack(MediaTrack):
    def __init__(self, label: str = ""):
        super().__init__("video", label)


class MediaStream:
    def __init__(self, tracks: Optional[Iterable[MediaTrack]] = None):
        self._tracks: List[MediaTrack] = list(tracks or [])

    def get_tracks(self) -> List[MediaTrack]:
        return list(self._tracks)

    @property
    def video_tracks(self) -> List[MediaTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    @property
    def audio_tracks(self) -> List[MediaTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    def add_track(self, track: MediaTrack):
        self._tracks.append(track)

    def stop(self):
        for track in self._tracks:
            track.stop()


class MediaDevices(Protocol):
    async def get_display_media(self, video: dict, audio: bool) -> MediaStream:
        """Raises PermissionDenied or CaptureAborted when the user declines."""
        ...

    async def get_user_media(self, audio: bool = False, video: Any = False) -> MediaStream:
        """Raises DeviceUnavailable or PermissionDenied on failure."""
        ...


class Encoder(Protocol):
    mime_type: str
    state: str  # "inactive" | "recording" | "paused"
    on_data: Optional[Callable[[bytes], None]]
    on_stop: Optional[Callable[[], None]]

    def start(self) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...


class EncoderFactory(Protocol):
    def is_type_supported(self, mime: str) -> bool: ...

    def create(self, stream: MediaStream, mime_type: str, video_bits_per_second: int) -> Encoder: ...
