import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from recoda.constants import (
    COUNTDOWN_INTERVAL,
    COUNTDOWN_STEPS,
    FALLBACK_MIME,
    METER_INTERVAL,
    TIMER_INTERVAL,
    WEBCAM_CONSTRAINTS,
)
from recoda.core.audio_processor import AudioGraph, create_analyser, mix_audio_streams
from recoda.core.errors import (
    CaptureAborted,
    CaptureError,
    DeviceUnavailable,
    NoSupportedFormat,
    PermissionDenied,
    RecorderBusy,
)
from recoda.core.events import Observable
from recoda.core.formats import (
    display_constraints,
    format_time,
    negotiate_mime,
    recording_filename,
    video_bitrate,
)
from recoda.core.logger import get_logger
from recoda.core.media import Encoder, EncoderFactory, MediaDevices, MediaStream
from recoda.schemas.events import CountdownTick, Notice, RecordingReady, StateChanged, TimerTick
from recoda.schemas.recording import LocalArtifact
from recoda.schemas.settings import CaptureSettings
from recoda.services.library import RecordingLibrary
from recoda.services.meters import LevelMeter

logger = get_logger(__name__)

DISPLAY_DENIED_MESSAGE = "Screen capture denied. Please allow access to record."


class RecorderState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"


class ElapsedTimer:
    """Whole-second counter that only advances while ``is_running()`` holds."""

    def __init__(self, is_running: Callable[[], bool], on_tick: Callable[[int], None], interval: float = TIMER_INTERVAL):
        self.is_running = is_running
        self.on_tick = on_tick
        self.interval = interval
        self.seconds = 0
        self._task: Optional[asyncio.Task] = None

    def start(self):
        self.stop()
        self.seconds = 0
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    def tick(self):
        if self.is_running():
            self.seconds += 1
            self.on_tick(self.seconds)

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None


@dataclass
class CaptureSession:
    """Everything one idle -> recording -> idle cycle acquires. Never reused."""

    settings: CaptureSettings
    screen: Optional[MediaStream] = None
    mic: Optional[MediaStream] = None
    webcam: Optional[MediaStream] = None
    combined: Optional[MediaStream] = None
    encoder: Optional[Encoder] = None
    chunks: List[bytes] = field(default_factory=list)
    unsubscribers: List[Callable[[], None]] = field(default_factory=list)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())
    display_acquired: bool = False
    started: bool = False
    finalized: bool = False
    released: bool = False
    background: List[asyncio.Task] = field(default_factory=list)

    def on_chunk(self, chunk: bytes):
        if chunk:
            self.chunks.append(chunk)


class ScreenRecorder:
    """Capture state machine: idle -> recording <-> paused -> idle.

    Every resource a session acquires is released exactly once, whether the
    session ends by ``stop()``, by the display track ending underneath us, or
    by a failed start. State changes, countdown ticks, timer ticks, notices,
    level samples and finished recordings are published through
    ``subscribe``.
    """

    def __init__(
        self,
        devices: MediaDevices,
        encoders: EncoderFactory,
        library: RecordingLibrary,
        settings: Optional[CaptureSettings] = None,
        graph_factory: Callable[[], AudioGraph] = AudioGraph,
        clock: Callable[[], datetime] = lambda: datetime.now().astimezone(),
        countdown_steps: int = COUNTDOWN_STEPS,
        countdown_interval: float = COUNTDOWN_INTERVAL,
        timer_interval: float = TIMER_INTERVAL,
        meter_interval: float = METER_INTERVAL,
    ):
        self.devices = devices
        self.encoders = encoders
        self.library = library
        self.settings = settings or CaptureSettings()
        self.graph_factory = graph_factory
        self.clock = clock
        self.countdown_steps = countdown_steps
        self.countdown_interval = countdown_interval

        self.events: Observable = Observable()
        self.meter = LevelMeter(meter_interval)
        self.meter.samples.subscribe(self.events.emit)
        self.timer = ElapsedTimer(
            lambda: self._state is RecorderState.RECORDING, self._on_tick, timer_interval
        )
        self.audio_graph: Optional[AudioGraph] = None
        self.preview_stream: Optional[MediaStream] = None
        self._state = RecorderState.IDLE
        self._session: Optional[CaptureSession] = None

    @property
    def state(self) -> RecorderState:
        return self._state

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def mime(self) -> str:
        if self._session and self._session.encoder:
            return self._session.encoder.mime_type
        return ""

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        return self.events.subscribe(callback)

    def _set_state(self, state: RecorderState):
        prev = self._state
        if prev is state:
            return
        self._state = state
        logger.info(f"Recorder {prev.value} -> {state.value}")
        self.events.emit(StateChanged(state=state.value, prev=prev.value))

    def _notify(self, message: str, level: str = "info"):
        self.events.emit(Notice(level=level, message=message))

    def _on_tick(self, seconds: int):
        self.events.emit(TimerTick(elapsed=seconds, display=format_time(seconds)))

    def update_settings(self, settings: CaptureSettings):
        if self._session is not None:
            raise RecorderBusy("Settings are locked while recording")
        self.settings = settings

    async def set_webcam(self, enabled: bool):
        """Toggle the webcam overlay; applies immediately to a running session."""
        self.settings = self.settings.model_copy(update={"webcam_enabled": enabled})
        session = self._session
        if session is None or not session.started:
            return
        if enabled and session.webcam is None:
            await self._open_webcam(session)
        elif not enabled:
            self._close_webcam(session)

    def _get_audio_graph(self) -> AudioGraph:
        if self.audio_graph is None:
            self.audio_graph = self.graph_factory()
        return self.audio_graph

    def _close_audio_graph(self):
        if self.audio_graph is not None:
            self.audio_graph.close()
            self.audio_graph = None

    async def start(self) -> bool:
        """Start a session. Returns False, touching nothing, unless idle."""
        if self._state is not RecorderState.IDLE or self._session is not None:
            logger.warning(f"Start ignored while {self._state.value}")
            return False

        session = CaptureSession(settings=self.settings.model_copy())
        self._session = session
        try:
            await self._start_session(session)
        except asyncio.CancelledError:
            self._abandon(session)
            raise
        except Exception as e:
            self._abandon(session)
            error = self._classify(session, e)
            self._notify(str(error), "error")
            logger.error(f"Recording failed to start: {e}")
            if error is e:
                raise
            raise error from e
        return True

    async def _start_session(self, session: CaptureSession):
        settings = session.settings
        request_system_audio = settings.audio_source in ("system", "both")

        session.screen = await self.devices.get_display_media(
            video=display_constraints(settings.quality), audio=request_system_audio
        )
        session.display_acquired = True
        self._check_cancelled(session)

        video_tracks = session.screen.video_tracks
        if not video_tracks:
            raise CaptureError("Display capture returned no video track")
        session.unsubscribers.append(
            video_tracks[0].on_ended(lambda: self._on_display_ended(session))
        )
        self.preview_stream = session.screen

        if settings.audio_source in ("mic", "both"):
            session.mic = await self._acquire_mic()
            self._check_cancelled(session)

        tracks = list(video_tracks) + self._resolve_audio(session)
        session.combined = MediaStream(tracks)

        mime = negotiate_mime(settings.output_format, self.encoders.is_type_supported)
        if not mime:
            raise NoSupportedFormat("No supported recording format (video/webm or video/mp4)")
        session.encoder = self.encoders.create(
            session.combined, mime_type=mime, video_bits_per_second=video_bitrate(settings.quality)
        )
        session.encoder.on_data = session.on_chunk
        session.encoder.on_stop = lambda: self._finalize(session)

        await self._countdown(session)

        session.encoder.start()
        session.started = True

        if settings.webcam_enabled:
            await self._open_webcam(session)
            if session.finalized or self._session is not session:
                # Stopped while the webcam prompt was open
                return

        self._set_state(RecorderState.RECORDING)
        self.timer.start()
        self._notify("Recording started", "success")

    def _resolve_audio(self, session: CaptureSession) -> list:
        """Pick the encoder's audio tracks and start the meters on matching taps."""
        source = session.settings.audio_source
        system_audio = session.screen.audio_tracks
        has_system = bool(system_audio)
        has_mic = session.mic is not None
        mic_tap = system_tap = None
        tracks = []

        if has_system and has_mic and source == "both":
            graph = self._get_audio_graph()
            system_stream = MediaStream(system_audio)
            tracks.extend(mix_audio_streams(graph, system_stream, session.mic))
            system_tap = create_analyser(graph, system_stream)
            mic_tap = create_analyser(graph, session.mic)
        elif has_system and source in ("system", "both"):
            tracks.extend(system_audio)
            system_tap = create_analyser(self._get_audio_graph(), MediaStream(system_audio))
        elif has_mic:
            tracks.extend(session.mic.audio_tracks)
            mic_tap = create_analyser(self._get_audio_graph(), session.mic)

        self.meter.start(mic=mic_tap, system=system_tap)
        return tracks

    async def _acquire_mic(self) -> Optional[MediaStream]:
        try:
            return await self.devices.get_user_media(audio=True)
        except (DeviceUnavailable, PermissionDenied) as e:
            logger.warning(f"Microphone unavailable: {e}")
            self._notify("Microphone denied — recording without mic.")
            return None

    async def _open_webcam(self, session: CaptureSession):
        try:
            session.webcam = await self.devices.get_user_media(video=dict(WEBCAM_CONSTRAINTS))
        except (DeviceUnavailable, PermissionDenied) as e:
            logger.warning(f"Webcam unavailable: {e}")
            self._notify("Webcam not available.")
            return
        if session.released:
            # Session ended while the webcam prompt was open
            session.webcam.stop()
            session.webcam = None

    def _close_webcam(self, session: CaptureSession):
        if session.webcam is not None:
            session.webcam.stop()
            session.webcam = None

    async def _countdown(self, session: CaptureSession):
        """3, 2, 1 before encoding starts; aborted only by tearing the session down."""
        for remaining in range(self.countdown_steps, 0, -1):
            self._check_cancelled(session)
            self.events.emit(CountdownTick(remaining=remaining))
            try:
                await asyncio.wait_for(session.cancelled.wait(), timeout=self.countdown_interval)
            except asyncio.TimeoutError:
                continue
        self._check_cancelled(session)
        self.events.emit(CountdownTick(remaining=0))

    @staticmethod
    def _check_cancelled(session: CaptureSession):
        if session.cancelled.is_set():
            raise CaptureAborted("Recording cancelled before it started")

    def toggle_pause(self) -> RecorderState:
        session = self._session
        if session is None or session.encoder is None or not session.started:
            return self._state
        if self._state is RecorderState.RECORDING:
            session.encoder.pause()
            self._set_state(RecorderState.PAUSED)
        elif self._state is RecorderState.PAUSED:
            session.encoder.resume()
            self._set_state(RecorderState.RECORDING)
        return self._state

    async def abort(self):
        """Tear down a session that has not started encoding yet."""
        session = self._session
        if session is not None and not session.started:
            session.cancelled.set()

    async def stop(self) -> Optional[LocalArtifact]:
        """Stop and return the finished artifact (None when nothing was recording)."""
        session = self._session
        if session is None:
            return None
        if not session.started:
            session.cancelled.set()
            return None

        encoder = session.encoder
        if encoder.state != "inactive":
            encoder.stop()
        elif not session.finalized:
            self._finalize(session)
        self.timer.stop()
        self._set_state(RecorderState.IDLE)
        return await asyncio.shield(session.done)

    def _on_display_ended(self, session: CaptureSession):
        if session is not self._session:
            return
        logger.info("Display capture ended outside the app")
        if not session.started:
            session.cancelled.set()
            return
        if not session.finalized:
            session.background.append(asyncio.get_running_loop().create_task(self.stop()))

    def _finalize(self, session: CaptureSession):
        """Encoder stop callback: assemble the artifact, exactly once per session."""
        if session.finalized:
            return
        session.finalized = True
        self.timer.stop()
        self._set_state(RecorderState.IDLE)

        mime = (session.encoder.mime_type if session.encoder else "") or FALLBACK_MIME
        now = self.clock()
        artifact = LocalArtifact(
            blob=b"".join(session.chunks),
            filename=recording_filename(now, mime),
            duration=self.timer.seconds,
            mime=mime,
            ts=now,
        )
        self._release(session)
        if self._session is session:
            self._session = None
        session.background.append(
            asyncio.get_running_loop().create_task(self._persist(session, artifact))
        )

    async def _persist(self, session: CaptureSession, artifact: LocalArtifact):
        try:
            artifact = await self.library.add(artifact)
            self.library.set_preview(artifact)
            self.events.emit(
                RecordingReady(
                    id=artifact.id,
                    filename=artifact.filename,
                    duration=artifact.duration,
                    url=artifact.handle.url if artifact.handle else None,
                    saved=artifact.saved,
                )
            )
            if artifact.saved:
                self._notify("Recording ready — play above or download from the list", "success")
            else:
                self._notify("Warning: recording not saved to local storage", "error")
        except Exception as e:
            logger.error(f"Failed to hand over recording {artifact.filename}: {e}")
            self._notify(f"Error: {e}", "error")
        finally:
            if not session.done.done():
                session.done.set_result(artifact)

    def _release(self, session: CaptureSession):
        if session.released:
            return
        session.released = True
        self.meter.stop()
        for unsubscribe in session.unsubscribers:
            unsubscribe()
        session.unsubscribers.clear()
        for stream in (session.screen, session.mic):
            if stream is not None:
                stream.stop()
        self._close_webcam(session)
        session.combined = None
        self.preview_stream = None
        self._close_audio_graph()
        logger.debug("Capture resources released")

    def _abandon(self, session: CaptureSession):
        """Failed or cancelled start: release everything, stay idle."""
        if session.encoder is not None:
            session.encoder.on_stop = None
            if session.encoder.state != "inactive":
                session.encoder.stop()
        self.timer.stop()
        self._release(session)
        session.finalized = True
        if not session.done.done():
            session.done.set_result(None)
        if self._session is session:
            self._session = None
        self._set_state(RecorderState.IDLE)

    @staticmethod
    def _classify(session: CaptureSession, error: Exception) -> CaptureError:
        if isinstance(error, (PermissionDenied, CaptureAborted)) and not session.display_acquired:
            return type(error)(DISPLAY_DENIED_MESSAGE)
        if isinstance(error, CaptureError):
            return error
        return CaptureError(f"Error: {error}")
