import asyncio
from typing import Optional

from recoda.constants import METER_INTERVAL
from recoda.core.audio_processor import AnalyserNode, level_to_db
from recoda.core.events import Observable
from recoda.core.logger import get_logger
from recoda.schemas.events import LevelSample

logger = get_logger(__name__)


class LevelMeter:
    """Free-running sampler over the session's level taps.

    Runs independently of the recorder's elapsed timer and must be stopped
    when the session ends so it never samples disconnected taps.
    """

    def __init__(self, interval: float = METER_INTERVAL):
        self.interval = interval
        self.samples: Observable[LevelSample] = Observable()
        self.mic: Optional[AnalyserNode] = None
        self.system: Optional[AnalyserNode] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, mic: Optional[AnalyserNode] = None, system: Optional[AnalyserNode] = None):
        self.stop()
        self.mic = mic
        self.system = system
        if mic is None and system is None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def sample(self) -> LevelSample:
        mic = self.mic.level() if self.mic is not None else None
        system = self.system.level() if self.system is not None else None
        return LevelSample(
            mic=mic,
            system=system,
            mic_db=level_to_db(mic) if mic is not None else None,
            system_db=level_to_db(system) if system is not None else None,
        )

    async def _run(self):
        while True:
            self.samples.emit(self.sample())
            await asyncio.sleep(self.interval)

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self.mic is not None or self.system is not None:
            self.mic = None
            self.system = None
            self.samples.emit(LevelSample())
