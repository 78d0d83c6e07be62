from math import gcd
from typing import Dict, List, Optional

import numpy as np
import scipy.signal as signal

from recoda.constants import (
    ANALYSER_FFT_SIZE,
    ANALYSER_MAX_DB,
    ANALYSER_MIN_DB,
    ANALYSER_SMOOTHING,
    GRAPH_SAMPLE_RATE,
)
from recoda.core.logger import get_logger
from recoda.core.media import AudioTrack, MediaStream

logger = get_logger(__name__)


def to_stereo(block: np.ndarray) -> np.ndarray:
    """Normalize a sample block to float32 (N, 2)."""
    block = np.asarray(block, dtype=np.float32)
    if block.ndim == 1:
        # Mono input: (N,) -> Expand to (N, 2) by duplication
        return np.column_stack((block, block))
    if block.shape[1] == 1:
        return np.repeat(block, 2, axis=1)
    return block[:, :2]


class AudioNode:
    def __init__(self, graph: "AudioGraph"):
        self.graph = graph
        self._outputs: List["AudioNode"] = []

    def connect(self, node: "AudioNode") -> "AudioNode":
        self._outputs.append(node)
        node._attach(self)
        return node

    def disconnect(self):
        for node in self._outputs:
            node._detach(self)
        self._outputs.clear()

    def _attach(self, source: "AudioNode"):
        pass

    def _detach(self, source: "AudioNode"):
        pass

    def receive(self, source: "AudioNode", block: np.ndarray):
        pass

    def _emit(self, block: np.ndarray):
        for node in list(self._outputs):
            node.receive(self, block)


class MediaStreamSourceNode(AudioNode):
    """Feeds the audio tracks of a stream into the graph, resampled to the graph rate."""

    def __init__(self, graph: "AudioGraph", stream: MediaStream):
        super().__init__(graph)
        self.stream = stream
        self._removers = [
            track.add_sink(lambda block, track=track: self._on_block(track, block))
            for track in stream.audio_tracks
        ]

    def _on_block(self, track, block: np.ndarray):
        if self.graph.closed:
            return
        stereo = to_stereo(block)
        rate = getattr(track, "sample_rate", self.graph.sample_rate)
        if rate != self.graph.sample_rate and len(stereo):
            divisor = gcd(int(rate), int(self.graph.sample_rate))
            stereo = signal.resample_poly(
                stereo, self.graph.sample_rate // divisor, int(rate) // divisor, axis=0
            ).astype(np.float32)
        self._emit(stereo)

    def disconnect(self):
        super().disconnect()
        for remove in self._removers:
            remove()
        self._removers = []


class MediaStreamDestinationNode(AudioNode):
    """Sums every connected input into one output track.

    Inputs are aligned block by block; an input lagging more than
    ``max_lag`` seconds behind is padded with silence so a quiet source
    never stalls the mix.
    """

    def __init__(self, graph: "AudioGraph", max_lag: float = 0.5):
        super().__init__(graph)
        self.track = AudioTrack(label="mixed", sample_rate=graph.sample_rate)
        self.stream = MediaStream([self.track])
        self.max_lag_samples = int(max_lag * graph.sample_rate)
        self._buffers: Dict[int, np.ndarray] = {}

    def _attach(self, source: AudioNode):
        self._buffers[id(source)] = np.zeros((0, 2), dtype=np.float32)

    def _detach(self, source: AudioNode):
        self._buffers.pop(id(source), None)

    def receive(self, source: AudioNode, block: np.ndarray):
        key = id(source)
        if key not in self._buffers:
            return
        self._buffers[key] = np.concatenate((self._buffers[key], block))
        self._flush()

    def _flush(self):
        lengths = [len(buf) for buf in self._buffers.values()]
        if not lengths:
            return
        n = min(lengths)
        longest = max(lengths)
        if longest - n > self.max_lag_samples:
            n = longest
        if n == 0:
            return
        mixed = np.zeros((n, 2), dtype=np.float32)
        for key, buf in self._buffers.items():
            take = buf[:n]
            mixed[: len(take)] += take
            self._buffers[key] = buf[n:]
        # Clipping protection for output
        self.track.push(np.clip(mixed, -1.0, 1.0))


class AnalyserNode(AudioNode):
    """Level tap. Analysis runs as blocks arrive; ``level()`` only reads."""

    def __init__(
        self,
        graph: "AudioGraph",
        fft_size: int = ANALYSER_FFT_SIZE,
        smoothing: float = ANALYSER_SMOOTHING,
        min_db: float = ANALYSER_MIN_DB,
        max_db: float = ANALYSER_MAX_DB,
    ):
        super().__init__(graph)
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_db = min_db
        self.max_db = max_db
        self._window = signal.get_window("blackman", fft_size).astype(np.float32)
        self._ring = np.zeros(fft_size, dtype=np.float32)
        self._magnitude = np.zeros(fft_size // 2, dtype=np.float32)
        self._bytes = np.zeros(fft_size // 2, dtype=np.uint8)

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def receive(self, source: AudioNode, block: np.ndarray):
        mono = np.mean(block, axis=1) if block.ndim == 2 else block
        if len(mono) >= self.fft_size:
            self._ring = mono[-self.fft_size:].astype(np.float32)
        else:
            self._ring = np.concatenate((self._ring[len(mono):], mono)).astype(np.float32)
        self._analyze()

    def _analyze(self):
        spectrum = np.abs(np.fft.rfft(self._ring * self._window))[: self.frequency_bin_count]
        spectrum = spectrum / self.fft_size
        self._magnitude = self.smoothing * self._magnitude + (1.0 - self.smoothing) * spectrum
        db = 20 * np.log10(self._magnitude + 1e-12)
        scaled = 255 * (db - self.min_db) / (self.max_db - self.min_db)
        self._bytes = np.clip(scaled, 0, 255).astype(np.uint8)

    def byte_frequency_data(self) -> np.ndarray:
        return self._bytes.copy()

    def level(self) -> float:
        """Average level, 0-1."""
        return float(np.mean(self._bytes) / 255.0)


class AudioGraph:
    """Audio-processing graph owned by one capture session."""

    def __init__(self, sample_rate: int = GRAPH_SAMPLE_RATE):
        self.sample_rate = sample_rate
        self.state = "running"
        self._nodes: List[AudioNode] = []

    @property
    def closed(self) -> bool:
        return self.state == "closed"

    def _add(self, node: AudioNode) -> AudioNode:
        if self.closed:
            raise RuntimeError("Audio graph is closed")
        self._nodes.append(node)
        return node

    def create_source(self, stream: MediaStream) -> MediaStreamSourceNode:
        return self._add(MediaStreamSourceNode(self, stream))

    def create_destination(self) -> MediaStreamDestinationNode:
        return self._add(MediaStreamDestinationNode(self))

    def create_analyser(self, stream: Optional[MediaStream] = None) -> AnalyserNode:
        analyser = self._add(AnalyserNode(self))
        if stream is not None:
            self.create_source(stream).connect(analyser)
        return analyser

    def close(self):
        if self.closed:
            return
        self.state = "closed"
        for node in self._nodes:
            node.disconnect()
            if isinstance(node, MediaStreamDestinationNode):
                node.stream.stop()
        self._nodes.clear()
        logger.debug("Audio graph closed")


def mix_audio_streams(graph: AudioGraph, *streams: Optional[MediaStream]) -> List[AudioTrack]:
    """Route every stream into one destination and return its audio tracks."""
    destination = graph.create_destination()
    for stream in streams:
        if stream is None:
            continue
        graph.create_source(stream).connect(destination)
    return destination.stream.audio_tracks


def create_analyser(graph: AudioGraph, stream: MediaStream) -> AnalyserNode:
    return graph.create_analyser(stream)


def level_to_db(level: float) -> int:
    """dB readout for a 0-1 level, floored at -60."""
    if level <= 0:
        return -60
    return max(-60, round(20 * np.log10(level)))
