import numpy as np
import pytest

from recoda.core.audio_processor import (
    AudioGraph,
    create_analyser,
    level_to_db,
    mix_audio_streams,
    to_stereo,
)
from recoda.core.media import AudioTrack, MediaStream


@pytest.fixture
def graph():
    g = AudioGraph(sample_rate=48000)
    yield g
    g.close()


def collect(track):
    blocks = []
    track.add_sink(blocks.append)
    return blocks


def test_to_stereo_shapes():
    assert to_stereo(np.zeros(10)).shape == (10, 2)
    assert to_stereo(np.zeros((10, 1))).shape == (10, 2)
    assert to_stereo(np.zeros((10, 6))).shape == (10, 2)
    assert to_stereo(np.zeros(4, dtype=np.float64)).dtype == np.float32


def test_mix_sums_aligned_inputs(graph):
    a, b = AudioTrack("system"), AudioTrack("mic")
    mixed = mix_audio_streams(graph, MediaStream([a]), MediaStream([b]))
    assert len(mixed) == 1
    blocks = collect(mixed[0])

    a.push(np.full(480, 0.3))
    # Waits for the other input
    assert blocks == []

    b.push(np.full(480, 0.3))
    assert len(blocks) == 1
    assert blocks[0].shape == (480, 2)
    assert np.allclose(blocks[0], 0.6)


def test_mix_clips(graph):
    a, b = AudioTrack(), AudioTrack()
    blocks = collect(mix_audio_streams(graph, MediaStream([a]), MediaStream([b]))[0])
    a.push(np.full(100, 0.8))
    b.push(np.full(100, 0.8))
    assert np.max(blocks[0]) == pytest.approx(1.0)


def test_silent_input_does_not_stall_mix(graph):
    a, b = AudioTrack(), AudioTrack()
    blocks = collect(mix_audio_streams(graph, MediaStream([a]), MediaStream([b]))[0])
    # 0.6s ahead of the other input, beyond the 0.5s lag allowance
    a.push(np.full(28800, 0.25))
    assert len(blocks) == 1
    assert len(blocks[0]) == 28800
    assert np.allclose(blocks[0], 0.25)


def test_source_resamples_to_graph_rate(graph):
    track = AudioTrack(sample_rate=44100)
    blocks = collect(mix_audio_streams(graph, MediaStream([track]))[0])
    track.push(np.zeros(4410))
    assert len(blocks[0]) == 4800


def test_analyser_level_silence_and_tone(graph):
    track = AudioTrack()
    analyser = create_analyser(graph, MediaStream([track]))
    track.push(np.zeros(1024))
    assert analyser.level() == 0.0

    t = np.arange(1024) / 48000
    track.push(0.5 * np.sin(2 * np.pi * 1000 * t))
    level = analyser.level()
    assert 0.0 < level <= 1.0
    # Reading has no side effects
    assert analyser.level() == level
    assert len(analyser.byte_frequency_data()) == analyser.frequency_bin_count


def test_close_disconnects_and_ends_outputs():
    graph = AudioGraph()
    a = AudioTrack()
    mixed = mix_audio_streams(graph, MediaStream([a]))[0]
    blocks = collect(mixed)

    graph.close()
    graph.close()
    assert graph.state == "closed"
    assert not mixed.live

    a.push(np.ones(10))
    assert blocks == []
    with pytest.raises(RuntimeError):
        graph.create_destination()


@pytest.mark.parametrize("level, expected", [(0.0, -60), (1.0, 0), (0.5, -6), (1e-6, -60)])
def test_level_to_db(level, expected):
    assert level_to_db(level) == expected
