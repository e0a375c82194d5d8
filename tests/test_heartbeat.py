"""
Tests for beatchain.detection.heartbeat.

Tests HeartbeatAssembler including:
- Doubly-linked heartbeat chain
- Wave search collaborators and their failures
- Callback and pull-model output
"""

import logging
from typing import List

import numpy as np
import pytest

from beatchain.core.beats import Heartbeat, WaveMorphology
from beatchain.core.signal import EcgLead, EcgSignal
from beatchain.detection.elgendi import ElgendiQrsDetector
from beatchain.detection.heartbeat import HeartbeatAssembler, WaveSearch, find_heartbeats


class FixedOffsetWaveSearch:
    """Reports a wave peaking a fixed number of samples away from R."""

    def __init__(self, offset: int):
        self.offset = offset
        self.calls = 0

    def find_wave(self, signal, qrs):
        self.calls += 1
        peak = qrs.r_position + self.offset
        return WaveMorphology(onset_position=peak - 10, peak_position=peak,
                              offset_position=peak + 10, peak_value=signal.get(peak))


class FailingWaveSearch:
    def find_wave(self, signal, qrs):
        raise RuntimeError("delineation failed")


@pytest.fixture
def assembler_factory(pulse_train, sampling_rate):
    def create(**kwargs) -> HeartbeatAssembler:
        signal = EcgSignal.from_array(pulse_train, sampling_rate, EcgLead.II)
        return HeartbeatAssembler(ElgendiQrsDetector(signal), **kwargs)
    return create


class TestHeartbeatChain:
    """Test linking of consecutive beats."""

    def test_one_beat_per_qrs(self, pulse_train, sampling_rate, r_peak_positions):
        """Every detected QRS complex becomes one heartbeat, in order."""
        beats = find_heartbeats(pulse_train, sampling_rate)
        assert [beat.r_position for beat in beats] == list(r_peak_positions)

    def test_links_are_symmetric(self, pulse_train, sampling_rate):
        """beat.next.previous is beat for every inner beat."""
        beats = find_heartbeats(pulse_train, sampling_rate)
        assert beats[0].previous is None
        assert beats[-1].next is None
        for first, second in zip(beats[:-1], beats[1:]):
            assert first.next is second
            assert second.previous is first

    def test_all_beats_finalized(self, pulse_train, sampling_rate):
        """The last beat is finalized by flush()."""
        beats = find_heartbeats(pulse_train, sampling_rate)
        assert all(beat.is_finalized for beat in beats)

    def test_heart_rate(self, pulse_train, sampling_rate):
        """75 bpm pulse train."""
        beats = find_heartbeats(pulse_train, sampling_rate)
        assert np.isnan(beats[0].heart_rate_bpm)
        assert beats[4].rr_interval_sec == pytest.approx(0.8)
        assert beats[4].heart_rate_bpm == pytest.approx(75.0)

    def test_heartbeat_wraps_its_qrs(self, pulse_train, sampling_rate):
        """A QRS complex and its heartbeat refer to each other."""
        beat = find_heartbeats(pulse_train, sampling_rate)[2]
        assert isinstance(beat, Heartbeat)
        assert beat.qrs.heartbeat is beat

    def test_to_dict(self, pulse_train, sampling_rate):
        """Flat record including QRS features and timing."""
        record = find_heartbeats(pulse_train, sampling_rate)[1].to_dict()
        assert record['heart_rate_bpm'] == pytest.approx(75.0)
        assert record['p_peak_position'] == -1
        assert 'qrs_width_sec' in record


class TestWaveSearch:
    """Test the P/T wave collaborators."""

    def test_protocol(self):
        """Any object with find_wave() satisfies the protocol."""
        assert isinstance(FixedOffsetWaveSearch(0), WaveSearch)

    def test_searches_run_for_every_beat(self, assembler_factory, r_peak_positions):
        """P and T searches run once per finalized beat."""
        p_search, t_search = FixedOffsetWaveSearch(-40), FixedOffsetWaveSearch(60)
        beats = assembler_factory(p_wave_search=p_search, t_wave_search=t_search).find_heartbeats()

        assert p_search.calls == len(r_peak_positions)
        assert t_search.calls == len(r_peak_positions)
        assert beats[3].p_wave.peak_position == beats[3].r_position - 40
        assert beats[3].t_wave.peak_position == beats[3].r_position + 60

    def test_failing_search_gives_absent_wave(self, assembler_factory, caplog):
        """Collaborator exceptions are logged and the wave becomes None."""
        with caplog.at_level(logging.WARNING, logger="beatchain.detection.heartbeat"):
            beats = assembler_factory(p_wave_search=FailingWaveSearch()).find_heartbeats()
        assert len(beats) > 0
        assert all(beat.p_wave is None for beat in beats)
        assert "delineation failed" in caplog.text


class TestAssemblerOutput:
    """Test callback and streaming output."""

    def test_callback_receives_every_beat(self, assembler_factory, r_peak_positions):
        """on_beat is called once per beat, in order."""
        received: List[Heartbeat] = []
        assembler = assembler_factory(on_beat=received.append)
        beats = assembler.find_heartbeats()
        assert received == beats
        assert assembler.n_emitted == len(r_peak_positions)

    def test_beats_emitted_one_cycle_late(self, assembler_factory):
        """A beat is emitted only once its successor exists."""
        assembler = assembler_factory()
        for beat in assembler.iter_heartbeats():
            if beat.next is None:
                assert assembler.current is beat
            else:
                assert beat.next.previous is beat
