"""
Tests for beatchain.detection (QRS detectors).

Tests the streaming detectors including:
- One complex per R wave, R-peaks on the true sample after refinement
- Live (append + next) and batch (replay) equivalence
- Configuration validation and state handling
- Finalized complex features and linking
"""

import logging

import numpy as np
import pytest

from beatchain.core.signal import Ecg, EcgLead, EcgSignal
from beatchain.detection.elgendi import (
    DetectorState,
    ElgendiConfig,
    ElgendiQrsDetector,
    find_qrs_complexes,
)
from beatchain.detection.pan_tompkins import (
    PanTompkinsConfig,
    PanTompkinsDetector,
    detect_r_peaks,
)
from beatchain.detection.refinement import MaxSearchRefinement, SlacknessReduction

from conftest import gaussian_pulse_train


def noisy_record(seed: int, sampling_rate: float = 360.0, duration_sec: float = 30.0):
    """Jittered R waves with T waves, baseline wander and white noise."""
    rng = np.random.default_rng(seed)
    n_samples = int(duration_sec * sampling_rate)
    rr = rng.uniform(0.75, 0.85, size=int(duration_sec / 0.75))
    r_peaks = np.round((0.5 + np.cumsum(rr) - rr[0]) * sampling_rate).astype(int)
    r_peaks = r_peaks[r_peaks < n_samples - int(0.1 * sampling_rate)]

    t = np.arange(n_samples) / sampling_rate
    signal = gaussian_pulse_train(n_samples, r_peaks, sampling_rate, width_sec=0.010)
    signal += gaussian_pulse_train(n_samples, r_peaks + int(0.25 * sampling_rate),
                                   sampling_rate, amplitude=0.25, width_sec=0.040)
    signal += 0.2 * np.sin(2 * np.pi * 0.3 * t)
    signal += rng.normal(0.0, 0.03, n_samples)
    return signal, r_peaks, sampling_rate


class TestElgendiConfig:
    """Test detector configuration."""

    def test_defaults(self):
        """Window lengths and threshold weight match the published method."""
        cfg = ElgendiConfig()
        assert cfg.qrs_window_sec == pytest.approx(0.0972, abs=1e-3)
        assert cfg.beat_window_sec == pytest.approx(0.611, abs=1e-3)
        assert cfg.beta == 0.07
        assert cfg.min_block_sec == cfg.qrs_window_sec

    def test_window_order_validated(self):
        """The QRS window must be shorter than the beat window."""
        with pytest.raises(ValueError):
            ElgendiConfig(qrs_window_sec=1.0)

    def test_negative_beta_rejected(self):
        with pytest.raises(ValueError):
            ElgendiConfig(beta=-0.1)

    def test_to_dict(self):
        """Serializable view with the lead as its label."""
        assert ElgendiConfig().to_dict()['preferred_lead'] == 'II'


class TestElgendiDetection:
    """Test detection on a synthetic pulse train."""

    def test_one_complex_per_r_wave(self, pulse_train, sampling_rate, r_peak_positions):
        """Every R wave is found exactly once."""
        complexes = find_qrs_complexes(pulse_train, sampling_rate)
        assert len(complexes) == len(r_peak_positions)

    def test_r_peaks_on_true_samples(self, pulse_train, sampling_rate, r_peak_positions):
        """Refined R-peaks coincide with the true peaks."""
        detected = np.array([qrs.r_position for qrs in find_qrs_complexes(pulse_train, sampling_rate)])
        np.testing.assert_allclose(detected, r_peak_positions, atol=1)

    def test_refractory_respected(self, pulse_train, sampling_rate):
        """Consecutive R-peaks are further apart than the blanking interval."""
        detected = ElgendiQrsDetector(EcgSignal.from_array(pulse_train, sampling_rate, EcgLead.II)).find_r_peaks()
        assert np.all(np.diff(detected) >= 0.1 * sampling_rate)

    def test_live_equals_batch(self, pulse_train, sampling_rate):
        """Appending samples one by one gives the same complexes as a replay."""
        batch = [qrs.r_position for qrs in find_qrs_complexes(pulse_train, sampling_rate)]

        ecg = Ecg(sampling_rate, capacity=int(10 * sampling_rate))
        detector = ElgendiQrsDetector(ecg)
        live = []
        for sample in pulse_train:
            ecg.append(sample)
            qrs = detector.next()
            if qrs is not None:
                live.append(qrs.r_position)
        live.extend(qrs.r_position for qrs in detector.flush())

        assert live == batch

    def test_complexes_are_linked(self, pulse_train, sampling_rate):
        """Each complex links to its neighbours."""
        complexes = find_qrs_complexes(pulse_train, sampling_rate)
        assert complexes[0].previous is None
        assert complexes[-1].next is None
        for first, second in zip(complexes[:-1], complexes[1:]):
            assert first.next is second
            assert second.previous is first
            assert second.rr_distance() == 200
            assert second.rr_interval() == pytest.approx(0.8)

    def test_complexes_are_finalized(self, pulse_train, sampling_rate):
        """Returned complexes own their window and morphology features."""
        qrs = find_qrs_complexes(pulse_train, sampling_rate)[3]
        assert qrs.is_finalized
        assert qrs.q_position <= qrs.r_position <= qrs.s_position
        assert qrs.r_value == pytest.approx(1.0)
        assert qrs.statistics.maximum == pytest.approx(1.0)
        assert len(qrs.samples) == qrs.end - qrs.start + 1

    def test_template_correlation(self, pulse_train, sampling_rate):
        """Identical beats correlate perfectly with the template."""
        complexes = find_qrs_complexes(pulse_train, sampling_rate)
        template = complexes[2].to_template()
        assert template.signal is None
        assert complexes[5].cross_correlation(template) == pytest.approx(1.0)
        assert complexes[5].area_difference(template) == pytest.approx(0.0, abs=1e-9)

    def test_history_is_bounded(self, pulse_train, sampling_rate, r_peak_positions):
        """The detector keeps the most recent complexes."""
        detector = ElgendiQrsDetector(EcgSignal.from_array(pulse_train, sampling_rate, EcgLead.II))
        detector.find_qrs_complexes()
        assert len(detector.history) == min(len(r_peak_positions), 30)
        assert detector.state is DetectorState.IDLE

    def test_samples_must_be_sequential(self, pulse_train, sampling_rate):
        """Skipping a sample index is an error."""
        detector = ElgendiQrsDetector(EcgSignal.from_array(pulse_train, sampling_rate, EcgLead.II))
        detector.next(0)
        with pytest.raises(ValueError):
            detector.next(2)

    def test_flat_signal_has_no_beats(self, sampling_rate):
        """No energy, no complexes."""
        assert find_qrs_complexes(np.zeros(int(5 * sampling_rate)), sampling_rate) == []


class TestLeadSelection:
    """Test input lead resolution and refinement choice."""

    def test_refinement_follows_lead(self, pulse_train, sampling_rate):
        """Lead II uses max search, other leads slackness reduction."""
        lead_ii = ElgendiQrsDetector(EcgSignal.from_array(pulse_train, sampling_rate, EcgLead.II))
        lead_v1 = ElgendiQrsDetector(EcgSignal.from_array(pulse_train, sampling_rate, EcgLead.V1))
        assert isinstance(lead_ii.post_processors[0], MaxSearchRefinement)
        assert isinstance(lead_v1.post_processors[0], SlacknessReduction)

    def test_best_matching_lead(self, pulse_train, sampling_rate):
        """Without lead II the detector runs on the most similar lead."""
        data = np.column_stack([np.zeros_like(pulse_train), pulse_train])
        ecg = Ecg.from_array(data, sampling_rate, leads=[EcgLead.V1, EcgLead.AVF])
        detector = ElgendiQrsDetector(ecg)
        assert detector.signal.lead is EcgLead.AVF
        assert len(detector.find_qrs_complexes()) > 0


class TestPanTompkinsDetector:
    """Test the classical detector on the same pulse train."""

    def test_config_validation(self):
        with pytest.raises(ValueError):
            PanTompkinsConfig(bandpass_low=20.0, bandpass_high=10.0)
        with pytest.raises(ValueError):
            PanTompkinsConfig(signal_weight=1.5)

    def test_finds_every_r_wave(self, pulse_train, sampling_rate, r_peak_positions):
        """Each true R-peak has a detection within one sample."""
        detected = detect_r_peaks(pulse_train, sampling_rate)
        for position in r_peak_positions:
            assert np.min(np.abs(detected - position)) <= 1
        assert len(detected) <= len(r_peak_positions) + 1

    def test_refractory_respected(self, pulse_train, sampling_rate):
        """No two detections inside the refractory period."""
        detected = detect_r_peaks(pulse_train, sampling_rate)
        assert np.all(np.diff(detected) >= 0.2 * sampling_rate)

    def test_thresholds_adapt(self, pulse_train, sampling_rate):
        """Signal and noise levels are learned from the record."""
        detector = PanTompkinsDetector(EcgSignal.from_array(pulse_train, sampling_rate, EcgLead.II))
        detector.find_qrs_complexes()
        assert detector.spki > detector.npki >= 0
        assert detector.threshold_i2 == pytest.approx(0.5 * detector.threshold_i1)

    def test_search_back_recovers_small_beat(self, pulse_train, sampling_rate, r_peak_positions,
                                             caplog):
        """A beat below the primary threshold is found again by search-back."""
        small = r_peak_positions[15]

        # Integrated energy scales with the squared amplitude: put the small
        # beat between the two thresholds reached just before it
        reference = PanTompkinsDetector(EcgSignal.from_array(pulse_train, sampling_rate, EcgLead.II))
        for index in range(small - 20):
            reference.next(index)
        peak = float(np.max(reference._integrated.to_array()))
        amplitude = np.sqrt(0.65 * reference.threshold_i1 / peak)

        n_samples = len(pulse_train)
        signal = gaussian_pulse_train(n_samples, np.delete(r_peak_positions, 15), sampling_rate)
        signal += gaussian_pulse_train(n_samples, [small], sampling_rate, amplitude=amplitude)

        with caplog.at_level(logging.DEBUG, logger="beatchain.detection.pan_tompkins"):
            detected = detect_r_peaks(signal, sampling_rate)

        assert "Search-back recovered" in caplog.text
        assert np.min(np.abs(detected - small)) <= 1

    def test_slow_rhythm_with_late_bumps(self, sampling_rate):
        """Two-second RR intervals with a bump after each beat are processed to the end."""
        n_samples = int(60 * sampling_rate)
        r_peaks = np.arange(int(1 * sampling_rate), n_samples - int(0.5 * sampling_rate),
                            int(2 * sampling_rate))
        bumps = r_peaks[5:] + int(0.35 * sampling_rate)
        signal = gaussian_pulse_train(n_samples, r_peaks, sampling_rate)
        signal += gaussian_pulse_train(n_samples, bumps, sampling_rate, amplitude=0.45)

        detected = detect_r_peaks(signal, sampling_rate)

        for position in r_peaks[1:]:
            assert np.min(np.abs(detected - position)) <= 1

    def test_history_covers_search_back(self, sampling_rate):
        """Filtered histories reach back over search-back for the longest RR interval."""
        cfg = PanTompkinsConfig()
        detector = PanTompkinsDetector(EcgSignal.from_array(np.zeros(100), sampling_rate, EcgLead.II))
        assert detector._filtered.capacity >= cfg.searchback_factor * cfg.max_rr_sec * sampling_rate


class TestSourceCapacity:
    """Test validation of live sample buffers."""

    def test_short_live_buffer_rejected(self, sampling_rate):
        """A live buffer must hold an R-peak until its complex is completed."""
        with pytest.raises(ValueError):
            ElgendiQrsDetector(Ecg(sampling_rate, capacity=int(0.5 * sampling_rate)))
        with pytest.raises(ValueError):
            PanTompkinsDetector(Ecg(sampling_rate, capacity=int(2 * sampling_rate)))

    def test_short_stored_record_accepted(self, sampling_rate):
        """Stored recordings are never overwritten, whatever their length."""
        short = np.zeros(int(0.5 * sampling_rate))
        assert find_qrs_complexes(short, sampling_rate) == []
        assert len(detect_r_peaks(short, sampling_rate)) == 0

    def test_appending_makes_source_live(self, sampling_rate):
        signal = EcgSignal.from_array(np.zeros(10), sampling_rate, EcgLead.II)
        assert signal.is_stored
        signal.append(0.0)
        assert not signal.is_stored


class TestElgendiFlush:
    """Test draining the detector at the end of a noisy record."""

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_flush_adds_no_beat(self, seed):
        """Complexes completed by flush() belong to real R waves."""
        signal, r_peaks, fs = noisy_record(seed)
        detector = ElgendiQrsDetector(EcgSignal.from_array(signal, fs, EcgLead.II))
        for index in range(len(signal)):
            detector.next(index)

        tolerance = int(0.05 * fs)
        for qrs in detector.flush():
            assert np.min(np.abs(r_peaks - qrs.r_position)) <= tolerance
        assert detector.state is DetectorState.IDLE
