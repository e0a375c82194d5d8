"""
Integration tests for beatchain.pipeline.
"""

import json
import pickle

import numpy as np
import pytest

from beatchain.core.signal import EcgLead
from beatchain.pipeline import (
    BeatAnalysisResult,
    BeatPipeline,
    PipelineConfig,
    create_pipeline,
    process_ecg,
)


class TestPipelineConfig:
    """Test pipeline configuration."""

    def test_unknown_detector(self):
        with pytest.raises(ValueError):
            PipelineConfig(detector='wavelet')

    def test_to_dict_is_json_ready(self):
        """to_dict() only holds plain values."""
        assert json.loads(json.dumps(PipelineConfig().to_dict()))['detector'] == 'elgendi'


class TestBeatPipeline:
    """Test record-level processing."""

    def test_process_ecg(self, pulse_train, sampling_rate, r_peak_positions):
        """End-to-end analysis of a clean record."""
        result = process_ecg(pulse_train, sampling_rate, record_id="synthetic")

        assert result.success
        assert result.n_beats == len(r_peak_positions)
        np.testing.assert_array_equal(result.r_peaks, r_peak_positions)
        assert result.heart_rate_bpm == pytest.approx(75.0)
        assert result.correction.n_changes == 0
        assert result.lead == 'II'
        assert result.duration_sec == pytest.approx(20.0)

    def test_tables(self, pulse_train, sampling_rate, r_peak_positions):
        """Beat and RR tables have one row per beat and interval."""
        result = process_ecg(pulse_train, sampling_rate, record_id="synthetic")
        beats = result.to_dataframe()
        assert len(beats) == len(r_peak_positions)
        assert (beats['record_id'] == "synthetic").all()
        assert len(result.rr_intervals.to_dataframe()) == len(r_peak_positions) - 1

    def test_pan_tompkins(self, pulse_train, sampling_rate, r_peak_positions):
        """The classical detector can be selected."""
        result = create_pipeline(detector='pan_tompkins').process(pulse_train, sampling_rate)
        assert result.success
        assert abs(result.n_beats - len(r_peak_positions)) <= 1

    def test_multi_lead_record(self, pulse_train, sampling_rate):
        """Lead labels select the detection lead."""
        data = np.column_stack([np.zeros_like(pulse_train), pulse_train])
        result = process_ecg(data, sampling_rate, leads=[EcgLead.V1, EcgLead.II])
        assert result.success
        assert result.lead == 'II'
        assert result.n_beats > 0

    def test_failure_is_reported(self, pulse_train):
        """Invalid input yields a failed result instead of an exception."""
        pipeline = BeatPipeline()
        result = pipeline.process(pulse_train, -1.0, record_id="broken")
        assert not result.success
        assert "sampling_rate" in result.error_message
        assert pipeline.get_stats()['failed'] == 1

    def test_cache(self, pulse_train, sampling_rate):
        """A record is analysed once per configuration."""
        pipeline = BeatPipeline()
        first = pipeline.process(pulse_train, sampling_rate, record_id="a")
        second = pipeline.process(pulse_train, sampling_rate, record_id="a")
        assert second is first
        assert pipeline.get_stats()['cached'] == 1
        pipeline.clear_cache()
        assert pipeline.process(pulse_train, sampling_rate, record_id="a") is not first

    def test_batch_with_threads(self, pulse_train, sampling_rate):
        """Threaded batches return results in input order."""
        pipeline = BeatPipeline(PipelineConfig(n_jobs=2, use_threading=True))
        records = [(pulse_train, sampling_rate, "first"), (pulse_train[:2500], sampling_rate, "second")]
        results = pipeline.process_batch(records, show_progress=False)

        assert [r.record_id for r in results] == ["first", "second"]
        assert all(r.success for r in results)
        assert results[0].n_beats > results[1].n_beats
        assert pipeline.get_stats()['processed'] == 2

    @pytest.mark.parametrize("config", [
        PipelineConfig(enable_cache=False),
        PipelineConfig(n_jobs=2, use_threading=True),
    ], ids=["sequential", "threaded"])
    def test_batch_keeps_records_with_same_id(self, pulse_train, sampling_rate, config):
        """Each input record gets its own result, even when ids repeat."""
        records = [(pulse_train, sampling_rate, "ward"), (pulse_train[:2500], sampling_rate, "ward")]
        results = BeatPipeline(config).process_batch(records, show_progress=False)

        assert len(results) == 2
        assert results[0] is not results[1]
        assert results[0].n_samples == 5000
        assert results[1].n_samples == 2500
        assert results[0].n_beats > results[1].n_beats

    def test_result_pickles_without_heartbeats(self, pulse_train, sampling_rate):
        """Linked heartbeats stay in-process; tables survive pickling."""
        result = process_ecg(pulse_train, sampling_rate)
        assert result.heartbeats is not None

        restored = pickle.loads(pickle.dumps(result))
        assert isinstance(restored, BeatAnalysisResult)
        assert restored.heartbeats is None
        assert restored.n_beats == result.n_beats
        assert restored.rr_intervals.links_consistent()
        assert len(restored.beats) == result.n_beats

    def test_to_dict(self, pulse_train, sampling_rate):
        summary = process_ecg(pulse_train, sampling_rate, record_id="x").to_dict()
        assert summary['record_id'] == "x"
        assert summary['n_beats'] > 0
        assert summary['correction']['n_deleted'] == 0
