"""
Tests for beatchain.preprocessing.filters.

Tests the streaming filter stages including:
- Difference equation and coefficient validation
- Moving average equivalence with the FIR form
- Bandpass table selection
- Group-delay alignment in FilterPipeline
"""

import logging

import numpy as np
import pytest
from scipy.signal import lfilter

from beatchain.preprocessing.filters import (
    SUPPORTED_SAMPLING_RATES,
    DigitalFilter,
    FilterPipeline,
    InvalidFilterSpec,
    MovingAverageFilter,
    bandpass_filter,
    bandpass_table,
    moving_average_pipeline,
    nearest_supported_rate,
)


class TestDigitalFilter:
    """Test the per-sample difference equation."""

    def test_identity(self):
        """b = a = [1] passes the input through unchanged."""
        filt = DigitalFilter([1.0], [1.0])
        values = [0.5, -2.0, 3.25, 0.0]
        assert [filt.next(x) for x in values] == values

    def test_first_order_iir_impulse_response(self):
        """Known impulse response of y = 0.5 x[0] + 0.5 x[1] + 0.5 y[1]."""
        filt = DigitalFilter([0.5, 0.5], [1.0, -0.5])
        response = [filt.next(x) for x in [1.0, 0.0, 0.0, 0.0]]
        np.testing.assert_allclose(response, [0.5, 0.75, 0.375, 0.1875])

    def test_matches_lfilter(self):
        """Streaming output equals scipy's batch filtering from a zero state."""
        b, a = [0.2, 0.3, 0.1], [1.0, -0.4, 0.1]
        x = np.random.default_rng(0).normal(size=200)
        filt = DigitalFilter(b, a)
        streamed = np.array([filt.next(v) for v in x])
        np.testing.assert_allclose(streamed, lfilter(b, a, x), atol=1e-12)
        np.testing.assert_allclose(filt.apply(x), streamed, atol=1e-12)

    def test_leading_denominator_normalizes(self):
        """a[0] != 1 scales the output."""
        filt = DigitalFilter([1.0], [2.0])
        assert filt.next(4.0) == 2.0
        assert filt.current == 2.0

    def test_reset(self):
        """reset() clears the histories."""
        filt = DigitalFilter([0.5, 0.5])
        filt.next(1.0)
        filt.reset()
        assert filt.next(0.0) == 0.0

    @pytest.mark.parametrize("b, a", [
        ([], [1.0]),
        ([0.0, 0.0], [1.0]),
        ([1.0], []),
        ([1.0], [0.0, 1.0]),
    ])
    def test_invalid_coefficients(self, b, a):
        """Unusable coefficient sets are rejected at construction."""
        with pytest.raises(InvalidFilterSpec):
            DigitalFilter(b, a)

    def test_invalid_spec_is_value_error(self):
        """InvalidFilterSpec can be handled as a ValueError."""
        with pytest.raises(ValueError):
            DigitalFilter([1.0], [0.0])


class TestMovingAverageFilter:
    """Test the running-sum moving average."""

    def test_matches_fir_form(self):
        """Running sum gives the same output as the explicit FIR filter."""
        x = np.random.default_rng(1).normal(size=300)
        fast = MovingAverageFilter(7)
        reference = DigitalFilter(np.ones(7) / 7)
        np.testing.assert_allclose([fast.next(v) for v in x],
                                   [reference.next(v) for v in x], atol=1e-12)

    def test_group_delay(self):
        """Group delay is half the window."""
        assert MovingAverageFilter(24).group_delay == 12
        assert MovingAverageFilter(153).group_delay == 76

    def test_invalid_window(self):
        """A window must hold at least one sample."""
        with pytest.raises(InvalidFilterSpec):
            MovingAverageFilter(0)


class TestBandpassTable:
    """Test bandpass design selection."""

    def test_nearest_supported_rate(self):
        """Rates snap to the closest tabulated rate."""
        assert nearest_supported_rate(250) == 250
        assert nearest_supported_rate(257) == 256
        assert nearest_supported_rate(300) == 256
        assert nearest_supported_rate(10000) == 5000

    def test_table_covers_supported_rates(self):
        """Every supported rate above twice the upper cutoff has an entry."""
        table = bandpass_table()
        assert set(table) == {rate for rate in SUPPORTED_SAMPLING_RATES if rate > 42}
        assert table[250].group_delay > 0
        assert table[500].group_delay > table[250].group_delay

    def test_designs_are_shared(self):
        """The same rate yields the same coefficients."""
        first, second = bandpass_filter(360), bandpass_filter(360)
        np.testing.assert_array_equal(first.b, second.b)
        assert first.group_delay == second.group_delay
        assert first is not second

    def test_mismatch_warns(self, caplog):
        """An untabulated rate logs a warning and uses the nearest design."""
        with caplog.at_level(logging.WARNING, logger="beatchain.preprocessing.filters"):
            filt = bandpass_filter(257)
        assert "256" in caplog.text
        np.testing.assert_array_equal(filt.b, bandpass_filter(256).b)

    def test_cutoff_above_nyquist(self):
        """A pass band beyond Nyquist cannot be designed."""
        with pytest.raises(InvalidFilterSpec):
            bandpass_filter(50, 8.0, 30.0)

    def test_passes_qrs_band(self):
        """A 15 Hz tone passes, a 1 Hz baseline drift is suppressed."""
        fs = 250
        t = np.arange(int(4 * fs)) / fs
        filt = bandpass_filter(fs)
        passed = filt.apply(np.sin(2 * np.pi * 15 * t))[fs:]
        drift = filt.apply(np.sin(2 * np.pi * 1 * t))[fs:]
        assert np.max(np.abs(passed)) > 0.7
        assert np.max(np.abs(drift)) < 0.05


class TestFilterPipeline:
    """Test time alignment of filters with different group delays."""

    def test_max_group_delay(self):
        """The pipeline delay is the largest member delay."""
        pipeline = moving_average_pipeline([3, 9, 5])
        assert pipeline.max_group_delay == 4
        assert len(pipeline) == 3

    def test_outputs_are_aligned(self):
        """Impulse responses of all filters are centred on the same step."""
        pipeline = FilterPipeline([MovingAverageFilter(3), MovingAverageFilter(9)])
        impulse = np.zeros(20)
        impulse[0] = 1.0
        outputs = np.array([pipeline.next(x) for x in impulse])

        steps = np.arange(len(impulse))
        centres = (steps[:, None] * outputs).sum(axis=0) / outputs.sum(axis=0)
        np.testing.assert_allclose(centres, [4.0, 4.0])

    def test_shallow_history_reports_zero(self):
        """Aligned values are 0.0 until the history reaches back far enough."""
        pipeline = FilterPipeline([MovingAverageFilter(3), MovingAverageFilter(9)])
        first = pipeline.next(1.0)
        assert first[0] == 0.0
        assert first[1] == pytest.approx(1.0 / 9)

    def test_reset(self):
        """reset() clears filters and histories."""
        pipeline = moving_average_pipeline([3, 9])
        for _ in range(10):
            pipeline.next(1.0)
        pipeline.reset()
        np.testing.assert_array_equal(pipeline.next(0.0), [0.0, 0.0])

    def test_empty_pipeline_rejected(self):
        """A pipeline needs at least one filter."""
        with pytest.raises(ValueError):
            FilterPipeline([])
