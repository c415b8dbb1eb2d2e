"""
Tests for the demand predictor.
"""

import pytest
from datetime import datetime, timezone, timedelta

from runner_autoscaler.clock import ManualClock
from runner_autoscaler.config import PredictorConfig
from runner_autoscaler.models import ForecastHorizon
from runner_autoscaler.predictor import DemandPredictor


class TestObservationWindow:
    """Test the bounded rolling window"""

    def setup_method(self):
        """Setup test fixtures"""
        self.clock = ManualClock()
        self.predictor = DemandPredictor(PredictorConfig(window_size=10), self.clock)

    def test_window_is_bounded(self):
        """Test oldest samples are evicted"""
        for value in range(25):
            self.predictor.record("org/a", value)
            self.clock.advance(30)

        history = self.predictor.get_history("org/a")

        assert len(history) == 10
        assert history[0].value == 15
        assert history[-1].value == 24

    def test_repositories_are_independent(self):
        """Test windows are partitioned by repository"""
        self.predictor.record("org/a", 5)
        self.predictor.record("org/b", 1)
        self.predictor.record("org/b", 2)

        assert [o.value for o in self.predictor.get_history("org/a")] == [5]
        assert [o.value for o in self.predictor.get_history("org/b")] == [1, 2]

    def test_negative_values_rejected(self):
        """Test demand cannot be negative"""
        with pytest.raises(ValueError, match="non-negative"):
            self.predictor.record("org/a", -1)

    def test_reset(self):
        """Test clearing a repository's window"""
        self.predictor.record("org/a", 5)
        self.predictor.reset("org/a")

        assert self.predictor.get_history("org/a") == []


class TestColdStart:
    """Test forecasts with insufficient history"""

    def setup_method(self):
        """Setup test fixtures"""
        self.predictor = DemandPredictor(PredictorConfig(), ManualClock())

    def test_no_history(self):
        """Test unknown repositories forecast zero with low confidence"""
        forecast = self.predictor.forecast("org/unknown")

        assert forecast.value == 0.0
        assert forecast.confidence == 0.1
        assert forecast.method == "cold_start"
        assert forecast.anomalous is False

    def test_returns_last_observation(self):
        """Test short history echoes the last value"""
        for value in (1, 2, 5):
            self.predictor.record("org/a", value)

        forecast = self.predictor.forecast("org/a", ForecastHorizon.LONG)

        assert forecast.value == 5.0
        assert forecast.confidence == 0.1
        assert forecast.horizon == ForecastHorizon.LONG


class TestShortHorizon:
    """Test Holt smoothing forecasts"""

    def setup_method(self):
        """Setup test fixtures"""
        self.clock = ManualClock()
        self.predictor = DemandPredictor(PredictorConfig(), self.clock)

    def _record(self, values):
        for value in values:
            self.predictor.record("org/a", value)
            self.clock.advance(30)

    def test_flat_series(self):
        """Test a constant series forecasts the constant with full confidence"""
        self._record([3] * 130)

        forecast = self.predictor.forecast("org/a")

        assert forecast.value == pytest.approx(3.0)
        assert forecast.confidence == pytest.approx(1.0)
        assert forecast.anomalous is False
        assert forecast.lower_bound == pytest.approx(3.0)
        assert forecast.upper_bound == pytest.approx(3.0)
        assert forecast.method == "holt"

    def test_ramp_is_extrapolated(self):
        """Test a rising series forecasts above the latest value"""
        self._record(range(60))

        forecast = self.predictor.forecast("org/a")

        assert forecast.value > 59
        assert forecast.anomalous is False
        assert forecast.confidence == pytest.approx(0.5)

    def test_never_negative(self):
        """Test falling series are clamped at zero"""
        self._record(range(60, 0, -1))

        forecast = self.predictor.forecast("org/a")

        assert forecast.value >= 0.0
        assert forecast.lower_bound >= 0.0

    def test_anomaly_reduces_confidence(self):
        """Test a spike is flagged and trusted less"""
        self._record([2, 3] * 25 + [40])

        forecast = self.predictor.forecast("org/a")

        assert forecast.anomalous is True
        assert forecast.confidence == pytest.approx(0.5 * 51 / 120)
        assert self.predictor.get_statistics()["anomalies_detected"] == 1


class TestLongerHorizons:
    """Test trend plus hour-of-day forecasts"""

    def setup_method(self):
        """Setup test fixtures"""
        self.predictor = DemandPredictor(PredictorConfig(), ManualClock())

    def test_confidence_decreases_with_horizon(self):
        """Test horizon confidence multipliers"""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(130):
            self.predictor.record("org/a", 3, start + timedelta(seconds=30 * i))

        forecasts = self.predictor.forecast_all("org/a", now=start + timedelta(hours=2))

        assert forecasts[ForecastHorizon.SHORT].confidence == pytest.approx(1.0)
        assert forecasts[ForecastHorizon.MEDIUM].confidence == pytest.approx(0.9)
        assert forecasts[ForecastHorizon.LONG].confidence == pytest.approx(0.7)
        assert forecasts[ForecastHorizon.MEDIUM].method == "decomposition"
        assert forecasts[ForecastHorizon.MEDIUM].value == pytest.approx(3.0)

    def test_hour_of_day_pattern(self):
        """Test a recurring daily peak raises the medium-horizon forecast"""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(86):
            timestamp = start + timedelta(hours=i)
            self.predictor.record("org/a", 10 if timestamp.hour == 14 else 0, timestamp)

        before_peak = datetime(2024, 1, 4, 13, 40, tzinfo=timezone.utc)
        forecast = self.predictor.forecast("org/a", ForecastHorizon.MEDIUM, now=before_peak)

        assert forecast.value > 5
        assert forecast.value < 10

    def test_pattern_needs_occurrences(self):
        """Test a single peak is not treated as a pattern"""
        start = datetime(2024, 1, 3, tzinfo=timezone.utc)
        for i in range(38):
            timestamp = start + timedelta(hours=i)
            self.predictor.record("org/a", 10 if i == 14 else 0, timestamp)

        forecast = self.predictor.forecast("org/a", ForecastHorizon.MEDIUM,
                                           now=datetime(2024, 1, 4, 13, 40, tzinfo=timezone.utc))

        assert forecast.value == pytest.approx(0.0)

    def test_day_of_week_pattern(self):
        """Test a weekly peak is forecast for its weekday only"""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)  # Monday
        for i in range(21 * 24):
            timestamp = start + timedelta(hours=i)
            peak = timestamp.weekday() == 0 and timestamp.hour == 10
            self.predictor.record("org/a", 20 if peak else 2, timestamp)

        monday = self.predictor.forecast("org/a", ForecastHorizon.MEDIUM,
                                         now=datetime(2024, 1, 22, 9, 40, tzinfo=timezone.utc))
        tuesday = self.predictor.forecast("org/a", ForecastHorizon.MEDIUM,
                                          now=datetime(2024, 1, 23, 9, 40, tzinfo=timezone.utc))

        assert 15 < monday.value < 21
        assert tuesday.value < 3


class TestStatistics:
    """Test predictor statistics"""

    def test_counters(self):
        """Test counters track usage"""
        predictor = DemandPredictor(PredictorConfig(), ManualClock())
        predictor.record("org/a", 1)
        predictor.record("org/b", 1)
        predictor.forecast("org/a")

        stats = predictor.get_statistics()

        assert stats["repositories"] == 2
        assert stats["data_points"] == 2
        assert stats["forecasts_generated"] == 1


class TestForecastAccuracy:
    """Test scoring of short-horizon forecasts"""

    def setup_method(self):
        """Setup test fixtures"""
        self.start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        config = PredictorConfig(min_history=2, short_horizon="60s", sample_interval="30s")
        self.predictor = DemandPredictor(config, ManualClock())

    def at(self, seconds):
        return self.start + timedelta(seconds=seconds)

    def test_error_against_realised_demand(self):
        """Test a forecast is scored against the mean demand over its horizon"""
        self.predictor.record("org/a", 4, self.at(0))
        self.predictor.record("org/a", 4, self.at(30))
        forecast = self.predictor.forecast("org/a", now=self.at(30))
        assert forecast.value == pytest.approx(4.0)

        self.predictor.record("org/a", 4, self.at(60))
        assert self.predictor.get_accuracy("org/a")["evaluated"] == 0

        self.predictor.record("org/a", 10, self.at(90))

        accuracy = self.predictor.get_accuracy("org/a")
        assert accuracy["evaluated"] == 1
        assert accuracy["mean_absolute_error"] == pytest.approx(3.0)
        assert self.predictor.get_statistics()["accuracy"] == accuracy

    def test_longer_horizons_are_not_scored(self):
        """Test only short-horizon forecasts are tracked"""
        self.predictor.record("org/a", 4, self.at(0))
        self.predictor.record("org/a", 4, self.at(30))
        self.predictor.forecast("org/a", ForecastHorizon.MEDIUM, now=self.at(30))
        self.predictor.record("org/a", 4, self.at(4000))

        assert self.predictor.get_accuracy() == {"evaluated": 0, "mean_absolute_error": None}

    def test_reset_clears_accuracy(self):
        """Test resetting a repository drops its scores"""
        self.predictor.record("org/a", 4, self.at(0))
        self.predictor.forecast("org/a", now=self.at(0))
        self.predictor.record("org/a", 6, self.at(60))
        assert self.predictor.get_accuracy("org/a")["evaluated"] == 1

        self.predictor.reset("org/a")

        assert self.predictor.get_accuracy("org/a")["evaluated"] == 0
