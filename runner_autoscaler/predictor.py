"""
Demand forecasting for the runner autoscaler.

Each repository keeps a bounded window of demand samples. The short horizon
uses Holt double exponential smoothing; medium and long horizons combine a
moving-average baseline, a least-squares trend and a seasonal offset taken
from the matching day-of-week and hour bucket, or the hour-of-day bucket
when the weekly one has too few samples. Forecasting never fails for lack
of data: cold starts return the last observation with low confidence.

Short-horizon forecasts are scored once their horizon has elapsed: the
absolute error against the mean demand recorded over the horizon feeds the
accuracy statistics.
"""

import math
import statistics
import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Any
import logging

from .clock import Clock, SystemClock
from .config import PredictorConfig
from .models import DemandForecast, ForecastHorizon, Observation

logger = logging.getLogger(__name__)

# Confidence multiplier per horizon; longer forecasts are trusted less
HORIZON_CONFIDENCE = {
    ForecastHorizon.SHORT: 1.0,
    ForecastHorizon.MEDIUM: 0.9,
    ForecastHorizon.LONG: 0.7,
}


class DemandPredictor:
    """
    Per-repository demand forecaster.

    Windows are partitioned by repository; callers serialize work for one
    repository, the internal lock only guards the window registry.
    """

    def __init__(self, config: Optional[PredictorConfig] = None, clock: Optional[Clock] = None):
        self.config = config or PredictorConfig()
        self.clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._windows: Dict[str, deque] = {}
        self._pending: Dict[str, deque] = {}
        self._errors: Dict[str, deque] = {}
        self._stats = defaultdict(int)

    def record(self, repository: str, value: float, timestamp: Optional[datetime] = None) -> None:
        """Append a demand sample; the oldest sample is evicted when the window is full"""
        if value < 0:
            raise ValueError("Demand value must be non-negative")

        observation = Observation(timestamp=timestamp or self.clock.now(), value=float(value))
        with self._lock:
            window = self._windows.get(repository)
            if window is None:
                window = deque(maxlen=self.config.window_size)
                self._windows[repository] = window
            window.append(observation)
            self._stats["data_points"] += 1
            self._score_due_forecasts(repository, observation.timestamp)

    def get_history(self, repository: str) -> List[Observation]:
        with self._lock:
            return list(self._windows.get(repository, ()))

    def reset(self, repository: str) -> None:
        with self._lock:
            self._windows.pop(repository, None)
            self._pending.pop(repository, None)
            self._errors.pop(repository, None)

    def forecast(self, repository: str, horizon: ForecastHorizon = ForecastHorizon.SHORT,
                 now: Optional[datetime] = None) -> DemandForecast:
        """Forecast mean demand over the horizon"""
        now = now or self.clock.now()
        history = self.get_history(repository)
        values = [o.value for o in history]

        with self._lock:
            self._stats["forecasts_generated"] += 1

        if len(values) < self.config.min_history:
            last = values[-1] if values else 0.0
            if horizon == ForecastHorizon.SHORT:
                self._track(repository, now, last)
            return DemandForecast(
                repository=repository,
                horizon=horizon,
                value=last,
                confidence=self.config.cold_start_confidence,
                generated_at=now,
                lower_bound=last,
                upper_bound=last,
                method="cold_start",
            )

        steps = self._horizon_steps(horizon)
        if horizon == ForecastHorizon.SHORT:
            value, sigma = self._holt_forecast(values, steps)
            method = "holt"
        else:
            value, sigma = self._decomposed_forecast(history, steps, now, horizon)
            method = "decomposition"

        anomalous = self._is_anomalous(values)
        confidence = HORIZON_CONFIDENCE[horizon] * min(1.0, len(values) / self.config.sufficiency_points)
        if anomalous:
            confidence *= self.config.anomaly_confidence_penalty
            with self._lock:
                self._stats["anomalies_detected"] += 1
            logger.debug(f"Anomalous demand for {repository}: latest={values[-1]}")

        value = max(0.0, value)
        if horizon == ForecastHorizon.SHORT:
            self._track(repository, now, value)
        return DemandForecast(
            repository=repository,
            horizon=horizon,
            value=value,
            confidence=min(1.0, max(0.0, confidence)),
            generated_at=now,
            anomalous=anomalous,
            lower_bound=max(0.0, value - 2 * sigma),
            upper_bound=value + 2 * sigma,
            method=method,
        )

    def forecast_all(self, repository: str, now: Optional[datetime] = None) -> Dict[ForecastHorizon, DemandForecast]:
        return {h: self.forecast(repository, h, now) for h in ForecastHorizon}

    def get_accuracy(self, repository: Optional[str] = None) -> Dict[str, Any]:
        """Mean absolute error of scored short-horizon forecasts, for one or all repositories"""
        with self._lock:
            if repository is None:
                errors = [e for window in self._errors.values() for e in window]
            else:
                errors = list(self._errors.get(repository, ()))
        return {
            "evaluated": len(errors),
            "mean_absolute_error": statistics.mean(errors) if errors else None,
        }

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "repositories": len(self._windows),
                "data_points": self._stats["data_points"],
                "forecasts_generated": self._stats["forecasts_generated"],
                "anomalies_detected": self._stats["anomalies_detected"],
                "accuracy": self.get_accuracy(),
            }

    def _track(self, repository: str, now: datetime, value: float) -> None:
        due = now + timedelta(seconds=self.config.short_horizon)
        with self._lock:
            pending = self._pending.get(repository)
            if pending is None:
                pending = deque(maxlen=self.config.window_size)
                self._pending[repository] = pending
            pending.append((now, due, value))

    def _score_due_forecasts(self, repository: str, now: datetime) -> None:
        pending = self._pending.get(repository)
        while pending and pending[0][1] <= now:
            generated_at, due, predicted = pending.popleft()
            realised = [o.value for o in self._windows[repository]
                        if generated_at < o.timestamp <= due]
            if not realised:
                continue
            errors = self._errors.get(repository)
            if errors is None:
                errors = deque(maxlen=self.config.accuracy_window)
                self._errors[repository] = errors
            errors.append(abs(predicted - statistics.mean(realised)))

    def _horizon_steps(self, horizon: ForecastHorizon) -> int:
        seconds = {
            ForecastHorizon.SHORT: self.config.short_horizon,
            ForecastHorizon.MEDIUM: self.config.medium_horizon,
            ForecastHorizon.LONG: self.config.long_horizon,
        }[horizon]
        return max(1, int(math.ceil(seconds / self.config.sample_interval)))

    def _holt_forecast(self, values: List[float], steps: int) -> Tuple[float, float]:
        """Holt smoothing; returns the mean of the next `steps` forecasts and residual stdev"""
        alpha = self.config.smoothing_alpha
        beta = self.config.trend_beta

        level = values[0]
        trend = values[1] - values[0]
        residuals = []

        for value in values[1:]:
            residuals.append(value - (level + trend))
            previous_level = level
            level = alpha * value + (1 - alpha) * (level + trend)
            trend = beta * (level - previous_level) + (1 - beta) * trend

        forecast = level + trend * (steps + 1) / 2
        sigma = statistics.pstdev(residuals) if len(residuals) > 1 else 0.0
        return forecast, sigma

    def _decomposed_forecast(self, history: List[Observation], steps: int,
                             now: datetime, horizon: ForecastHorizon) -> Tuple[float, float]:
        """Moving-average baseline plus trend plus seasonal offset"""
        values = [o.value for o in history]
        recent = values[-self.config.moving_average_window:]

        baseline = statistics.mean(recent)
        slope = self._calculate_trend(recent)
        trend_component = slope * (steps + 1) / 2

        horizon_seconds = steps * self.config.sample_interval
        target = now + timedelta(seconds=horizon_seconds / 2)
        seasonal = self._seasonal_offset(history, target)

        sigma = statistics.pstdev(recent) if len(recent) > 1 else 0.0
        return baseline + trend_component + seasonal, sigma

    def _seasonal_offset(self, history: List[Observation], target: datetime) -> float:
        """Bucket average minus window average; day-of-week and hour first, then hour of day"""
        weekly: Dict[Tuple[int, int], List[float]] = defaultdict(list)
        hourly: Dict[int, List[float]] = defaultdict(list)
        for observation in history:
            timestamp = observation.timestamp
            weekly[(timestamp.weekday(), timestamp.hour)].append(observation.value)
            hourly[timestamp.hour].append(observation.value)

        minimum = self.config.min_pattern_occurrences
        bucket = weekly.get((target.weekday(), target.hour), [])
        if len(bucket) < minimum or len(weekly) < 2:
            bucket = hourly.get(target.hour, [])
            if len(bucket) < minimum or len(hourly) < 2:
                return 0.0

        overall = statistics.mean(o.value for o in history)
        return statistics.mean(bucket) - overall

    def _is_anomalous(self, values: List[float]) -> bool:
        """z-score of the latest sample against the preceding window"""
        if len(values) < self.config.anomaly_min_points:
            return False

        latest = values[-1]
        baseline = values[-(self.config.anomaly_window + 1):-1]
        mean = statistics.mean(baseline)
        stdev = statistics.pstdev(baseline)

        if stdev == 0:
            return latest != mean

        return abs(latest - mean) / stdev > self.config.anomaly_threshold

    def _calculate_trend(self, values: List[float]) -> float:
        """Calculate trend slope using linear regression"""
        if len(values) < 2:
            return 0.0

        n = len(values)
        x_vals = list(range(n))

        x_mean = statistics.mean(x_vals)
        y_mean = statistics.mean(values)

        numerator = sum((x - x_mean) * (y - y_mean) for x, y in zip(x_vals, values))
        denominator = sum((x - x_mean) ** 2 for x in x_vals)

        return numerator / denominator if denominator != 0 else 0.0
