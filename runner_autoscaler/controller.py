"""
Scaling decisions.

ScalingController is a pure function of (observed state, forecast, policy,
time). It never touches the dedicated tier and never proposes a change that
would leave [0, max_dynamic] or break the cooldown, so every decision it
returns is already valid. validate() re-checks a decision right before it is
enacted.
"""

import math
import logging
from datetime import datetime
from typing import Optional

from .config import ScalingPolicy
from .errors import PolicyViolationError
from .models import (
    ObservedState, DemandForecast, ScalingDecision, ScalingAction,
    ScalingTrigger, ForecastHorizon,
)

logger = logging.getLogger(__name__)


class ScalingController:
    """Computes one scaling decision per repository per tick"""

    def __init__(self, min_forecast_confidence: float = 0.7):
        if not 0.0 <= min_forecast_confidence <= 1.0:
            raise ValueError("min_forecast_confidence must be between 0 and 1")
        self.min_forecast_confidence = min_forecast_confidence

    @staticmethod
    def capacity(state: ObservedState, policy: ScalingPolicy) -> int:
        return policy.dedicated_count + state.dynamic_total

    @classmethod
    def utilization(cls, state: ObservedState, policy: ScalingPolicy) -> float:
        """(dedicated busy + dynamic busy) / (dedicated count + dynamic total)"""
        return min(1.0, state.busy / cls.capacity(state, policy))

    @staticmethod
    def in_cooldown(state: ObservedState, policy: ScalingPolicy, now: datetime) -> bool:
        if state.last_scaled_at is None:
            return False
        return now - state.last_scaled_at < policy.cooldown_period

    def forecast_is_trusted(self, forecast: Optional[DemandForecast]) -> bool:
        """Anomalous or low-confidence forecasts defer to observed state"""
        return (forecast is not None
                and forecast.horizon == ForecastHorizon.SHORT
                and not forecast.anomalous
                and forecast.confidence >= self.min_forecast_confidence)

    def decide(self, repository: str, state: ObservedState,
               forecast: Optional[DemandForecast], policy: ScalingPolicy,
               now: datetime) -> ScalingDecision:
        """Decide scale-up(n), scale-down(1) or no-op for one repository"""
        capacity = self.capacity(state, policy)
        utilization = self.utilization(state, policy)
        headroom = policy.max_dynamic - state.dynamic_total
        trusted = self.forecast_is_trusted(forecast)

        def decision(action: ScalingAction, amount: int, reason: str,
                     trigger: ScalingTrigger) -> ScalingDecision:
            return ScalingDecision(
                repository=repository,
                action=action,
                amount=amount,
                reason=reason,
                decided_at=now,
                trigger=trigger,
                utilization=utilization,
            )

        # Either condition independently triggers scale-up
        if state.busy >= capacity:
            trigger = ScalingTrigger.ALL_BUSY
            reason = f"All {capacity} runners busy"
        elif utilization >= policy.scale_up_threshold:
            trigger = ScalingTrigger.UTILIZATION
            reason = (f"Utilization {utilization:.0%} >= "
                      f"scale-up threshold {policy.scale_up_threshold:.0%}")
        elif trusted and forecast.value > capacity:
            trigger = ScalingTrigger.FORECAST
            reason = (f"Forecast demand {forecast.value:.1f} exceeds capacity {capacity} "
                      f"(confidence {forecast.confidence:.2f})")
        else:
            trigger = None

        if trigger is not None:
            if headroom <= 0:
                return decision(ScalingAction.NO_OP, 0,
                                f"{reason}; already at max_dynamic={policy.max_dynamic}",
                                ScalingTrigger.BOUNDS)
            if self.in_cooldown(state, policy, now):
                return decision(ScalingAction.NO_OP, 0, f"{reason}; in cooldown",
                                ScalingTrigger.COOLDOWN)

            amount = 1
            if utilization >= policy.severe_threshold:
                backlog = state.queued_jobs
                if trusted:
                    backlog = max(backlog, int(math.ceil(forecast.value - capacity)))
                amount = min(policy.max_scale_up_step, max(1, backlog))
            amount = min(amount, headroom)

            return decision(ScalingAction.SCALE_UP, amount, reason, trigger)

        if (state.dynamic_total > 0
                and state.queued_jobs == 0
                and utilization <= policy.scale_down_threshold):
            idle_enough = [s for s in state.dynamic_idle_seconds if s >= policy.idle_timeout]
            if not idle_enough:
                return decision(ScalingAction.NO_OP, 0,
                                "Low utilization but no dynamic runner idle long enough",
                                ScalingTrigger.NONE)
            if self.in_cooldown(state, policy, now):
                return decision(ScalingAction.NO_OP, 0, "Low utilization; in cooldown",
                                ScalingTrigger.COOLDOWN)
            return decision(
                ScalingAction.SCALE_DOWN, 1,
                f"Utilization {utilization:.0%} <= scale-down threshold "
                f"{policy.scale_down_threshold:.0%}; {len(idle_enough)} runner(s) idle "
                f">= {policy.idle_timeout:.0f}s",
                ScalingTrigger.IDLE,
            )

        return decision(ScalingAction.NO_OP, 0, "Utilization within target range",
                        ScalingTrigger.NONE)

    def validate(self, decision: ScalingDecision, state: ObservedState,
                 policy: ScalingPolicy, now: datetime) -> None:
        """
        Re-check a decision against bounds and cooldown.

        Raises:
            PolicyViolationError: If enacting the decision would break policy
        """
        if decision.is_noop:
            return

        if self.in_cooldown(state, policy, now):
            raise PolicyViolationError(
                f"{decision.action.value} for {decision.repository} within cooldown "
                f"(last action at {state.last_scaled_at.isoformat()})"
            )

        if decision.action == ScalingAction.SCALE_UP:
            if state.dynamic_total + decision.amount > policy.max_dynamic:
                raise PolicyViolationError(
                    f"scale-up({decision.amount}) for {decision.repository} would exceed "
                    f"max_dynamic={policy.max_dynamic} (current {state.dynamic_total})"
                )
            if decision.amount > policy.max_scale_up_step:
                raise PolicyViolationError(
                    f"scale-up({decision.amount}) exceeds step cap {policy.max_scale_up_step}"
                )
        else:
            if decision.amount > 1:
                raise PolicyViolationError(f"scale-down({decision.amount}) exceeds 1 per tick")
            if decision.amount > state.dynamic_total:
                raise PolicyViolationError(
                    f"scale-down({decision.amount}) for {decision.repository} with only "
                    f"{state.dynamic_total} dynamic runners"
                )
