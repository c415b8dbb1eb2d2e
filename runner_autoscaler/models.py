"""
Core data model for the runner autoscaler.

Repositories are the scaling domains; runner instances are owned by the
lifecycle manager; forecasts and decisions are immutable values handed from
the predictor to the controller and from the controller to the executor.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, List


class RunnerClass(Enum):
    """Capacity tier of a runner"""
    DEDICATED = "dedicated"
    DYNAMIC = "dynamic"


class RunnerState(Enum):
    """Lifecycle states of a runner instance"""
    PENDING = "pending"
    REGISTERING = "registering"
    IDLE = "idle"
    BUSY = "busy"
    DRAINING = "draining"
    TERMINATED = "terminated"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        """Runner counts against capacity"""
        return self in (RunnerState.PENDING, RunnerState.REGISTERING,
                        RunnerState.IDLE, RunnerState.BUSY)

    @property
    def is_terminal(self) -> bool:
        return self in (RunnerState.TERMINATED, RunnerState.FAILED)


class ScalingAction(Enum):
    """Action proposed by the scaling controller"""
    SCALE_UP = "scale-up"
    SCALE_DOWN = "scale-down"
    NO_OP = "no-op"


class ScalingTrigger(Enum):
    """Condition that produced a scaling decision"""
    UTILIZATION = "utilization"
    ALL_BUSY = "all_busy"
    FORECAST = "forecast"
    IDLE = "idle"
    COOLDOWN = "cooldown"
    BOUNDS = "bounds"
    NONE = "none"


class ForecastHorizon(Enum):
    """Forecast horizons and their length in sampling intervals"""
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class ScalingMode(Enum):
    """Preset bundles of thresholds and cooldowns"""
    AGGRESSIVE = "aggressive"
    BALANCED = "balanced"
    CONSERVATIVE = "conservative"


class EventType(Enum):
    """Events published by the orchestrator and lifecycle manager"""
    RUNNER_CREATED = "runner:created"
    RUNNER_REMOVED = "runner:removed"
    RUNNER_FAILED = "runner:failed"
    RUNNER_REREGISTERED = "runner:reregistered"
    SCALING_UP = "scaling:up"
    SCALING_DOWN = "scaling:down"
    DECISION_REJECTED = "scaling:rejected"
    REPOSITORY_DEGRADED = "repository:degraded"
    REPOSITORY_RECOVERED = "repository:recovered"
    REPOSITORY_MISCONFIGURED = "repository:misconfigured"


@dataclass
class Repository:
    """A scaling domain backed by one work queue"""
    name: str
    policy_name: str = "default"
    template: str = "default"
    labels: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Repository name cannot be empty")

    @property
    def slug(self) -> str:
        """Name safe for use in runner and instance names"""
        return self.name.replace("/", "-").replace("_", "-").lower()


@dataclass
class RunnerInstance:
    """One unit of execution capacity owned by the lifecycle manager"""
    repository: str
    runner_class: RunnerClass
    created_at: datetime
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: RunnerState = RunnerState.PENDING
    name: Optional[str] = None
    handle: Optional[str] = None
    template: str = "default"
    last_busy_at: Optional[datetime] = None
    state_changed_at: Optional[datetime] = None
    current_job_id: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    from_warm_pool: bool = False

    def __post_init__(self):
        if self.name is None:
            self.name = f"runner-{self.runner_class.value}-{self.id}"
        if self.state_changed_at is None:
            self.state_changed_at = self.created_at

    @property
    def is_dedicated(self) -> bool:
        return self.runner_class == RunnerClass.DEDICATED

    def idle_for(self, now: datetime) -> float:
        """Seconds since the runner was last seen busy (or created)"""
        reference = self.last_busy_at or self.created_at
        return max(0.0, (now - reference).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "id": self.id,
            "name": self.name,
            "repository": self.repository,
            "class": self.runner_class.value,
            "state": self.state.value,
            "handle": self.handle,
            "created_at": self.created_at.isoformat(),
            "last_busy_at": self.last_busy_at.isoformat() if self.last_busy_at else None,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass(frozen=True)
class Observation:
    """One demand sample (running plus queued jobs)"""
    timestamp: datetime
    value: float


@dataclass(frozen=True)
class DemandForecast:
    """Predicted demand for one repository and horizon"""
    repository: str
    horizon: ForecastHorizon
    value: float
    confidence: float
    generated_at: datetime
    anomalous: bool = False
    lower_bound: Optional[float] = None
    upper_bound: Optional[float] = None
    method: str = "holt"

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be between 0 and 1")


@dataclass(frozen=True)
class ScalingDecision:
    """Immutable scaling decision for one repository"""
    repository: str
    action: ScalingAction
    amount: int
    reason: str
    decided_at: datetime
    trigger: ScalingTrigger = ScalingTrigger.NONE
    utilization: float = 0.0

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError("amount must be non-negative")
        if self.action == ScalingAction.NO_OP and self.amount != 0:
            raise ValueError("no-op decisions must have amount 0")
        if self.action != ScalingAction.NO_OP and self.amount == 0:
            raise ValueError("scaling decisions must have a positive amount")

    @property
    def is_noop(self) -> bool:
        return self.action == ScalingAction.NO_OP

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "repository": self.repository,
            "action": self.action.value,
            "amount": self.amount,
            "reason": self.reason,
            "trigger": self.trigger.value,
            "utilization": round(self.utilization, 3),
            "decided_at": self.decided_at.isoformat(),
        }


@dataclass
class ObservedState:
    """Snapshot of a repository's capacity handed to the controller"""
    repository: str
    observed_at: datetime
    dedicated_total: int = 0
    dedicated_busy: int = 0
    dynamic_total: int = 0
    dynamic_busy: int = 0
    queued_jobs: int = 0
    dynamic_idle_seconds: List[float] = field(default_factory=list)
    last_scaled_at: Optional[datetime] = None

    @property
    def busy(self) -> int:
        return self.dedicated_busy + self.dynamic_busy

    @property
    def demand(self) -> int:
        """Jobs running plus jobs waiting for a runner"""
        return self.busy + self.queued_jobs


@dataclass
class WarmSlot:
    """A pre-created, unassigned execution environment"""
    template: str
    handle: str
    created_at: datetime
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    last_probe_at: Optional[datetime] = None

    def age(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()


@dataclass
class ScaleResult:
    """Outcome of a scale-up or scale-down request"""
    repository: str
    requested: int
    runners: List[RunnerInstance] = field(default_factory=list)
    failed: List[RunnerInstance] = field(default_factory=list)
    from_warm_pool: int = 0
    cancelled: bool = False

    @property
    def completed(self) -> int:
        return len(self.runners)

    @property
    def success(self) -> bool:
        return not self.failed and not self.cancelled and self.completed == self.requested


@dataclass
class ReconcileReport:
    """Drift corrections made by one reconciliation pass"""
    repository: str
    removed_failed: List[str] = field(default_factory=list)
    removed_orphans: List[str] = field(default_factory=list)
    vanished: List[str] = field(default_factory=list)
    reregistered: List[str] = field(default_factory=list)
    rolled_back: List[str] = field(default_factory=list)
    finished_draining: List[str] = field(default_factory=list)
    dedicated_created: int = 0
    dedicated_removed: int = 0

    @property
    def drift_corrected(self) -> bool:
        return bool(self.removed_failed or self.removed_orphans or self.vanished
                    or self.reregistered or self.rolled_back or self.finished_draining
                    or self.dedicated_created or self.dedicated_removed)


@dataclass
class Event:
    """Entry in the event stream"""
    type: EventType
    repository: str
    timestamp: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "type": self.type.value,
            "repository": self.repository,
            "timestamp": self.timestamp.isoformat(),
            "payload": dict(self.payload),
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
