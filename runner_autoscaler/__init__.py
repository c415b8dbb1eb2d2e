"""
Runner autoscaler: demand-driven scaling of CI runners across repositories.

Each repository keeps a fixed set of dedicated runners and scales a bounded
set of dynamic runners from observed utilization and short-term demand
forecasts.
"""

from .clock import Clock, SystemClock, ManualClock
from .config import (
    AutoscalerConfig, ScalingPolicy, RetryPolicy, PredictorConfig, WarmPoolConfig,
    OrchestratorConfig, TimeoutConfig, MonitoringConfig, ConfigManager, ConfigError,
    MODE_PRESETS, load_config_from_file, load_config_with_env_override,
)
from .controller import ScalingController
from .errors import (
    AutoscalerError, ProviderError, TransientProviderError, RateLimitError,
    ProvisioningError, PolicyViolationError, OrchestratorError, RetryError,
)
from .events import EventBus
from .lifecycle import RunnerLifecycleManager
from .models import (
    Repository, RunnerInstance, RunnerClass, RunnerState, DemandForecast,
    ScalingDecision, ScalingAction, ScalingTrigger, ForecastHorizon, WarmSlot,
    ObservedState, Event, EventType,
)
from .orchestrator import Orchestrator
from .predictor import DemandPredictor
from .providers import WorkQueueProvider, ExecutionSubstrate, InstanceSpec, RunnerStatus, ProbeResult
from .warm_pool import WarmPoolManager

__version__ = "0.1.0"

__all__ = [
    "Clock", "SystemClock", "ManualClock",
    "AutoscalerConfig", "ScalingPolicy", "RetryPolicy", "PredictorConfig", "WarmPoolConfig",
    "OrchestratorConfig", "TimeoutConfig", "MonitoringConfig", "ConfigManager", "ConfigError",
    "MODE_PRESETS", "load_config_from_file", "load_config_with_env_override",
    "ScalingController",
    "AutoscalerError", "ProviderError", "TransientProviderError", "RateLimitError",
    "ProvisioningError", "PolicyViolationError", "OrchestratorError", "RetryError",
    "EventBus",
    "RunnerLifecycleManager",
    "Repository", "RunnerInstance", "RunnerClass", "RunnerState", "DemandForecast",
    "ScalingDecision", "ScalingAction", "ScalingTrigger", "ForecastHorizon", "WarmSlot",
    "ObservedState", "Event", "EventType",
    "Orchestrator",
    "DemandPredictor",
    "WorkQueueProvider", "ExecutionSubstrate", "InstanceSpec", "RunnerStatus", "ProbeResult",
    "WarmPoolManager",
]
