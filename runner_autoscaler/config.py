"""
Configuration management for the runner autoscaler.

Policies are resolved per repository: mode preset first, then the global
defaults document, then the repository's own overrides.
"""

import os
import re
import random
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Union, List, Tuple
from dataclasses import dataclass, field, asdict
from datetime import timedelta


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded"""
    pass


_DURATION_PATTERN = re.compile(r'^(\d+(?:\.\d+)?)(s|min|h)$')
_DURATION_UNITS = {"s": 1.0, "min": 60.0, "h": 3600.0}


def parse_duration(value: Union[int, float, str]) -> float:
    """
    Convert a duration to seconds.

    Accepts plain numbers (seconds) and strings such as '30s', '5min', '2h'.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must be non-negative: {value}")
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        match = _DURATION_PATTERN.match(text)
        if match:
            return float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        try:
            seconds = float(text)
        except ValueError:
            raise ValueError(f"Invalid duration format: {value!r}")
        if seconds < 0:
            raise ValueError(f"Duration must be non-negative: {value}")
        return seconds
    raise ValueError(f"Invalid duration: {value!r}")


# Preset bundles selected by ScalingPolicy.mode
MODE_PRESETS: Dict[str, Dict[str, Any]] = {
    "aggressive": {
        "scale_up_threshold": 0.6,
        "scale_down_threshold": 0.2,
        "cooldown": 30.0,
        "severe_threshold": 0.85,
        "max_scale_up_step": 5,
    },
    "balanced": {
        "scale_up_threshold": 0.8,
        "scale_down_threshold": 0.3,
        "cooldown": 60.0,
        "severe_threshold": 0.95,
        "max_scale_up_step": 3,
    },
    "conservative": {
        "scale_up_threshold": 0.9,
        "scale_down_threshold": 0.4,
        "cooldown": 180.0,
        "severe_threshold": 1.0,
        "max_scale_up_step": 2,
    },
}

# Option names accepted in policy documents besides the snake_case field names
_POLICY_ALIASES = {
    "dedicatedCount": "dedicated_count",
    "maxDynamic": "max_dynamic",
    "scaleUpThreshold": "scale_up_threshold",
    "scaleDownThreshold": "scale_down_threshold",
    "idleTimeout": "idle_timeout",
    "checkInterval": "check_interval",
    "severeThreshold": "severe_threshold",
    "maxScaleUpStep": "max_scale_up_step",
}


@dataclass
class ScalingPolicy:
    """Per-repository scaling policy"""
    dedicated_count: int = 1
    max_dynamic: int = 3
    scale_up_threshold: Optional[float] = None
    scale_down_threshold: Optional[float] = None
    cooldown: Optional[Union[float, str]] = None  # seconds
    idle_timeout: Union[float, str] = 300.0  # seconds
    check_interval: Union[float, str] = 30.0  # seconds
    mode: str = "balanced"
    severe_threshold: Optional[float] = None
    max_scale_up_step: Optional[int] = None
    template: str = "default"

    def __post_init__(self):
        if self.mode not in MODE_PRESETS:
            raise ValueError(f"mode must be one of {list(MODE_PRESETS)}")

        preset = MODE_PRESETS[self.mode]
        for key, value in preset.items():
            if getattr(self, key) is None:
                setattr(self, key, value)

        self.cooldown = parse_duration(self.cooldown)
        self.idle_timeout = parse_duration(self.idle_timeout)
        self.check_interval = parse_duration(self.check_interval)

        if isinstance(self.dedicated_count, bool) or not isinstance(self.dedicated_count, int):
            raise ValueError("dedicated_count must be an integer")
        if self.dedicated_count < 1:
            raise ValueError("dedicated_count must be at least 1")

        if isinstance(self.max_dynamic, bool) or not isinstance(self.max_dynamic, int):
            raise ValueError("max_dynamic must be an integer")
        if self.max_dynamic < 0:
            raise ValueError("max_dynamic must be non-negative")

        for name in ("scale_up_threshold", "scale_down_threshold", "severe_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")

        if self.scale_down_threshold >= self.scale_up_threshold:
            raise ValueError("scale_down_threshold must be below scale_up_threshold")

        if self.severe_threshold < self.scale_up_threshold:
            raise ValueError("severe_threshold must be >= scale_up_threshold")

        if self.max_scale_up_step < 1:
            raise ValueError("max_scale_up_step must be at least 1")

        if self.check_interval <= 0:
            raise ValueError("check_interval must be positive")

        if not self.template:
            raise ValueError("template cannot be empty")

    @property
    def cooldown_period(self) -> timedelta:
        return timedelta(seconds=self.cooldown)

    @property
    def idle_timeout_period(self) -> timedelta:
        return timedelta(seconds=self.idle_timeout)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScalingPolicy":
        """Build a policy from a document, accepting camelCase option names"""
        return cls(**normalize_policy_options(data))


def normalize_policy_options(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Map option aliases to field names and reject unknown options"""
    known = set(ScalingPolicy.__dataclass_fields__)
    normalized = {}
    for key, value in (data or {}).items():
        name = _POLICY_ALIASES.get(key, key)
        if name not in known:
            raise ValueError(f"Unknown policy option: {key}")
        normalized[name] = value
    return normalized


@dataclass
class RetryPolicy:
    """Configuration for provider call retry behavior"""
    max_retries: int = 2
    backoff_strategy: str = "exponential"  # linear, exponential, fixed
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    jitter: bool = True  # Add randomness to delays

    def __post_init__(self):
        valid_strategies = ["linear", "exponential", "fixed"]
        if self.backoff_strategy not in valid_strategies:
            raise ValueError(f"backoff_strategy must be one of {valid_strategies}")

        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")

        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")

        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay before the retry that follows the given (1-based) attempt.

        Jitter draws uniformly from [delay/2, delay].
        """
        if self.backoff_strategy == "fixed":
            delay = self.base_delay
        elif self.backoff_strategy == "linear":
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay * (2 ** (attempt - 1))

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            rng = rng or random
            delay = rng.uniform(delay / 2, delay)

        return delay


@dataclass
class TimeoutConfig:
    """Timeouts for provider calls and lifecycle waits (seconds)"""
    provider_call: Union[float, str] = 10.0
    readiness: Union[float, str] = 120.0
    readiness_poll: Union[float, str] = 2.0
    drain: Union[float, str] = 300.0
    stale_provisioning: Union[float, str] = 600.0

    def __post_init__(self):
        for name in ("provider_call", "readiness", "readiness_poll", "drain", "stale_provisioning"):
            value = parse_duration(getattr(self, name))
            if value <= 0:
                raise ValueError(f"{name} must be positive")
            setattr(self, name, value)


@dataclass
class PredictorConfig:
    """Configuration for the demand predictor"""
    window_size: int = 2880
    sample_interval: Union[float, str] = 30.0
    smoothing_alpha: float = 0.5
    trend_beta: float = 0.3
    short_horizon: Union[float, str] = 900.0
    medium_horizon: Union[float, str] = 3600.0
    long_horizon: Union[float, str] = 14400.0
    moving_average_window: int = 20
    min_history: int = 5
    sufficiency_points: int = 120
    cold_start_confidence: float = 0.1
    anomaly_threshold: float = 3.0
    anomaly_min_points: int = 10
    anomaly_window: int = 100
    anomaly_confidence_penalty: float = 0.5
    min_pattern_occurrences: int = 3
    accuracy_window: int = 100

    def __post_init__(self):
        if self.window_size < 2:
            raise ValueError("window_size must be at least 2")

        for name in ("smoothing_alpha", "trend_beta"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ValueError(f"{name} must be in (0, 1]")

        for name in ("sample_interval", "short_horizon", "medium_horizon", "long_horizon"):
            value = parse_duration(getattr(self, name))
            if value <= 0:
                raise ValueError(f"{name} must be positive")
            setattr(self, name, value)

        if self.min_history < 2:
            raise ValueError("min_history must be at least 2")

        for name in ("cold_start_confidence", "anomaly_confidence_penalty"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")

        if self.anomaly_threshold <= 0:
            raise ValueError("anomaly_threshold must be positive")

        if self.moving_average_window < 1 or self.sufficiency_points < 1 or self.accuracy_window < 1:
            raise ValueError("moving_average_window, sufficiency_points and accuracy_window must be positive")


@dataclass
class WarmPoolConfig:
    """Configuration for the warm pool manager"""
    enabled: bool = True
    pool_sizes: Dict[str, int] = field(default_factory=lambda: {"default": 2})
    max_age: Union[float, str] = 3600.0
    replenish_interval: Union[float, str] = 30.0
    probe_slots: bool = True
    aggressive_warming_misses: int = 3  # consecutive misses; 0 disables
    aggressive_warming_slots: int = 2

    def __post_init__(self):
        for template, size in self.pool_sizes.items():
            if not template:
                raise ValueError("Warm pool template name cannot be empty")
            if size < 0:
                raise ValueError(f"Warm pool size for '{template}' must be non-negative")

        if self.aggressive_warming_misses < 0 or self.aggressive_warming_slots < 0:
            raise ValueError("aggressive_warming_misses and aggressive_warming_slots must be non-negative")

        self.max_age = parse_duration(self.max_age)
        self.replenish_interval = parse_duration(self.replenish_interval)
        if self.max_age <= 0 or self.replenish_interval <= 0:
            raise ValueError("max_age and replenish_interval must be positive")


@dataclass
class OrchestratorConfig:
    """Configuration for the control loop"""
    concurrency: int = 4
    tick_interval: Union[float, str] = 30.0
    tick_budget: Union[float, str] = 25.0
    failure_threshold: int = 3
    degraded_probe_interval: Union[float, str] = 300.0
    min_forecast_confidence: float = 0.7
    stop_timeout: Union[float, str] = 30.0

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")

        if not 0.0 <= self.min_forecast_confidence <= 1.0:
            raise ValueError("min_forecast_confidence must be between 0 and 1")

        for name in ("tick_interval", "tick_budget", "degraded_probe_interval", "stop_timeout"):
            value = parse_duration(getattr(self, name))
            if value <= 0:
                raise ValueError(f"{name} must be positive")
            setattr(self, name, value)


@dataclass
class MonitoringConfig:
    """Configuration for logging and event history"""
    log_level: str = "INFO"
    event_history: int = 1000
    decision_history: int = 1000

    def __post_init__(self):
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level not in valid_log_levels:
            raise ValueError(f"log_level must be one of {valid_log_levels}")

        if self.event_history < 1 or self.decision_history < 1:
            raise ValueError("history sizes must be positive")


@dataclass
class AutoscalerConfig:
    """Main configuration for the runner autoscaler"""
    defaults: Dict[str, Any] = field(default_factory=dict)
    repositories: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    predictor: PredictorConfig = field(default_factory=PredictorConfig)
    warm_pool: WarmPoolConfig = field(default_factory=WarmPoolConfig)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def __post_init__(self):
        self.repositories = {name: dict(overrides or {})
                             for name, overrides in (self.repositories or {}).items()}
        for name in self.repositories:
            if not name:
                raise ValueError("Repository name cannot be empty")

        # Invalid global defaults are fatal for the whole document
        self.default_policy()

    def default_policy(self) -> ScalingPolicy:
        """Global default policy"""
        return ScalingPolicy.from_dict(self.defaults)

    def policy_for(self, repository: str) -> ScalingPolicy:
        """
        Resolve the effective policy of a repository.

        Raises:
            ConfigError: If the repository is unknown or its policy is invalid
        """
        if repository not in self.repositories:
            raise ConfigError(f"Repository not configured: {repository}")

        try:
            merged = dict(normalize_policy_options(self.defaults))
            overrides = normalize_policy_options(self.repositories[repository])
            if "mode" in overrides and overrides["mode"] != merged.get("mode"):
                # A repository-level mode selects its own preset unless thresholds are explicit
                for key in MODE_PRESETS["balanced"]:
                    merged.pop(key, None)
            merged.update(overrides)
            return ScalingPolicy(**merged)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid policy for repository '{repository}': {e}")

    def resolve_policies(self) -> Tuple[Dict[str, ScalingPolicy], Dict[str, str]]:
        """Resolve every repository, separating valid policies from errors"""
        policies: Dict[str, ScalingPolicy] = {}
        invalid: Dict[str, str] = {}
        for name in self.repositories:
            try:
                policies[name] = self.policy_for(name)
            except ConfigError as e:
                invalid[name] = str(e)
        return policies, invalid

    @property
    def invalid_repositories(self) -> Dict[str, str]:
        return self.resolve_policies()[1]


class ConfigManager:
    """
    Manages loading, validation, and merging of configuration from multiple sources.

    Supports loading from:
    - YAML files
    - Environment variables
    - Python dictionaries
    - Default values
    """

    SECTIONS = ("orchestrator", "predictor", "warm_pool", "retry_policy", "timeouts", "monitoring")

    def __init__(self):
        self._config: Optional[AutoscalerConfig] = None
        self._config_sources: List[str] = []

    def load_from_file(self, config_path: Union[str, Path]) -> AutoscalerConfig:
        """
        Load configuration from a YAML file.

        Raises:
            ConfigError: If file cannot be loaded or is invalid
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file {config_path}: {e}")

        if data is None:
            data = {}

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")

        try:
            config = self._create_config_from_dict(data)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Failed to load config file {config_path}: {e}")

        self._config = config
        self._config_sources.append(f"file:{config_path}")

        return config

    def load_from_dict(self, config_dict: Dict[str, Any]) -> AutoscalerConfig:
        """Load configuration from a dictionary"""
        try:
            config = self._create_config_from_dict(config_dict)
        except (ValueError, TypeError, AttributeError) as e:
            raise ConfigError(f"Failed to load config from dictionary: {e}")

        self._config = config
        self._config_sources.append("dict")

        return config

    def load_from_env(self, prefix: str = "RUNNER_AUTOSCALER_") -> Dict[str, Any]:
        """
        Load configuration values from environment variables.

        Returns:
            Dictionary of configuration values from environment
        """
        env_config: Dict[str, Dict[str, Any]] = {'defaults': {}}
        for section in self.SECTIONS:
            env_config[section] = {}

        # Mapping of env var suffixes to config sections
        section_mapping = {
            'dedicated_count': 'defaults',
            'max_dynamic': 'defaults',
            'scale_up_threshold': 'defaults',
            'scale_down_threshold': 'defaults',
            'cooldown': 'defaults',
            'idle_timeout': 'defaults',
            'check_interval': 'defaults',
            'mode': 'defaults',
            'concurrency': 'orchestrator',
            'tick_interval': 'orchestrator',
            'failure_threshold': 'orchestrator',
            'degraded_probe_interval': 'orchestrator',
            'window_size': 'predictor',
            'smoothing_alpha': 'predictor',
            'anomaly_threshold': 'predictor',
            'max_retries': 'retry_policy',
            'backoff_strategy': 'retry_policy',
            'base_delay': 'retry_policy',
            'provider_call': 'timeouts',
            'log_level': 'monitoring',
        }

        for key, value in os.environ.items():
            if not key.startswith(prefix):
                continue

            config_key = key[len(prefix):].lower()
            if config_key not in section_mapping:
                continue

            if value.lower() in ('true', 'false'):
                converted_value = value.lower() == 'true'
            elif value.isdigit():
                converted_value = int(value)
            elif self._is_float(value):
                converted_value = float(value)
            else:
                converted_value = value

            env_config[section_mapping[config_key]][config_key] = converted_value

        # Remove empty sections
        env_config = {k: v for k, v in env_config.items() if v}

        if env_config:
            self._config_sources.append(f"env:{prefix}")

        return env_config

    def merge_configs(self, *configs: AutoscalerConfig) -> AutoscalerConfig:
        """Merge multiple configurations, with later configs taking precedence"""
        if not configs:
            return AutoscalerConfig()

        merged_dict = asdict(configs[0])

        for config in configs[1:]:
            merged_dict = self._deep_merge_dicts(merged_dict, asdict(config))

        merged_config = self._create_config_from_dict(merged_dict)
        self._config = merged_config
        self._config_sources.append(f"merged:{len(configs)}_configs")

        return merged_config

    def merge_dict(self, base: AutoscalerConfig, overrides: Dict[str, Any]) -> AutoscalerConfig:
        """Apply a partial document on top of a configuration"""
        merged_dict = self._deep_merge_dicts(asdict(base), overrides)
        try:
            merged_config = self._create_config_from_dict(merged_dict)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Failed to apply configuration overrides: {e}")
        self._config = merged_config
        return merged_config

    def load_default_config(self) -> AutoscalerConfig:
        """Load default configuration"""
        config = AutoscalerConfig()
        self._config = config
        self._config_sources.append("default")

        return config

    def get_config(self) -> Optional[AutoscalerConfig]:
        """Get currently loaded configuration"""
        return self._config

    def get_config_sources(self) -> List[str]:
        """Get list of configuration sources that were loaded"""
        return self._config_sources.copy()

    def save_to_file(self, config_path: Union[str, Path],
                     config: Optional[AutoscalerConfig] = None) -> None:
        """
        Save configuration to a YAML file.

        Raises:
            ConfigError: If configuration cannot be saved
        """
        if config is None:
            config = self._config

        if config is None:
            raise ConfigError("No configuration to save")

        config_path = Path(config_path)

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)

            with open(config_path, 'w') as f:
                yaml.safe_dump(asdict(config), f, default_flow_style=False, indent=2, sort_keys=False)

        except OSError as e:
            raise ConfigError(f"Failed to save config to {config_path}: {e}")

    def validate_config(self, config: AutoscalerConfig) -> List[str]:
        """
        Validate configuration and return list of validation errors.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        _, invalid = config.resolve_policies()
        for name in sorted(invalid):
            errors.append(invalid[name])

        if not config.repositories:
            errors.append("No repositories configured")

        if config.warm_pool.enabled:
            policies, _ = config.resolve_policies()
            for name, policy in sorted(policies.items()):
                if policy.template not in config.warm_pool.pool_sizes:
                    errors.append(
                        f"Repository '{name}' uses template '{policy.template}' "
                        f"which has no warm pool size"
                    )

        if config.orchestrator.tick_budget > config.orchestrator.tick_interval:
            errors.append("orchestrator.tick_budget must not exceed orchestrator.tick_interval")

        return errors

    def _create_config_from_dict(self, data: Dict[str, Any]) -> AutoscalerConfig:
        """Create configuration object from dictionary"""
        unknown = set(data) - set(self.SECTIONS) - {"defaults", "repositories"}
        if unknown:
            raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")

        return AutoscalerConfig(
            defaults=dict(data.get('defaults') or {}),
            repositories=dict(data.get('repositories') or {}),
            orchestrator=OrchestratorConfig(**(data.get('orchestrator') or {})),
            predictor=PredictorConfig(**(data.get('predictor') or {})),
            warm_pool=WarmPoolConfig(**(data.get('warm_pool') or {})),
            retry_policy=RetryPolicy(**(data.get('retry_policy') or {})),
            timeouts=TimeoutConfig(**(data.get('timeouts') or {})),
            monitoring=MonitoringConfig(**(data.get('monitoring') or {})),
        )

    def _deep_merge_dicts(self, dict1: Dict[str, Any], dict2: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries"""
        result = dict1.copy()

        for key, value in dict2.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge_dicts(result[key], value)
            else:
                result[key] = value

        return result

    def _is_float(self, value: str) -> bool:
        """Check if string represents a float"""
        try:
            float(value)
            return True
        except ValueError:
            return False


def load_config_from_file(config_path: Union[str, Path]) -> AutoscalerConfig:
    """Convenience function to load configuration from a file."""
    manager = ConfigManager()
    return manager.load_from_file(config_path)


def load_config_with_env_override(config_path: Optional[Union[str, Path]] = None,
                                  env_prefix: str = "RUNNER_AUTOSCALER_") -> AutoscalerConfig:
    """
    Load configuration from file with environment variable overrides.

    Raises:
        ConfigError: If the file or the environment overrides are invalid
    """
    manager = ConfigManager()

    if config_path:
        base_config = manager.load_from_file(config_path)
    else:
        base_config = manager.load_default_config()

    env_config_dict = manager.load_from_env(env_prefix)

    if env_config_dict:
        return manager.merge_dict(base_config, env_config_dict)

    return base_config


def create_default_config_file(config_path: Union[str, Path]) -> None:
    """Create a default configuration file with example repositories."""
    manager = ConfigManager()
    config = AutoscalerConfig(
        defaults={
            "mode": "balanced",
            "dedicated_count": 1,
            "max_dynamic": 3,
            "idle_timeout": "5min",
            "check_interval": "30s",
        },
        repositories={
            "example-org/api-service": {},
            "example-org/web-frontend": {"mode": "aggressive", "max_dynamic": 5},
        },
    )
    manager.save_to_file(config_path, config)
