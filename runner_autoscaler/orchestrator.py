"""
Control loop for the runner autoscaler.

Each tick fans repositories out over a bounded worker pool. A repository is
processed by at most one worker at a time (per-repository lock taken without
blocking); a repository still busy from an earlier tick is skipped. Per
repository the order is fixed: dedicated repair, observe, record demand,
forecast, decide, validate, enact, reconcile.

Failures stay inside the repository that produced them. After
`failure_threshold` consecutive failed ticks the repository is marked
degraded: scale-up is suppressed while scale-down and cleanup continue, and
a full probe runs on a backoff interval until one succeeds.
"""

import logging
import random
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List, Callable, Set

from .clock import Clock, SystemClock
from .config import AutoscalerConfig, ScalingPolicy
from .controller import ScalingController
from .errors import OrchestratorError, OperationCancelled, PolicyViolationError
from .events import EventBus
from .lifecycle import RunnerLifecycleManager
from .models import (
    Repository, ScalingAction, ScalingDecision, ObservedState, EventType,
    ForecastHorizon, Event,
)
from .monitoring import HostResourceMonitor, determine_health
from .predictor import DemandPredictor
from .providers import WorkQueueProvider, ExecutionSubstrate
from .retry import TimeoutCaller
from .warm_pool import WarmPoolManager

logger = logging.getLogger(__name__)

MAX_PROBE_BACKOFF = 8


@dataclass
class RepositoryHealth:
    """Failure tracking for one repository"""
    consecutive_failures: int = 0
    total_failures: int = 0
    degraded: bool = False
    degraded_since: Optional[datetime] = None
    last_probe_at: Optional[datetime] = None
    probe_backoff: int = 1
    scale_up_suppressed: bool = False
    misconfigured: Optional[str] = None
    last_error: Optional[str] = None
    last_scaled_at: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    ticks: int = 0


class Orchestrator:
    """
    Drives the control loop over every configured repository.

    Public methods do not raise for per-repository failures; events and the
    status snapshot report them.
    """

    def __init__(self,
                 config: AutoscalerConfig,
                 provider: WorkQueueProvider,
                 substrate: ExecutionSubstrate,
                 clock: Optional[Clock] = None,
                 predictor: Optional[DemandPredictor] = None,
                 controller: Optional[ScalingController] = None,
                 events: Optional[EventBus] = None,
                 warm_pool: Optional[WarmPoolManager] = None,
                 rng: Optional[random.Random] = None):
        self.config = config
        self.clock = clock or SystemClock()
        self.cancel_event = threading.Event()
        self.events = events or EventBus(config.monitoring.event_history)

        concurrency = config.orchestrator.concurrency
        self.caller = TimeoutCaller(default_timeout=config.timeouts.provider_call,
                                    max_workers=concurrency * 2 + 2)

        if warm_pool is None and config.warm_pool.enabled:
            warm_pool = WarmPoolManager(substrate, config.warm_pool, self.clock, caller=self.caller)
        self.warm_pool = warm_pool

        self.predictor = predictor or DemandPredictor(config.predictor, self.clock)
        self.controller = controller or ScalingController(config.orchestrator.min_forecast_confidence)
        self.lifecycle = RunnerLifecycleManager(
            provider, substrate,
            clock=self.clock,
            retry_policy=config.retry_policy,
            timeouts=config.timeouts,
            warm_pool=self.warm_pool,
            events=self.events,
            caller=self.caller,
            cancel_event=self.cancel_event,
            rng=rng,
        )
        self.host_monitor = HostResourceMonitor()

        self._lock = threading.RLock()
        self._policies: Dict[str, ScalingPolicy] = {}
        self._repositories: Dict[str, Repository] = {}
        self._health: Dict[str, RepositoryHealth] = {}
        self._repo_locks: Dict[str, threading.Lock] = {}
        self._decisions: deque = deque(maxlen=config.monitoring.decision_history)

        self._executor = ThreadPoolExecutor(max_workers=concurrency,
                                            thread_name_prefix="autoscaler-tick")
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._stopped = False
        self._initialized = False
        self._loop_failed = False
        self._tick_count = 0

        self._load_repositories()

    def _load_repositories(self) -> None:
        policies, invalid = self.config.resolve_policies()
        default_policy = self.config.default_policy()

        for name in self.config.repositories:
            health = RepositoryHealth()
            if name in invalid:
                # Dedicated runners are still kept alive under the global default
                policy = default_policy
                health.misconfigured = invalid[name]
                logger.error(f"Repository {name} excluded from scaling: {invalid[name]}")
            else:
                policy = policies[name]

            repository = Repository(name=name, template=policy.template)
            self._repositories[name] = repository
            self._policies[name] = policy
            self._health[name] = health
            self._repo_locks[name] = threading.Lock()
            self.lifecycle.register_repository(repository, policy)

    @property
    def repositories(self) -> List[str]:
        return list(self._repositories)

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, listener: Callable[[Event], None],
                  event_types: Optional[Set[EventType]] = None) -> None:
        self.events.subscribe(listener, event_types)

    def is_degraded(self, repository: str) -> bool:
        with self._lock:
            return self._health[repository].degraded

    def get_repository_health(self, repository: str) -> RepositoryHealth:
        with self._lock:
            health = self._health[repository]
            return RepositoryHealth(**vars(health))

    def get_decision_history(self, repository: Optional[str] = None) -> List[ScalingDecision]:
        with self._lock:
            decisions = list(self._decisions)
        if repository is not None:
            decisions = [d for d in decisions if d.repository == repository]
        return decisions

    def initialize(self) -> None:
        """Announce misconfigured repositories; idempotent"""
        with self._lock:
            if self._initialized:
                return
            self._initialized = True

        now = self.clock.now()
        for name, health in self._health.items():
            if health.misconfigured:
                self.events.emit(EventType.REPOSITORY_MISCONFIGURED, name, now,
                                 {"error": health.misconfigured})

    # Tick

    def tick(self) -> Dict[str, str]:
        """
        Run one control-loop pass over every repository.

        Returns:
            Outcome per repository: ok, failed, degraded, misconfigured,
            cancelled, waiting (checked less than check_interval ago),
            skipped (previous tick still running) or running (did not
            finish within the tick budget)

        Raises:
            OrchestratorError: If no worker can be obtained
        """
        if self._stopped:
            raise OrchestratorError("Orchestrator has been stopped")

        self.initialize()
        started = time.monotonic()
        outcomes: Dict[str, str] = {}
        futures = {}

        for name in self.repositories:
            lock = self._repo_locks[name]
            if not lock.acquire(blocking=False):
                logger.debug(f"Skipping {name}: previous tick still in progress")
                outcomes[name] = "skipped"
                continue
            try:
                futures[self._executor.submit(self._run_repository, name, lock)] = name
            except RuntimeError as e:
                lock.release()
                self._loop_failed = True
                raise OrchestratorError(f"Cannot schedule repository work: {e}")

        done, not_done = wait(futures, timeout=self.config.orchestrator.tick_budget)
        for future in done:
            outcomes[futures[future]] = future.result()
        for future in not_done:
            name = futures[future]
            logger.warning(f"Tick for {name} exceeded the tick budget; continuing in background")
            outcomes[name] = "running"

        with self._lock:
            self._tick_count += 1

        logger.debug(f"Tick {self._tick_count} finished in {time.monotonic() - started:.2f}s: {outcomes}")
        return outcomes

    def _run_repository(self, name: str, lock: threading.Lock) -> str:
        try:
            return self._process_repository(name)
        finally:
            lock.release()

    def _process_repository(self, name: str) -> str:
        if self.cancel_event.is_set():
            return "cancelled"

        now = self.clock.now()
        probing = False
        with self._lock:
            health = self._health[name]
            policy = self._policies[name]
            if (health.last_tick_at is not None
                    and now - health.last_tick_at < timedelta(seconds=policy.check_interval)):
                return "waiting"
            health.ticks += 1
            health.last_tick_at = now

            if health.degraded and not health.misconfigured:
                interval = timedelta(seconds=self.config.orchestrator.degraded_probe_interval
                                     * health.probe_backoff)
                if health.last_probe_at is None or now - health.last_probe_at >= interval:
                    probing = True
                    health.last_probe_at = now

        if health.misconfigured:
            return self._maintain_misconfigured(name)

        if probing:
            logger.info(f"Probing degraded repository {name}")

        try:
            dedicated = self.lifecycle.ensure_dedicated(name)
            provisioning_failed = bool(dedicated.failed)

            state = self.lifecycle.observe(name)
            state.last_scaled_at = health.last_scaled_at
            self.predictor.record(name, state.demand, now)
            forecast = self.predictor.forecast(name, ForecastHorizon.SHORT, now)

            decision = self.controller.decide(name, state, forecast, policy, now)
            with self._lock:
                self._decisions.append(decision)

            if not decision.is_noop:
                if not self._apply(name, decision, state, policy, health, probing):
                    provisioning_failed = True

            self.lifecycle.reconcile(name)
            with self._lock:
                health.scale_up_suppressed = False
        except OperationCancelled as e:
            logger.info(f"Tick for {name} cancelled: {e}")
            return "cancelled"
        except Exception as e:
            logger.error(f"Tick failed for {name}: {e}")
            self._record_failure(name, str(e), probing)
            return "degraded" if health.degraded else "failed"

        if provisioning_failed:
            self._record_failure(name, "provisioning failed", probing)
            return "degraded" if health.degraded else "failed"

        self._record_success(name, probing)
        return "degraded" if health.degraded else "ok"

    def _maintain_misconfigured(self, name: str) -> str:
        try:
            self.lifecycle.ensure_dedicated(name)
            self.lifecycle.reconcile(name)
        except OperationCancelled:
            return "cancelled"
        except Exception as e:
            logger.error(f"Dedicated maintenance failed for misconfigured {name}: {e}")
        return "misconfigured"

    def _apply(self, name: str, decision: ScalingDecision, state: ObservedState,
               policy: ScalingPolicy, health: RepositoryHealth, probing: bool) -> bool:
        """Enact a decision; returns False when provisioning or retirement failed"""
        now = self.clock.now()
        try:
            self.controller.validate(decision, state, policy, now)
        except PolicyViolationError as e:
            logger.error(f"Rejected decision for {name}: {e}")
            self.events.emit(EventType.DECISION_REJECTED, name, now,
                             {"decision": decision.to_dict(), "error": str(e)})
            return True

        if decision.action == ScalingAction.SCALE_UP:
            if health.degraded and not probing:
                logger.warning(f"Scale-up({decision.amount}) suppressed for degraded {name}")
                return True
            if health.scale_up_suppressed:
                logger.warning(f"Scale-up({decision.amount}) suppressed for {name} "
                               f"until the next successful reconciliation")
                return True

            result = self.lifecycle.scale_up(name, decision.amount)
            if result.completed:
                with self._lock:
                    health.last_scaled_at = now
                self.events.emit(EventType.SCALING_UP, name, now, {
                    "requested": decision.amount,
                    "created": result.completed,
                    "from_warm_pool": result.from_warm_pool,
                    "failed": len(result.failed),
                    "reason": decision.reason,
                    "trigger": decision.trigger.value,
                })
            if result.failed:
                with self._lock:
                    health.scale_up_suppressed = True
                return False
            return True

        result = self.lifecycle.scale_down(name, decision.amount)
        if result.completed:
            with self._lock:
                health.last_scaled_at = now
            self.events.emit(EventType.SCALING_DOWN, name, now, {
                "requested": decision.amount,
                "removed": result.completed,
                "reason": decision.reason,
                "trigger": decision.trigger.value,
            })
        return not result.failed

    def _record_failure(self, name: str, error: str, probing: bool) -> None:
        now = self.clock.now()
        with self._lock:
            health = self._health[name]
            health.consecutive_failures += 1
            health.total_failures += 1
            health.last_error = error
            if probing:
                health.probe_backoff = min(health.probe_backoff * 2, MAX_PROBE_BACKOFF)
            became_degraded = (not health.degraded
                               and health.consecutive_failures >= self.config.orchestrator.failure_threshold)
            if became_degraded:
                health.degraded = True
                health.degraded_since = now
                health.last_probe_at = now
                health.probe_backoff = 1
            failures = health.consecutive_failures

        if became_degraded:
            logger.warning(f"Repository {name} degraded after {failures} consecutive failures: {error}")
            self.events.emit(EventType.REPOSITORY_DEGRADED, name, now,
                             {"consecutive_failures": failures, "error": error})

    def _record_success(self, name: str, probing: bool) -> None:
        now = self.clock.now()
        with self._lock:
            health = self._health[name]
            recovered = health.degraded and probing
            if not health.degraded or recovered:
                health.consecutive_failures = 0
            if recovered:
                degraded_for = (now - health.degraded_since).total_seconds() if health.degraded_since else 0.0
                health.degraded = False
                health.degraded_since = None
                health.probe_backoff = 1
                health.last_error = None

        if recovered:
            logger.info(f"Repository {name} recovered")
            self.events.emit(EventType.REPOSITORY_RECOVERED, name, now,
                             {"degraded_seconds": degraded_for})

    # Lifecycle

    def start(self, interval: Optional[float] = None) -> None:
        """Run ticks on a background thread every `interval` seconds"""
        with self._lock:
            if self._running:
                return
            if self._stopped:
                raise OrchestratorError("Orchestrator has been stopped")

            self._running = True
            interval = interval or self.config.orchestrator.tick_interval
            if self.warm_pool is not None:
                self.warm_pool.start()
            self._thread = threading.Thread(target=self._tick_loop, args=(interval,),
                                            daemon=True, name="autoscaler-loop")
            self._thread.start()
            logger.info(f"Orchestrator started for {len(self._repositories)} repositories "
                        f"(interval {interval:.0f}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel in-flight work, wait for workers and release resources"""
        timeout = timeout or self.config.orchestrator.stop_timeout
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            was_running = self._running
            self._running = False

        self.cancel_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

        self._executor.shutdown(wait=True, cancel_futures=True)
        if self.warm_pool is not None:
            self.warm_pool.stop(drain=True)
        self.caller.shutdown()

        if was_running:
            logger.info("Orchestrator stopped")

    def _tick_loop(self, interval: float) -> None:
        while not self.cancel_event.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except OrchestratorError as e:
                logger.error(f"Control loop failed: {e}")
                self._loop_failed = True
                break
            elapsed = time.monotonic() - started
            self.cancel_event.wait(max(0.0, interval - elapsed))

    # Reporting

    def status_snapshot(self) -> Dict[str, Any]:
        """Per-repository counts and flags plus aggregate totals"""
        repositories = {}
        totals = {"dedicated": 0, "dynamic": 0, "busy": 0, "total": 0, "failed": 0}

        with self._lock:
            health = {name: RepositoryHealth(**vars(h)) for name, h in self._health.items()}

        for name in self.repositories:
            counts = self.lifecycle.counts(name)
            h = health[name]
            repositories[name] = {
                **counts,
                "degraded": h.degraded,
                "misconfigured": h.misconfigured is not None,
                "consecutive_failures": h.consecutive_failures,
                "last_scaled_at": h.last_scaled_at.isoformat() if h.last_scaled_at else None,
            }
            for key in totals:
                totals[key] += counts[key]

        return {
            "timestamp": self.clock.now().isoformat(),
            "repositories": repositories,
            "totals": totals,
            "degraded": sorted(n for n, h in health.items() if h.degraded),
            "misconfigured": sorted(n for n, h in health.items() if h.misconfigured),
        }

    def health_report(self) -> Dict[str, Any]:
        """Snapshot plus overall status, host resources and component statistics"""
        snapshot = self.status_snapshot()
        status = determine_health(len(self._repositories), snapshot["degraded"],
                                  snapshot["misconfigured"], self._loop_failed)
        return {
            "status": status.value,
            "running": self._running,
            "ticks": self._tick_count,
            "totals": snapshot["totals"],
            "degraded_repositories": snapshot["degraded"],
            "misconfigured_repositories": snapshot["misconfigured"],
            "host": self.host_monitor.sample(),
            "warm_pool": self.warm_pool.get_statistics() if self.warm_pool else None,
            "predictor": self.predictor.get_statistics(),
            "events": self.events.get_counts(),
        }
