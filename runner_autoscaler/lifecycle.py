"""
Runner lifecycle management.

The lifecycle manager owns every RunnerInstance. It provisions runners
(from the warm pool when possible), drains and retires them, and reconciles
its registry against the provider and substrate on every tick.

Callers serialize operations per repository; the registry lock only keeps
reads from other threads consistent.
"""

import logging
import random
import threading
from collections import defaultdict
from datetime import timedelta
from typing import Dict, List, Optional, Set

from .clock import Clock, SystemClock
from .config import RetryPolicy, ScalingPolicy, TimeoutConfig
from .errors import (
    AutoscalerError, ProviderError, TransientProviderError, RetryError,
    OperationCancelled, ProvisioningError,
)
from .events import EventBus
from .models import (
    Repository, RunnerInstance, RunnerClass, RunnerState, ObservedState,
    ScaleResult, ReconcileReport, EventType, WarmSlot,
)
from .providers import (
    WorkQueueProvider, ExecutionSubstrate, InstanceSpec, ProbeResult,
    LABEL_REPOSITORY,
)
from .retry import TimeoutCaller, retry_call
from .state_manager import RunnerStateTracker
from .warm_pool import WarmPoolManager

logger = logging.getLogger(__name__)

ACTIVE_STATES = {RunnerState.PENDING, RunnerState.REGISTERING, RunnerState.IDLE, RunnerState.BUSY}
LIVE_STATES = {RunnerState.IDLE, RunnerState.BUSY, RunnerState.DRAINING}


class RunnerLifecycleManager:
    """Creates, tracks, drains and reconciles runners per repository"""

    def __init__(self,
                 provider: WorkQueueProvider,
                 substrate: ExecutionSubstrate,
                 clock: Optional[Clock] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 timeouts: Optional[TimeoutConfig] = None,
                 warm_pool: Optional[WarmPoolManager] = None,
                 events: Optional[EventBus] = None,
                 caller: Optional[TimeoutCaller] = None,
                 cancel_event: Optional[threading.Event] = None,
                 rng: Optional[random.Random] = None):
        self.provider = provider
        self.substrate = substrate
        self.clock = clock or SystemClock()
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeouts = timeouts or TimeoutConfig()
        self.warm_pool = warm_pool
        self.events = events or EventBus()
        self._owns_caller = caller is None
        self.caller = caller or TimeoutCaller(default_timeout=self.timeouts.provider_call)
        self.cancel_event = cancel_event or threading.Event()
        self.rng = rng

        self.tracker = RunnerStateTracker()
        self._lock = threading.RLock()
        self._repositories: Dict[str, Repository] = {}
        self._policies: Dict[str, ScalingPolicy] = {}
        self._runners: Dict[str, Dict[str, RunnerInstance]] = defaultdict(dict)

    # Registration

    def register_repository(self, repository: Repository, policy: ScalingPolicy) -> None:
        with self._lock:
            self._repositories[repository.name] = repository
            self._policies[repository.name] = policy

    def update_policy(self, repository: str, policy: ScalingPolicy) -> None:
        with self._lock:
            self._policies[repository] = policy

    def policy(self, repository: str) -> ScalingPolicy:
        with self._lock:
            if repository not in self._policies:
                raise KeyError(f"Repository not registered: {repository}")
            return self._policies[repository]

    # Queries

    def get_runners(self, repository: str, runner_class: Optional[RunnerClass] = None,
                    states: Optional[Set[RunnerState]] = None) -> List[RunnerInstance]:
        with self._lock:
            runners = list(self._runners[repository].values())
        if runner_class is not None:
            runners = [r for r in runners if r.runner_class == runner_class]
        if states is not None:
            runners = [r for r in runners if r.state in states]
        return runners

    def counts(self, repository: str) -> Dict[str, int]:
        runners = self.get_runners(repository)
        dedicated = [r for r in runners if r.is_dedicated and r.state in ACTIVE_STATES]
        dynamic = [r for r in runners if not r.is_dedicated
                   and (r.state in ACTIVE_STATES or r.state == RunnerState.DRAINING)]
        return {
            "dedicated": len(dedicated),
            "dynamic": len(dynamic),
            "busy": sum(1 for r in runners if r.state == RunnerState.BUSY),
            "failed": sum(1 for r in runners if r.state == RunnerState.FAILED),
            "total": len(dedicated) + len(dynamic),
        }

    # Operations

    def ensure_dedicated(self, repository: str) -> ScaleResult:
        """Create dedicated runners until the policy count is met; no-op when satisfied"""
        policy = self.policy(repository)
        existing = self.get_runners(repository, RunnerClass.DEDICATED, ACTIVE_STATES)
        missing = policy.dedicated_count - len(existing)

        result = ScaleResult(repository=repository, requested=max(0, missing))
        for _ in range(max(0, missing)):
            if self.cancel_event.is_set():
                result.cancelled = True
                break
            runner = self._provision(repository, RunnerClass.DEDICATED)
            if runner.state == RunnerState.FAILED:
                result.failed.append(runner)
            else:
                result.runners.append(runner)

        if result.runners:
            logger.info(f"Created {len(result.runners)} dedicated runner(s) for {repository}")
        return result

    def scale_up(self, repository: str, count: int) -> ScaleResult:
        """Add dynamic runners, claiming warm slots before provisioning directly"""
        policy = self.policy(repository)
        result = ScaleResult(repository=repository, requested=count)

        for _ in range(count):
            if self.cancel_event.is_set():
                result.cancelled = True
                break

            runner = None
            if self.warm_pool is not None:
                slot = self.warm_pool.claim(policy.template)
                if slot is not None:
                    runner = self._adopt_slot(repository, slot)
                    if runner is not None:
                        result.from_warm_pool += 1

            if runner is None:
                runner = self._provision(repository, RunnerClass.DYNAMIC)

            if runner.state == RunnerState.FAILED:
                result.failed.append(runner)
            else:
                result.runners.append(runner)

        logger.info(f"Scale-up for {repository}: {result.completed}/{count} runner(s) ready"
                    f" ({result.from_warm_pool} from warm pool, {len(result.failed)} failed)")
        return result

    def scale_down(self, repository: str, count: int) -> ScaleResult:
        """Retire up to `count` idle dynamic runners, longest idle first"""
        policy = self.policy(repository)
        now = self.clock.now()
        candidates = [r for r in self.get_runners(repository, RunnerClass.DYNAMIC, {RunnerState.IDLE})
                      if r.idle_for(now) >= policy.idle_timeout]
        candidates.sort(key=lambda r: r.idle_for(now), reverse=True)

        result = ScaleResult(repository=repository, requested=count)
        for runner in candidates[:count]:
            if self._retire(runner, "scale-down"):
                result.runners.append(runner)
            else:
                result.failed.append(runner)

        logger.info(f"Scale-down for {repository}: retired {result.completed}/{count} runner(s)")
        return result

    def observe(self, repository: str) -> ObservedState:
        """Sync busy/idle state from the provider and summarise capacity"""
        statuses = {s.name: s for s in self._call(self.provider.list_runners, repository,
                                                  description=f"list_runners({repository})")}
        queued = self._call(self.provider.count_queued_jobs, repository,
                            description=f"count_queued_jobs({repository})")
        now = self.clock.now()

        for runner in self.get_runners(repository, states={RunnerState.IDLE, RunnerState.BUSY}):
            status = statuses.get(runner.name)
            busy = bool(status and status.online and status.busy)
            runner.current_job_id = status.job_id if busy else None
            if busy and runner.state == RunnerState.IDLE:
                self.tracker.transition(runner, RunnerState.BUSY, now, "job assigned")
            elif busy:
                runner.last_busy_at = now
            elif runner.state == RunnerState.BUSY:
                runner.last_busy_at = now
                self.tracker.transition(runner, RunnerState.IDLE, now, "job finished")

        runners = self.get_runners(repository)
        dedicated = [r for r in runners if r.is_dedicated and r.state in ACTIVE_STATES]
        dynamic = [r for r in runners if not r.is_dedicated
                   and (r.state in ACTIVE_STATES or r.state == RunnerState.DRAINING)]

        return ObservedState(
            repository=repository,
            observed_at=now,
            dedicated_total=len(dedicated),
            dedicated_busy=sum(1 for r in dedicated if r.state == RunnerState.BUSY),
            dynamic_total=len(dynamic),
            dynamic_busy=sum(1 for r in dynamic if r.state == RunnerState.BUSY),
            queued_jobs=int(queued),
            dynamic_idle_seconds=[r.idle_for(now) for r in dynamic if r.state == RunnerState.IDLE],
        )

    def reconcile(self, repository: str) -> ReconcileReport:
        """
        Correct drift between the registry and the outside world.

        Raises:
            AutoscalerError: If the provider or substrate cannot be listed
        """
        report = ReconcileReport(repository=repository)
        now = self.clock.now()
        stale_after = timedelta(seconds=self.timeouts.stale_provisioning)

        for runner in self.get_runners(repository, states={RunnerState.FAILED}):
            if runner.handle:
                self._remove_instance_quietly(runner.handle)
            self._forget(runner)
            report.removed_failed.append(runner.name)

        instances = {i.handle: i for i in self._call(
            self.substrate.list_instances, {LABEL_REPOSITORY: repository},
            description=f"list_instances({repository})")}
        statuses = {s.name: s for s in self._call(
            self.provider.list_runners, repository,
            description=f"list_runners({repository})")}

        known_handles = {r.handle for r in self.get_runners(repository) if r.handle}

        for handle, info in instances.items():
            if handle not in known_handles:
                logger.warning(f"Removing orphaned instance {info.name} ({handle}) for {repository}")
                self._remove_instance_quietly(handle)
                report.removed_orphans.append(info.name)

        for runner in self.get_runners(repository, states=LIVE_STATES):
            if runner.handle not in instances:
                logger.warning(f"Runner {runner.name} lost its environment; removing")
                self.tracker.transition_along(runner, RunnerState.TERMINATED, now, "environment vanished")
                self._deregister_quietly(runner)
                self._forget(runner)
                self._emit(EventType.RUNNER_REMOVED, runner, {"reason": "vanished"})
                report.vanished.append(runner.name)

        for runner in self.get_runners(repository, states={RunnerState.IDLE, RunnerState.BUSY}):
            status = statuses.get(runner.name)
            if status is None or not status.online:
                if self._reregister(runner):
                    report.reregistered.append(runner.name)

        for runner in self.get_runners(repository, states={RunnerState.PENDING, RunnerState.REGISTERING}):
            if now - runner.state_changed_at >= stale_after:
                logger.warning(f"Rolling back stale {runner.state.value} runner {runner.name}")
                if runner.handle:
                    self._remove_instance_quietly(runner.handle)
                self.tracker.transition(runner, RunnerState.FAILED, now, "stale provisioning")
                self._forget(runner)
                report.rolled_back.append(runner.name)

        for runner in self.get_runners(repository, states={RunnerState.DRAINING}):
            if self._finish_retire(runner, "reconcile"):
                report.finished_draining.append(runner.name)

        policy = self.policy(repository)
        dedicated = self.get_runners(repository, RunnerClass.DEDICATED, ACTIVE_STATES)
        if len(dedicated) > policy.dedicated_count:
            extras = [r for r in dedicated if r.state == RunnerState.IDLE]
            for runner in extras[:len(dedicated) - policy.dedicated_count]:
                if self._retire(runner, "excess dedicated"):
                    report.dedicated_removed += 1
        elif len(dedicated) < policy.dedicated_count:
            report.dedicated_created = len(self.ensure_dedicated(repository).runners)

        if report.drift_corrected:
            logger.info(f"Reconciled {repository}: {report}")
        return report

    def close(self) -> None:
        if self._owns_caller:
            self.caller.shutdown()

    # Provisioning

    def _provision(self, repository: str, runner_class: RunnerClass) -> RunnerInstance:
        """Create one runner; returns it IDLE on success or FAILED after retries"""
        runner = self._new_runner(repository, runner_class)

        try:
            retry_call(self._provision_attempt, runner,
                       policy=self.retry_policy, clock=self.clock, cancel=self.cancel_event,
                       rng=self.rng, description=f"provision {runner.name}")
        except (RetryError, ProviderError, OperationCancelled) as e:
            cause = e.last_exception if isinstance(e, RetryError) and e.last_exception else e
            failure = ProvisioningError(
                f"{runner.name} failed after {runner.attempts} attempt(s): {cause}"
            )
            runner.error = str(failure)
            self.tracker.transition(runner, RunnerState.FAILED, self.clock.now(), runner.error)
            logger.error(f"Provisioning failed for {repository}: {failure}")
            self._emit(EventType.RUNNER_FAILED, runner, {"error": runner.error,
                                                         "attempts": runner.attempts})
            return runner

        self._emit(EventType.RUNNER_CREATED, runner, {"from_warm_pool": False})
        return runner

    def _provision_attempt(self, runner: RunnerInstance) -> None:
        runner.attempts += 1
        self.tracker.transition(runner, RunnerState.REGISTERING, self.clock.now(),
                                f"attempt {runner.attempts}")
        try:
            token = self.caller.call(self.provider.issue_registration_credential, runner.repository)
            runner.handle = self.caller.call(self.substrate.create_instance,
                                             self._instance_spec(runner, token))
            self._wait_ready(runner)
        except AutoscalerError:
            self._rollback_attempt(runner)
            raise
        except Exception as e:
            self._rollback_attempt(runner)
            raise ProviderError(f"Unexpected error provisioning {runner.name}: {e}") from e

        self.tracker.transition(runner, RunnerState.IDLE, self.clock.now(), "registered")

    def _wait_ready(self, runner: RunnerInstance) -> None:
        deadline = self.clock.now() + timedelta(seconds=self.timeouts.readiness)
        while True:
            result = self.caller.call(self.substrate.probe, runner.handle)
            if result == ProbeResult.HEALTHY:
                return
            if result == ProbeResult.UNHEALTHY:
                raise TransientProviderError(f"Instance {runner.handle} failed its readiness probe")
            if self.clock.now() >= deadline:
                raise TransientProviderError(
                    f"Instance {runner.handle} not ready after {self.timeouts.readiness:.0f}s"
                )
            if not self.clock.sleep(self.timeouts.readiness_poll, self.cancel_event):
                raise OperationCancelled(f"Readiness wait for {runner.name} cancelled")

    def _rollback_attempt(self, runner: RunnerInstance) -> None:
        if runner.handle:
            self._remove_instance_quietly(runner.handle)
            runner.handle = None
        self.tracker.transition(runner, RunnerState.PENDING, self.clock.now(), "rolled back")

    def _adopt_slot(self, repository: str, slot: WarmSlot) -> Optional[RunnerInstance]:
        """Bind a claimed warm slot to the repository; None if the slot was unusable"""
        runner = self._new_runner(repository, RunnerClass.DYNAMIC)
        runner.handle = slot.handle
        runner.from_warm_pool = True
        runner.attempts = 1
        now = self.clock.now()
        self.tracker.transition(runner, RunnerState.REGISTERING, now, f"warm slot {slot.handle}")

        try:
            token = self.caller.call(self.provider.issue_registration_credential, repository)
            self.caller.call(self.substrate.configure_instance, slot.handle,
                             self._instance_spec(runner, token))
        except Exception as e:
            logger.warning(f"Warm slot {slot.handle} unusable for {repository}: {e}")
            self._remove_instance_quietly(slot.handle)
            runner.handle = None
            runner.error = str(e)
            self.tracker.transition(runner, RunnerState.FAILED, self.clock.now(), "warm slot unusable")
            self._forget(runner)
            return None

        self.tracker.transition(runner, RunnerState.IDLE, self.clock.now(), "registered from warm pool")
        self._emit(EventType.RUNNER_CREATED, runner, {"from_warm_pool": True})
        return runner

    def _reregister(self, runner: RunnerInstance) -> bool:
        try:
            token = self._call(self.provider.issue_registration_credential, runner.repository,
                               description=f"credential for {runner.name}")
            self._call(self.substrate.configure_instance, runner.handle,
                       self._instance_spec(runner, token),
                       description=f"re-register {runner.name}")
        except (RetryError, ProviderError, OperationCancelled) as e:
            logger.warning(f"Could not re-register {runner.name}: {e}")
            return False

        logger.info(f"Re-registered runner {runner.name} for {runner.repository}")
        self._emit(EventType.RUNNER_REREGISTERED, runner, {})
        return True

    # Retirement

    def _retire(self, runner: RunnerInstance, reason: str) -> bool:
        self.tracker.transition(runner, RunnerState.DRAINING, self.clock.now(), reason)
        return self._finish_retire(runner, reason)

    def _finish_retire(self, runner: RunnerInstance, reason: str) -> bool:
        """Wait for in-flight work, release resources and terminate; False leaves it draining"""
        try:
            self._wait_drained(runner)
            self._call(self.provider.deregister_runner, runner.repository, runner.name,
                       description=f"deregister {runner.name}")
            if runner.handle:
                self._call(self.substrate.remove_instance, runner.handle,
                           description=f"remove {runner.name}")
        except (RetryError, ProviderError, OperationCancelled) as e:
            logger.warning(f"Retirement of {runner.name} incomplete, will resume: {e}")
            return False

        self.tracker.transition(runner, RunnerState.TERMINATED, self.clock.now(), reason)
        self._forget(runner)
        self._emit(EventType.RUNNER_REMOVED, runner, {"reason": reason})
        return True

    def _wait_drained(self, runner: RunnerInstance) -> None:
        deadline = self.clock.now() + timedelta(seconds=self.timeouts.drain)
        while True:
            statuses = self._call(self.provider.list_runners, runner.repository,
                                  description=f"drain check {runner.name}")
            status = next((s for s in statuses if s.name == runner.name), None)
            if status is None or not status.busy:
                return

            if self.clock.now() >= deadline:
                logger.warning(f"Drain timeout for {runner.name}; cancelling job {status.job_id}")
                if status.job_id:
                    self._call(self.provider.cancel_queued_work, runner.repository, status.job_id,
                               description=f"cancel {status.job_id}")
                return

            if not self.clock.sleep(self.timeouts.readiness_poll, self.cancel_event):
                raise OperationCancelled(f"Drain of {runner.name} cancelled")

    # Helpers

    def _call(self, func, *args, description: str = ""):
        return retry_call(self.caller.call, func, *args,
                          policy=self.retry_policy, clock=self.clock,
                          cancel=self.cancel_event, rng=self.rng,
                          description=description or getattr(func, "__name__", "call"))

    def _new_runner(self, repository: str, runner_class: RunnerClass) -> RunnerInstance:
        with self._lock:
            repo = self._repositories.get(repository) or Repository(name=repository)
            policy = self._policies.get(repository)
        runner = RunnerInstance(repository=repository, runner_class=runner_class,
                                created_at=self.clock.now(),
                                template=policy.template if policy else "default")
        runner.name = f"runner-{runner_class.value}-{repo.slug}-{runner.id[:6]}"
        with self._lock:
            self._runners[repository][runner.id] = runner
        return runner

    def _forget(self, runner: RunnerInstance) -> None:
        with self._lock:
            self._runners[runner.repository].pop(runner.id, None)

    def _instance_spec(self, runner: RunnerInstance, token: str) -> InstanceSpec:
        with self._lock:
            repo = self._repositories.get(runner.repository)
        return InstanceSpec(
            name=runner.name,
            template=runner.template,
            repository=runner.repository,
            runner_class=runner.runner_class,
            registration_token=token,
            ephemeral=not runner.is_dedicated,
            labels=dict(repo.labels) if repo else {},
        )

    def _remove_instance_quietly(self, handle: str) -> None:
        try:
            self.caller.call(self.substrate.remove_instance, handle)
        except AutoscalerError as e:
            logger.warning(f"Failed to remove instance {handle}; reconciliation will retry: {e}")

    def _deregister_quietly(self, runner: RunnerInstance) -> None:
        try:
            self.caller.call(self.provider.deregister_runner, runner.repository, runner.name)
        except AutoscalerError as e:
            logger.warning(f"Failed to deregister {runner.name}: {e}")

    def _emit(self, event_type: EventType, runner: RunnerInstance, payload: Dict) -> None:
        data = {"runner_id": runner.id, "name": runner.name, "class": runner.runner_class.value}
        data.update(payload)
        self.events.emit(event_type, runner.repository, self.clock.now(), data)
