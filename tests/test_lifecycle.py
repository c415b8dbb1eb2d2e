"""
Tests for the runner lifecycle manager.
"""

import random

import pytest

from runner_autoscaler.clock import ManualClock
from runner_autoscaler.config import RetryPolicy, ScalingPolicy, TimeoutConfig, WarmPoolConfig
from runner_autoscaler.errors import ProviderError
from runner_autoscaler.events import EventBus
from runner_autoscaler.lifecycle import RunnerLifecycleManager
from runner_autoscaler.models import Repository, RunnerClass, RunnerState, EventType
from runner_autoscaler.providers import LABEL_CLASS, LABEL_REPOSITORY, LABEL_WARM
from runner_autoscaler.simulation import InMemoryWorkQueue, InMemorySubstrate
from runner_autoscaler.warm_pool import WarmPoolManager

REPO = "org/app"


class LifecycleTestBase:
    """Shared fixtures for lifecycle tests"""

    warm_pool_sizes = None

    def setup_method(self):
        """Setup test fixtures"""
        self.clock = ManualClock()
        self.queue = InMemoryWorkQueue()
        self.substrate = InMemorySubstrate(self.queue)
        self.events = EventBus()
        self.warm_pool = None
        if self.warm_pool_sizes:
            self.warm_pool = WarmPoolManager(self.substrate,
                                             WarmPoolConfig(pool_sizes=self.warm_pool_sizes),
                                             self.clock)
        self.manager = RunnerLifecycleManager(
            self.queue, self.substrate, clock=self.clock,
            retry_policy=RetryPolicy(max_retries=2, base_delay=1.0, max_delay=4.0, jitter=False),
            timeouts=TimeoutConfig(provider_call=5.0, readiness_poll=2.0, drain=10.0),
            warm_pool=self.warm_pool,
            events=self.events,
            rng=random.Random(1),
        )
        self.manager.register_repository(
            Repository(name=REPO),
            ScalingPolicy(dedicated_count=1, max_dynamic=3, idle_timeout="5min"),
        )

    def teardown_method(self):
        """Cleanup"""
        if self.warm_pool is not None:
            self.warm_pool.stop(drain=False)
        self.manager.close()

    def event_types(self):
        return [e.type for e in self.events.get_history()]

    def dynamic(self):
        return self.manager.get_runners(REPO, RunnerClass.DYNAMIC)


class TestProvisioning(LifecycleTestBase):
    """Test creating runners"""

    def test_ensure_dedicated_is_idempotent(self):
        """Test dedicated runners are created once"""
        first = self.manager.ensure_dedicated(REPO)
        second = self.manager.ensure_dedicated(REPO)

        assert first.completed == 1
        assert second.requested == 0
        runner = first.runners[0]
        assert runner.state == RunnerState.IDLE
        assert runner.name in self.queue.registered(REPO)
        assert self.event_types() == [EventType.RUNNER_CREATED]

    def test_unknown_repository(self):
        """Test operations on unregistered repositories fail"""
        with pytest.raises(KeyError):
            self.manager.ensure_dedicated("org/unknown")

    def test_scale_up_creates_dynamic_runners(self):
        """Test dynamic runners are labelled and registered"""
        result = self.manager.scale_up(REPO, 2)

        assert result.success
        assert result.completed == 2
        assert self.substrate.instance_count({LABEL_REPOSITORY: REPO, LABEL_CLASS: "dynamic"}) == 2
        assert all(r.name.startswith("runner-dynamic-org-app-") for r in result.runners)

    def test_waits_for_readiness(self):
        """Test starting environments are polled until healthy"""
        self.substrate.startup_probes = 2

        result = self.manager.scale_up(REPO, 1)

        assert result.completed == 1
        assert self.clock.total_slept == pytest.approx(4.0)

    def test_transient_failure_is_retried(self):
        """Test a failed attempt is rolled back and retried"""
        self.substrate.failures.fail_next("create_instance")

        result = self.manager.scale_up(REPO, 1)

        runner = result.runners[0]
        assert runner.state == RunnerState.IDLE
        assert runner.attempts == 2
        assert self.clock.total_slept == pytest.approx(1.0)

    def test_exhausted_retries_mark_failed(self):
        """Test a runner that never comes up ends failed"""
        self.substrate.failures.fail_next("create_instance", times=3)

        result = self.manager.scale_up(REPO, 1)

        assert not result.success
        runner = result.failed[0]
        assert runner.state == RunnerState.FAILED
        assert runner.attempts == 3
        assert "failed after 3 attempt(s)" in runner.error
        assert self.event_types() == [EventType.RUNNER_FAILED]
        assert self.manager.counts(REPO)["failed"] == 1

    def test_permanent_failure_rolls_back_instance(self):
        """Test a non-retryable error removes the half-built environment"""
        self.substrate.failures.fail_next("probe", error=ProviderError("image not found"))

        result = self.manager.scale_up(REPO, 1)

        runner = result.failed[0]
        assert runner.attempts == 1
        assert runner.handle is None
        assert self.substrate.removed == self.substrate.created
        assert self.substrate.instance_count() == 0

    def test_unexpected_substrate_error_marks_failed(self):
        """Test errors outside the autoscaler hierarchy end the runner failed, not registering"""
        self.substrate.failures.fail_next("create_instance", error=RuntimeError("docker daemon gone"))

        result = self.manager.scale_up(REPO, 1)

        runner = result.failed[0]
        assert runner.state == RunnerState.FAILED
        assert runner.attempts == 1
        assert "docker daemon gone" in runner.error
        assert self.clock.total_slept == 0
        assert self.manager.get_runners(REPO, states={RunnerState.REGISTERING}) == []
        assert self.event_types() == [EventType.RUNNER_FAILED]

    def test_unexpected_readiness_error_removes_instance(self):
        """Test an environment created before an unexpected error is rolled back"""
        self.substrate.failures.fail_next("probe", error=ValueError("bad status payload"))

        result = self.manager.scale_up(REPO, 1)

        assert result.failed[0].handle is None
        assert self.substrate.removed == self.substrate.created
        assert self.substrate.instance_count() == 0

    def test_cancelled_scale_up(self):
        """Test shutdown stops further provisioning"""
        self.manager.cancel_event.set()

        result = self.manager.scale_up(REPO, 2)

        assert result.cancelled
        assert result.completed == 0


class TestWarmPoolClaims(LifecycleTestBase):
    """Test scale-up through the warm pool"""

    warm_pool_sizes = {"default": 1}

    def test_warm_slot_used_first(self):
        """Test a ready slot is adopted before provisioning"""
        self.warm_pool.replenish()

        result = self.manager.scale_up(REPO, 2)

        assert result.completed == 2
        assert result.from_warm_pool == 1
        adopted = [r for r in result.runners if r.from_warm_pool]
        assert len(adopted) == 1
        assert adopted[0].name in self.queue.registered(REPO)
        assert self.substrate.instance_count({LABEL_WARM: "true"}) == 0
        assert self.substrate.instance_count({LABEL_REPOSITORY: REPO}) == 2

    def test_unusable_slot_falls_back(self):
        """Test a slot that cannot be configured is discarded"""
        self.warm_pool.replenish()
        self.substrate.failures.fail_next("configure_instance")

        result = self.manager.scale_up(REPO, 1)

        assert result.completed == 1
        assert result.from_warm_pool == 0
        assert len(self.dynamic()) == 1

    def test_slot_with_unexpected_error_falls_back(self):
        """Test foreign exceptions while binding a slot discard it too"""
        self.warm_pool.replenish()
        slot_handle = self.substrate.created[0]
        self.substrate.failures.fail_next("configure_instance", error=RuntimeError("socket closed"))

        result = self.manager.scale_up(REPO, 1)

        assert result.completed == 1
        assert result.from_warm_pool == 0
        assert slot_handle in self.substrate.removed


class TestObserveAndScaleDown(LifecycleTestBase):
    """Test provider sync and retirement"""

    def setup_method(self):
        """Setup test fixtures"""
        super().setup_method()
        self.manager.ensure_dedicated(REPO)

    def test_observe_reports_busy_and_queued(self):
        """Test observed state reflects the provider"""
        self.queue.submit_jobs(REPO, 3)

        state = self.manager.observe(REPO)

        assert state.dedicated_total == 1
        assert state.dedicated_busy == 1
        assert state.queued_jobs == 2
        assert state.dynamic_total == 0

    def test_scale_down_longest_idle_first(self):
        """Test the runner idle the longest is retired"""
        self.manager.scale_up(REPO, 2)
        self.queue.submit_jobs(REPO, 2)
        self.manager.observe(REPO)
        worked = min(self.dynamic(), key=lambda r: r.name)
        assert worked.state == RunnerState.BUSY

        self.clock.advance(100)
        self.queue.complete_jobs(REPO)
        self.manager.observe(REPO)
        self.clock.advance(300)

        result = self.manager.scale_down(REPO, 1)

        assert result.completed == 1
        assert result.runners[0] is not worked
        assert result.runners[0].state == RunnerState.TERMINATED
        assert self.dynamic() == [worked]
        assert result.runners[0].name not in self.queue.registered(REPO)

    def test_recently_busy_runners_kept(self):
        """Test runners idle less than idle_timeout are not retired"""
        self.manager.scale_up(REPO, 1)
        self.clock.advance(120)

        result = self.manager.scale_down(REPO, 1)

        assert result.completed == 0
        assert len(self.dynamic()) == 1

    def test_drain_timeout_cancels_job(self):
        """Test in-flight work is cancelled once the drain timeout passes"""
        self.manager.scale_up(REPO, 1)
        self.queue.submit_jobs(REPO, 2)
        self.manager.observe(REPO)
        runner = self.dynamic()[0]
        job_id = runner.current_job_id

        assert self.manager._retire(runner, "test")

        assert self.queue.cancelled_jobs == [job_id]
        assert runner.state == RunnerState.TERMINATED


class TestReconcile(LifecycleTestBase):
    """Test drift correction"""

    def setup_method(self):
        """Setup test fixtures"""
        super().setup_method()
        self.manager.ensure_dedicated(REPO)

    def test_no_drift(self):
        """Test a consistent repository reports nothing"""
        report = self.manager.reconcile(REPO)

        assert not report.drift_corrected

    def test_orphans_removed(self):
        """Test unknown environments labelled for the repository are removed"""
        self.substrate.add_unmanaged("stray", {LABEL_REPOSITORY: REPO})

        report = self.manager.reconcile(REPO)

        assert report.removed_orphans == ["stray"]
        assert self.substrate.instance_count({LABEL_REPOSITORY: REPO}) == 1

    def test_vanished_runner_dropped(self):
        """Test runners whose environment disappeared are forgotten"""
        runner = self.manager.scale_up(REPO, 1).runners[0]
        self.substrate.vanish(runner.handle)

        report = self.manager.reconcile(REPO)

        assert report.vanished == [runner.name]
        assert self.dynamic() == []
        assert runner.state == RunnerState.TERMINATED
        removed = self.events.get_history(event_type=EventType.RUNNER_REMOVED)
        assert removed[-1].payload["reason"] == "vanished"

    def test_vanished_dedicated_replaced(self):
        """Test the dedicated count is restored"""
        dedicated = self.manager.get_runners(REPO, RunnerClass.DEDICATED)[0]
        self.substrate.vanish(dedicated.handle)

        report = self.manager.reconcile(REPO)

        assert report.vanished == [dedicated.name]
        assert report.dedicated_created == 1
        assert self.manager.counts(REPO)["dedicated"] == 1

    def test_missing_registration_restored(self):
        """Test runners unknown to the provider are re-registered"""
        runner = self.manager.scale_up(REPO, 1).runners[0]
        self.queue.drop_runner(REPO, runner.name)

        report = self.manager.reconcile(REPO)

        assert report.reregistered == [runner.name]
        assert runner.name in self.queue.registered(REPO)
        assert EventType.RUNNER_REREGISTERED in self.event_types()

    def test_stale_provisioning_rolled_back(self):
        """Test runners stuck before registration are discarded"""
        stuck = self.manager._new_runner(REPO, RunnerClass.DYNAMIC)
        self.clock.advance(601)

        report = self.manager.reconcile(REPO)

        assert report.rolled_back == [stuck.name]
        assert stuck.state == RunnerState.FAILED
        assert self.dynamic() == []

    def test_failed_runners_collected(self):
        """Test failed runners are removed from the registry"""
        self.substrate.failures.fail_next("create_instance", times=3)
        failed = self.manager.scale_up(REPO, 1).failed[0]

        report = self.manager.reconcile(REPO)

        assert report.removed_failed == [failed.name]
        assert self.manager.counts(REPO)["failed"] == 0

    def test_excess_dedicated_retired(self):
        """Test lowering dedicated_count retires idle dedicated runners"""
        self.manager.update_policy(REPO, ScalingPolicy(dedicated_count=2, max_dynamic=3))
        self.manager.ensure_dedicated(REPO)
        self.manager.update_policy(REPO, ScalingPolicy(dedicated_count=1, max_dynamic=3))

        report = self.manager.reconcile(REPO)

        assert report.dedicated_removed == 1
        assert self.manager.counts(REPO)["dedicated"] == 1
