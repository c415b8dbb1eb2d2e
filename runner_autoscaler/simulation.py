"""
In-memory provider and substrate.

Used by the test suite and the `simulate` CLI command. Jobs are dispatched
to idle online runners as soon as they are submitted or a runner registers,
which mirrors how hosted work queues hand out queued jobs.
"""

import itertools
import logging
import threading
import time
import uuid
from collections import defaultdict, deque
from typing import Dict, List, Optional

from .errors import TransientProviderError
from .providers import (
    WorkQueueProvider, ExecutionSubstrate, RunnerStatus, InstanceSpec,
    InstanceInfo, ProbeResult, LABEL_REPOSITORY, LABEL_CLASS, LABEL_TEMPLATE,
)

logger = logging.getLogger(__name__)


class FailureInjector:
    """Queues failures and latency for named operations"""

    def __init__(self):
        self._lock = threading.Lock()
        self._failures: Dict[str, deque] = defaultdict(deque)
        self._latency: Dict[str, float] = {}
        self.calls: Dict[str, int] = defaultdict(int)

    def fail_next(self, operation: str, times: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next `times` calls of an operation raise"""
        with self._lock:
            for _ in range(times):
                self._failures[operation].append(
                    error or TransientProviderError(f"injected {operation} failure")
                )

    def set_latency(self, operation: str, seconds: float) -> None:
        with self._lock:
            self._latency[operation] = seconds

    def clear(self) -> None:
        with self._lock:
            self._failures.clear()
            self._latency.clear()

    def check(self, operation: str) -> None:
        with self._lock:
            self.calls[operation] += 1
            delay = self._latency.get(operation, 0.0)
            error = self._failures[operation].popleft() if self._failures[operation] else None
        if delay:
            time.sleep(delay)
        if error is not None:
            raise error


class InMemoryWorkQueue(WorkQueueProvider):
    """Work queue with a runner registry and FIFO job dispatch"""

    def __init__(self):
        self._lock = threading.RLock()
        self._runners: Dict[str, Dict[str, RunnerStatus]] = defaultdict(dict)
        self._queued: Dict[str, deque] = defaultdict(deque)
        self._tokens: Dict[str, str] = {}
        self._job_ids = itertools.count(1)
        self.cancelled_jobs: List[str] = []
        self.completed_jobs: List[str] = []
        self.failures = FailureInjector()

    # Provider contract

    def list_runners(self, repository: str) -> List[RunnerStatus]:
        self.failures.check("list_runners")
        with self._lock:
            return [RunnerStatus(name=r.name, online=r.online, busy=r.busy,
                                 job_id=r.job_id, labels=list(r.labels))
                    for r in self._runners[repository].values()]

    def issue_registration_credential(self, repository: str) -> str:
        self.failures.check("issue_registration_credential")
        token = f"reg-{uuid.uuid4().hex[:16]}"
        with self._lock:
            self._tokens[token] = repository
        return token

    def cancel_queued_work(self, repository: str, job_id: str) -> None:
        self.failures.check("cancel_queued_work")
        with self._lock:
            for runner in self._runners[repository].values():
                if runner.job_id == job_id:
                    runner.busy = False
                    runner.job_id = None
            self.cancelled_jobs.append(job_id)

    def count_queued_jobs(self, repository: str) -> int:
        self.failures.check("count_queued_jobs")
        with self._lock:
            return len(self._queued[repository])

    def deregister_runner(self, repository: str, name: str) -> None:
        self.failures.check("deregister_runner")
        with self._lock:
            self._runners[repository].pop(name, None)

    # Substrate-side hooks

    def register(self, token: str, name: str, labels: Optional[List[str]] = None) -> str:
        """Register a runner with a credential previously issued"""
        with self._lock:
            repository = self._tokens.pop(token, None)
            if repository is None:
                raise TransientProviderError(f"Unknown or expired registration token for {name}")
            self._runners[repository][name] = RunnerStatus(name=name, labels=list(labels or []))
            self._dispatch(repository)
            return repository

    def set_online(self, name: str, online: bool) -> None:
        with self._lock:
            for repository, runners in self._runners.items():
                runner = runners.get(name)
                if runner is None:
                    continue
                runner.online = online
                if not online and runner.job_id:
                    # Job goes back to the queue when its runner dies
                    self._queued[repository].appendleft(runner.job_id)
                    runner.busy = False
                    runner.job_id = None

    # Test and simulation controls

    def submit_jobs(self, repository: str, count: int = 1) -> List[str]:
        """Queue jobs and hand them to idle runners"""
        with self._lock:
            job_ids = [f"job-{next(self._job_ids)}" for _ in range(count)]
            self._queued[repository].extend(job_ids)
            self._dispatch(repository)
            return job_ids

    def complete_jobs(self, repository: str, count: Optional[int] = None) -> int:
        """Finish running jobs (all of them when count is None)"""
        with self._lock:
            finished = 0
            for runner in sorted(self._runners[repository].values(), key=lambda r: r.name):
                if count is not None and finished >= count:
                    break
                if runner.busy:
                    self.completed_jobs.append(runner.job_id)
                    runner.busy = False
                    runner.job_id = None
                    finished += 1
            self._dispatch(repository)
            return finished

    def drop_runner(self, repository: str, name: str) -> None:
        """Forget a registration without touching its environment"""
        with self._lock:
            self._runners[repository].pop(name, None)

    def busy_count(self, repository: str) -> int:
        with self._lock:
            return sum(1 for r in self._runners[repository].values() if r.busy)

    def registered(self, repository: str) -> List[str]:
        with self._lock:
            return sorted(self._runners[repository])

    def _dispatch(self, repository: str) -> int:
        assigned = 0
        queue = self._queued[repository]
        for runner in sorted(self._runners[repository].values(), key=lambda r: r.name):
            if not queue:
                break
            if runner.online and not runner.busy:
                runner.job_id = queue.popleft()
                runner.busy = True
                assigned += 1
        return assigned


class InMemorySubstrate(ExecutionSubstrate):
    """Execution substrate that registers runners with an InMemoryWorkQueue"""

    def __init__(self, work_queue: Optional[InMemoryWorkQueue] = None, startup_probes: int = 0):
        self.work_queue = work_queue
        self.startup_probes = startup_probes
        self._lock = threading.RLock()
        self._instances: Dict[str, InstanceInfo] = {}
        self._pending_probes: Dict[str, int] = {}
        self._unhealthy: set = set()
        self._handles = itertools.count(1)
        self.created: List[str] = []
        self.removed: List[str] = []
        self.failures = FailureInjector()

    def create_instance(self, spec: InstanceSpec) -> str:
        self.failures.check("create_instance")
        with self._lock:
            handle = f"inst-{next(self._handles)}"
            self._instances[handle] = InstanceInfo(handle=handle, name=spec.name,
                                                   labels=self._labels_for(spec))
            self._pending_probes[handle] = self.startup_probes
            self.created.append(handle)

        if spec.registration_token and self.work_queue is not None:
            self.work_queue.register(spec.registration_token, spec.name)
        return handle

    def configure_instance(self, handle: str, spec: InstanceSpec) -> None:
        self.failures.check("configure_instance")
        with self._lock:
            info = self._instances.get(handle)
            if info is None:
                raise TransientProviderError(f"Instance not found: {handle}")
            info.name = spec.name
            info.labels = self._labels_for(spec)

        if spec.registration_token and self.work_queue is not None:
            self.work_queue.register(spec.registration_token, spec.name)

    def remove_instance(self, handle: str) -> None:
        self.failures.check("remove_instance")
        with self._lock:
            info = self._instances.pop(handle, None)
            self._pending_probes.pop(handle, None)
            self._unhealthy.discard(handle)
            if info is None:
                return
            self.removed.append(handle)

        if self.work_queue is not None:
            repository = info.labels.get(LABEL_REPOSITORY)
            if repository:
                self.work_queue.drop_runner(repository, info.name)

    def list_instances(self, label_filter: Optional[Dict[str, str]] = None) -> List[InstanceInfo]:
        self.failures.check("list_instances")
        label_filter = label_filter or {}
        with self._lock:
            return [InstanceInfo(handle=i.handle, name=i.name, labels=dict(i.labels))
                    for i in self._instances.values()
                    if all(i.labels.get(k) == v for k, v in label_filter.items())]

    def probe(self, handle: str) -> ProbeResult:
        self.failures.check("probe")
        with self._lock:
            if handle not in self._instances or handle in self._unhealthy:
                return ProbeResult.UNHEALTHY
            remaining = self._pending_probes.get(handle, 0)
            if remaining > 0:
                self._pending_probes[handle] = remaining - 1
                return ProbeResult.STARTING
            return ProbeResult.HEALTHY

    # Test and simulation controls

    def mark_unhealthy(self, handle: str) -> None:
        with self._lock:
            self._unhealthy.add(handle)

    def vanish(self, handle: str) -> None:
        """Lose an environment behind the autoscaler's back"""
        with self._lock:
            info = self._instances.pop(handle, None)
        if info is not None and self.work_queue is not None:
            self.work_queue.set_online(info.name, False)

    def add_unmanaged(self, name: str, labels: Dict[str, str]) -> str:
        """Create an environment the autoscaler does not know about"""
        with self._lock:
            handle = f"inst-{next(self._handles)}"
            self._instances[handle] = InstanceInfo(handle=handle, name=name, labels=dict(labels))
            return handle

    def instance_count(self, label_filter: Optional[Dict[str, str]] = None) -> int:
        label_filter = label_filter or {}
        with self._lock:
            return sum(1 for i in self._instances.values()
                       if all(i.labels.get(k) == v for k, v in label_filter.items()))

    def _labels_for(self, spec: InstanceSpec) -> Dict[str, str]:
        labels = dict(spec.labels)
        labels.setdefault(LABEL_TEMPLATE, spec.template)
        if spec.repository:
            labels[LABEL_REPOSITORY] = spec.repository
        if spec.runner_class is not None:
            labels[LABEL_CLASS] = spec.runner_class.value
        return labels
