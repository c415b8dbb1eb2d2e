"""
Abstract contracts for the external collaborators.

The work-queue provider is the ground truth for runner registration and
job assignment; the execution substrate creates and destroys the
environments runners live in. Concrete transports implement these classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .models import RunnerClass

LABEL_REPOSITORY = "runner-autoscaler.repository"
LABEL_CLASS = "runner-autoscaler.class"
LABEL_TEMPLATE = "runner-autoscaler.template"
LABEL_WARM = "runner-autoscaler.warm"


class ProbeResult(Enum):
    """Liveness of an execution environment"""
    HEALTHY = "healthy"
    STARTING = "starting"
    UNHEALTHY = "unhealthy"


@dataclass
class RunnerStatus:
    """A runner as reported by the work-queue provider"""
    name: str
    online: bool = True
    busy: bool = False
    job_id: Optional[str] = None
    labels: List[str] = field(default_factory=list)


@dataclass
class InstanceSpec:
    """Request to create or configure an execution environment"""
    name: str
    template: str
    repository: Optional[str] = None
    runner_class: Optional[RunnerClass] = None
    registration_token: Optional[str] = None
    ephemeral: bool = True
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class InstanceInfo:
    """An execution environment as listed by the substrate"""
    handle: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict)


class WorkQueueProvider(ABC):
    """Work-queue provider contract (job queue and runner registry)"""

    @abstractmethod
    def list_runners(self, repository: str) -> List[RunnerStatus]:
        """Runners currently registered for the repository"""
        pass

    @abstractmethod
    def issue_registration_credential(self, repository: str) -> str:
        """Short-lived token a new runner uses to register"""
        pass

    @abstractmethod
    def cancel_queued_work(self, repository: str, job_id: str) -> None:
        """Cancel a job assigned to a runner that is being torn down"""
        pass

    @abstractmethod
    def count_queued_jobs(self, repository: str) -> int:
        """Jobs waiting for a runner"""
        pass

    def deregister_runner(self, repository: str, name: str) -> None:
        """Remove a runner registration; ephemeral runners need nothing here"""
        return None


class ExecutionSubstrate(ABC):
    """Execution substrate contract (containers or VMs)"""

    @abstractmethod
    def create_instance(self, spec: InstanceSpec) -> str:
        """Create an environment and return its handle"""
        pass

    @abstractmethod
    def remove_instance(self, handle: str) -> None:
        """Destroy an environment; removing an unknown handle is not an error"""
        pass

    @abstractmethod
    def list_instances(self, label_filter: Optional[Dict[str, str]] = None) -> List[InstanceInfo]:
        """Environments whose labels contain every pair in label_filter"""
        pass

    @abstractmethod
    def probe(self, handle: str) -> ProbeResult:
        """Liveness probe"""
        pass

    @abstractmethod
    def configure_instance(self, handle: str, spec: InstanceSpec) -> None:
        """Bind an existing (warm) environment to a repository and credential"""
        pass
