"""
Pytest configuration and fixtures for runner autoscaler tests
"""
import random

import pytest

from runner_autoscaler.clock import ManualClock
from runner_autoscaler.config import ConfigManager
from runner_autoscaler.orchestrator import Orchestrator
from runner_autoscaler.simulation import InMemoryWorkQueue, InMemorySubstrate


def build_config(repositories=None, **sections):
    """Config for tests: no warm pool, fast deterministic retries"""
    data = {
        "defaults": {"mode": "balanced", "dedicated_count": 1, "max_dynamic": 3,
                     "idle_timeout": "5min", "check_interval": "30s"},
        "repositories": repositories if repositories is not None else {"org/app": {}},
        "warm_pool": {"enabled": False},
        "retry_policy": {"max_retries": 2, "base_delay": 1.0, "max_delay": 4.0, "jitter": False},
        "orchestrator": {"concurrency": 4, "failure_threshold": 3, "tick_budget": 10.0,
                         "degraded_probe_interval": "5min"},
        "timeouts": {"provider_call": 5.0},
    }
    for key, value in sections.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return ConfigManager().load_from_dict(data)


@pytest.fixture
def make_config():
    """Factory for test configurations"""
    return build_config


@pytest.fixture
def clock():
    """Simulated clock"""
    return ManualClock()


@pytest.fixture
def work_queue():
    """In-memory work queue"""
    return InMemoryWorkQueue()


@pytest.fixture
def substrate(work_queue):
    """In-memory substrate wired to the work queue"""
    return InMemorySubstrate(work_queue)


@pytest.fixture
def make_orchestrator(clock, work_queue, substrate):
    """Factory building orchestrators that are stopped after the test"""
    created = []

    def factory(config=None, **kwargs):
        orchestrator = Orchestrator(config or build_config(), work_queue, substrate,
                                    clock=clock, rng=random.Random(7), **kwargs)
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        orchestrator.stop(timeout=5.0)
