"""
Health reporting for the runner autoscaler.
"""

import logging
import threading
from enum import Enum
from typing import Dict, Any, Iterable

import psutil

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Overall health of the control loop"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HostResourceMonitor:
    """Samples resource usage of the host running the control loop"""

    def __init__(self):
        self._lock = threading.Lock()
        self._process = psutil.Process()
        self._last_sample: Dict[str, Any] = {}

    def sample(self) -> Dict[str, Any]:
        """Current CPU, memory and process figures; empty when psutil cannot read them"""
        try:
            memory = psutil.virtual_memory()
            process_memory = self._process.memory_info()
            info = {
                "cpu_percent": psutil.cpu_percent(interval=None),
                "cpu_count": psutil.cpu_count(),
                "memory_percent": memory.percent,
                "memory_available_mb": round(memory.available / (1024 * 1024), 1),
                "process_rss_mb": round(process_memory.rss / (1024 * 1024), 1),
                "process_threads": self._process.num_threads(),
            }
        except psutil.Error as e:
            logger.warning(f"Failed to sample host resources: {e}")
            return {}

        with self._lock:
            self._last_sample = info
        return dict(info)

    def get_last_sample(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._last_sample)


def determine_health(repository_count: int, degraded: Iterable[str],
                     misconfigured: Iterable[str], loop_failed: bool = False) -> HealthStatus:
    """
    Healthy when every repository scales normally, unhealthy when none can
    (or the driver loop has failed), degraded in between.
    """
    impaired = set(degraded) | set(misconfigured)
    if loop_failed:
        return HealthStatus.UNHEALTHY
    if not impaired:
        return HealthStatus.HEALTHY
    if repository_count and len(impaired) >= repository_count:
        return HealthStatus.UNHEALTHY
    return HealthStatus.DEGRADED
