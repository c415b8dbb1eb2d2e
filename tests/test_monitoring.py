"""
Tests for health reporting.
"""

from unittest.mock import patch

import psutil

from runner_autoscaler.monitoring import HealthStatus, HostResourceMonitor, determine_health


class TestHostResourceMonitor:
    """Test host sampling"""

    def test_sample_fields(self):
        """Test a sample reports CPU, memory and process figures"""
        monitor = HostResourceMonitor()

        sample = monitor.sample()

        assert set(sample) == {"cpu_percent", "cpu_count", "memory_percent",
                               "memory_available_mb", "process_rss_mb", "process_threads"}
        assert sample["process_threads"] >= 1
        assert monitor.get_last_sample() == sample

    def test_psutil_errors_give_empty_sample(self):
        """Test sampling failures are reported as an empty sample"""
        monitor = HostResourceMonitor()

        with patch("runner_autoscaler.monitoring.psutil.virtual_memory",
                   side_effect=psutil.AccessDenied()):
            assert monitor.sample() == {}

        assert monitor.get_last_sample() == {}


class TestDetermineHealth:
    """Test overall health classification"""

    def test_healthy(self):
        assert determine_health(3, [], []) == HealthStatus.HEALTHY

    def test_partially_impaired(self):
        assert determine_health(3, ["org/a"], ["org/b"]) == HealthStatus.DEGRADED

    def test_all_impaired(self):
        assert determine_health(2, ["org/a"], ["org/b"]) == HealthStatus.UNHEALTHY

    def test_loop_failure(self):
        assert determine_health(3, [], [], loop_failed=True) == HealthStatus.UNHEALTHY
