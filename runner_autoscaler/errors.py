"""
Exception hierarchy for the runner autoscaler.
"""

from typing import Optional


class AutoscalerError(Exception):
    """Base exception for autoscaler errors"""
    pass


class ProviderError(AutoscalerError):
    """Raised when a provider or substrate call fails permanently"""
    pass


class TransientProviderError(ProviderError):
    """Raised for timeouts, server errors and other retryable failures"""
    pass


class RateLimitError(TransientProviderError):
    """Raised when the provider asks callers to back off"""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProvisioningError(AutoscalerError):
    """Raised when a runner cannot be created after all retries"""
    pass


class PolicyViolationError(AutoscalerError):
    """Raised when a decision would break policy bounds or cooldown"""
    pass


class OrchestratorError(AutoscalerError):
    """Raised when the driver loop itself cannot make progress"""
    pass


class RetryError(AutoscalerError):
    """Raised when a retried call exhausts its attempts"""

    def __init__(self, message: str, attempts: int, last_exception: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


class OperationCancelled(AutoscalerError):
    """Raised when a retry loop is interrupted by shutdown"""
    pass
