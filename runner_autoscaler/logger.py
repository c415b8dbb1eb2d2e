"""
Console output for the runner autoscaler CLI.

Besides plain levelled messages, the console logger renders scaling
decisions, lifecycle events and runner counts as one-line summaries.
"""
import logging
import sys
from typing import Dict, Optional

from .models import Event, EventType, ScalingAction, ScalingDecision

PACKAGE_LOGGER = "runner_autoscaler"

ACTION_MARKS = {
    ScalingAction.SCALE_UP: "📈",
    ScalingAction.SCALE_DOWN: "📉",
    ScalingAction.NO_OP: "⏸",
}

# Events that describe something going wrong are logged as warnings
WARNING_EVENTS = {
    EventType.RUNNER_FAILED,
    EventType.DECISION_REJECTED,
    EventType.REPOSITORY_DEGRADED,
    EventType.REPOSITORY_MISCONFIGURED,
}


def format_decision(decision: ScalingDecision) -> str:
    """One-line summary of a scaling decision"""
    if decision.action == ScalingAction.SCALE_UP:
        change = f"+{decision.amount}"
    elif decision.action == ScalingAction.SCALE_DOWN:
        change = f"-{decision.amount}"
    else:
        change = "hold"
    return (f"{ACTION_MARKS[decision.action]} {decision.repository} {change} "
            f"[{decision.trigger.value}, {decision.utilization:.0%} busy] {decision.reason}")


def format_event(event: Event) -> str:
    """One-line summary of an event stream entry"""
    payload = event.payload
    detail = ""
    if event.type == EventType.SCALING_UP:
        detail = f"created {payload.get('created')}/{payload.get('requested')}"
        if payload.get("from_warm_pool"):
            detail += f" ({payload['from_warm_pool']} warm)"
    elif event.type == EventType.SCALING_DOWN:
        detail = f"removed {payload.get('removed')}/{payload.get('requested')}"
    elif "name" in payload:
        detail = payload["name"]
        if payload.get("reason"):
            detail += f" ({payload['reason']})"
        elif payload.get("error"):
            detail += f": {payload['error']}"
    elif payload.get("error"):
        detail = payload["error"]
    elif payload.get("reason"):
        detail = payload["reason"]
    return f"{event.type.value} {event.repository}" + (f" {detail}" if detail else "")


def format_counts(counts: Dict[str, int]) -> str:
    return " ".join(f"{key}={counts[key]}" for key in ("dedicated", "dynamic", "busy") if key in counts)


class AutoscalerLogger:
    """CLI console logger; warnings only by default, info with verbose, everything with debug"""

    def __init__(self, name: str = "runner_autoscaler.cli", debug: bool = False, verbose: bool = False):
        self.logger = logging.getLogger(name)
        self.debug_mode = debug
        self.verbose_mode = verbose

        # Recreating the logger must not stack handlers
        self.logger.handlers.clear()
        self.logger.propagate = False

        if debug:
            self.logger.setLevel(logging.DEBUG)
        elif verbose:
            self.logger.setLevel(logging.INFO)
        else:
            self.logger.setLevel(logging.WARNING)

        handler = logging.StreamHandler(sys.stdout)
        if debug:
            handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s:%(lineno)d - %(message)s'))
        else:
            handler.setFormatter(logging.Formatter('%(message)s'))
        self.logger.addHandler(handler)

    def debug(self, message: str) -> None:
        self.logger.debug(f"DEBUG: {message}")

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(f"⚠️  {message}")

    def error(self, message: str) -> None:
        self.logger.error(f"❌ Error: {message}")

    def success(self, message: str) -> None:
        self.logger.info(f"✓ {message}")

    def decision(self, decision: ScalingDecision) -> None:
        """Log a scaling decision; holds only show in debug mode"""
        if decision.is_noop:
            self.logger.debug(format_decision(decision))
        else:
            self.logger.info(format_decision(decision))

    def event(self, event: Event) -> None:
        """Log a lifecycle event, as a warning when it reports a failure"""
        if event.type in WARNING_EVENTS:
            self.warning(format_event(event))
        elif event.type in (EventType.SCALING_UP, EventType.SCALING_DOWN):
            self.logger.info(f"⚖️  {format_event(event)}")
        else:
            self.logger.info(f"🏃 {format_event(event)}")


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Set the level of the package logger, attaching a stderr handler once"""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s %(name)s - %(message)s'
        ))
        package_logger.addHandler(handler)
    return package_logger


_logger: Optional[AutoscalerLogger] = None


def get_logger(debug: bool = False, verbose: bool = False) -> AutoscalerLogger:
    """Shared console logger; passing flags rebuilds it in the requested mode"""
    global _logger
    if not debug and not verbose and _logger is not None:
        return _logger
    if _logger is None or _logger.debug_mode != debug or _logger.verbose_mode != verbose:
        _logger = AutoscalerLogger(debug=debug, verbose=verbose)
    return _logger
