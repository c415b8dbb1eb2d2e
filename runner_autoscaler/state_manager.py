"""
Runner state machine: transition validation and history tracking.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set, Callable

from .models import RunnerInstance, RunnerState

logger = logging.getLogger(__name__)


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted"""
    pass


@dataclass
class StateTransition:
    """Represents a runner state transition with metadata"""
    runner_id: str
    repository: str
    from_state: RunnerState
    to_state: RunnerState
    timestamp: datetime
    message: Optional[str] = None


class StateValidator:
    """
    Validates runner state transitions.

    pending -> registering -> idle <-> busy -> draining -> terminated, with
    failed reachable from pending and registering. A registering runner whose
    attempt was rolled back returns to pending before the next attempt.
    """

    VALID_TRANSITIONS: Dict[RunnerState, Set[RunnerState]] = {
        RunnerState.PENDING: {RunnerState.REGISTERING, RunnerState.FAILED},
        RunnerState.REGISTERING: {RunnerState.IDLE, RunnerState.PENDING, RunnerState.FAILED},
        RunnerState.IDLE: {RunnerState.BUSY, RunnerState.DRAINING},
        RunnerState.BUSY: {RunnerState.IDLE, RunnerState.DRAINING},
        RunnerState.DRAINING: {RunnerState.TERMINATED},
        RunnerState.TERMINATED: set(),  # Terminal state
        RunnerState.FAILED: set(),  # Terminal state
    }

    @classmethod
    def is_valid_transition(cls, from_state: RunnerState, to_state: RunnerState) -> bool:
        """Check if a state transition is valid"""
        if from_state == to_state:
            return True

        return to_state in cls.VALID_TRANSITIONS.get(from_state, set())

    @classmethod
    def get_valid_next_states(cls, current_state: RunnerState) -> Set[RunnerState]:
        """Get all valid next states for a given current state"""
        return cls.VALID_TRANSITIONS.get(current_state, set()).copy()

    @classmethod
    def validate_transition(cls, from_state: RunnerState, to_state: RunnerState) -> None:
        """
        Validate a state transition, raising an exception if invalid.

        Raises:
            StateTransitionError: If transition is invalid
        """
        if not cls.is_valid_transition(from_state, to_state):
            valid_states = sorted(s.value for s in cls.get_valid_next_states(from_state))
            raise StateTransitionError(
                f"Invalid state transition from {from_state.value} to {to_state.value}. "
                f"Valid transitions: {valid_states}"
            )

    @classmethod
    def get_transition_path(cls, from_state: RunnerState, to_state: RunnerState) -> Optional[List[RunnerState]]:
        """Find the shortest valid path between two states, if one exists"""
        if from_state == to_state:
            return [from_state]

        queue = deque([(from_state, [from_state])])
        visited = {from_state}

        while queue:
            current_state, path = queue.popleft()

            for next_state in cls.VALID_TRANSITIONS.get(current_state, set()):
                if next_state == to_state:
                    return path + [next_state]

                if next_state not in visited:
                    visited.add(next_state)
                    queue.append((next_state, path + [next_state]))

        return None


class RunnerStateTracker:
    """
    Applies validated transitions to runners and keeps a bounded history.

    Transition listeners are called after the state has changed; listener
    errors are logged and never interrupt the caller.
    """

    def __init__(self, history_size: int = 1000):
        self._lock = threading.RLock()
        self._history: deque = deque(maxlen=history_size)
        self._listeners: List[Callable[[RunnerInstance, StateTransition], None]] = []

    def add_listener(self, listener: Callable[[RunnerInstance, StateTransition], None]) -> None:
        self._listeners.append(listener)

    def transition(self, runner: RunnerInstance, to_state: RunnerState,
                   timestamp: datetime, message: Optional[str] = None) -> StateTransition:
        """
        Move a runner to a new state.

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        StateValidator.validate_transition(runner.state, to_state)

        record = StateTransition(
            runner_id=runner.id,
            repository=runner.repository,
            from_state=runner.state,
            to_state=to_state,
            timestamp=timestamp,
            message=message,
        )

        if runner.state != to_state:
            runner.state = to_state
            runner.state_changed_at = timestamp
            if to_state == RunnerState.BUSY:
                runner.last_busy_at = timestamp

        with self._lock:
            self._history.append(record)

        logger.debug(f"Runner {runner.name} ({runner.repository}): "
                     f"{record.from_state.value} -> {to_state.value}"
                     + (f" ({message})" if message else ""))

        for listener in self._listeners:
            try:
                listener(runner, record)
            except Exception as e:
                logger.error(f"Error in state transition listener: {e}")

        return record

    def transition_along(self, runner: RunnerInstance, to_state: RunnerState,
                         timestamp: datetime, message: Optional[str] = None) -> List[StateTransition]:
        """Walk the shortest valid path to the target state"""
        path = StateValidator.get_transition_path(runner.state, to_state)
        if path is None:
            raise StateTransitionError(
                f"No transition path from {runner.state.value} to {to_state.value}"
            )
        return [self.transition(runner, state, timestamp, message) for state in path[1:]]

    def get_history(self, runner_id: Optional[str] = None,
                    repository: Optional[str] = None) -> List[StateTransition]:
        """Get recorded transitions, optionally filtered"""
        with self._lock:
            records = list(self._history)

        if runner_id is not None:
            records = [r for r in records if r.runner_id == runner_id]
        if repository is not None:
            records = [r for r in records if r.repository == repository]
        return records
