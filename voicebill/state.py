"""State management for one pipeline run."""

import logging
from typing import Any, Callable, List, Optional, Tuple

from .errors import InvalidTransitionError
from .models import IDLE, PipelineState, PipelineStateEnum

logger = logging.getLogger(__name__)

# Forward edges; Failed and Cancelled are reachable from every non-terminal state
_FORWARD = {
    PipelineStateEnum.IDLE: PipelineStateEnum.CAPTURING,
    PipelineStateEnum.CAPTURING: PipelineStateEnum.TRANSCRIBING,
    PipelineStateEnum.TRANSCRIBING: PipelineStateEnum.EXTRACTING,
    PipelineStateEnum.EXTRACTING: PipelineStateEnum.SUCCEEDED,
}


class PipelineStateManager:
    """Tracks the state machine of a single pipeline run."""

    def __init__(self):
        """Initialize state manager with IDLE state."""
        self._state: PipelineState = IDLE
        self._observers: List[Callable[[PipelineState], Any]] = []

    @property
    def current_state(self) -> PipelineState:
        """Get the current state of the run."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    def add_observer(self, observer: Callable[[PipelineState], Any]) -> None:
        """Add an observer callback for state changes.

        The callback receives the new state.
        """
        self._observers.append(observer)

    def _notify_observers(self) -> None:
        """Notify all observers of the current state."""
        for observer in self._observers:
            try:
                observer(self._state)
            except Exception:
                logger.exception("State observer raised; continuing")

    def can_transition(self, new_state: PipelineStateEnum) -> bool:
        """Check whether the state machine allows moving to new_state."""
        current = self._state.state
        if current.is_terminal:
            return False
        if new_state in (PipelineStateEnum.FAILED, PipelineStateEnum.CANCELLED):
            return True
        return _FORWARD.get(current) == new_state

    def set_state(self, new_state: PipelineState) -> None:
        """Move the run to a new state.

        Args:
            new_state: The new state to set.

        Raises:
            TypeError: If the provided state is not a PipelineState.
            InvalidTransitionError: If the transition is not allowed.
        """
        if not isinstance(new_state, PipelineState):
            raise TypeError(f"State must be a PipelineState, got {type(new_state)}")

        if not self.can_transition(new_state.state):
            raise InvalidTransitionError(
                f"Cannot move from {self._state.state.value} to {new_state.state.value}"
            )

        logger.debug(f"Pipeline state: {self._state} -> {new_state}")
        self._state = new_state
        self._notify_observers()

    def get_status(self) -> Tuple[str, Optional[str]]:
        """Get the current status and error message.

        Returns:
            A tuple containing the current state value (as a string) and the
            error message (if the run failed).
        """
        error = self._state.error
        return self._state.state.value, error.message if error else None
