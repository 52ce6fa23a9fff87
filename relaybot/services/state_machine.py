from enum import Enum


class ExecutionState(str, Enum):
    ROUTING = "routing"
    TOOL_CALL = "tool_call"
    RETRY_RESOLVE = "retry_resolve"
    DELIVERING = "delivering"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = {ExecutionState.DONE, ExecutionState.FAILED}

VALID_TRANSITIONS = {
    ExecutionState.ROUTING: [ExecutionState.TOOL_CALL, ExecutionState.RETRY_RESOLVE, ExecutionState.FAILED],
    ExecutionState.RETRY_RESOLVE: [ExecutionState.ROUTING, ExecutionState.TOOL_CALL, ExecutionState.FAILED],
    ExecutionState.TOOL_CALL: [ExecutionState.DELIVERING, ExecutionState.FAILED],
    ExecutionState.DELIVERING: [ExecutionState.DONE, ExecutionState.FAILED],
    ExecutionState.DONE: [],
    ExecutionState.FAILED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ExecutionState, to_state: ExecutionState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ExecutionState, to_state: ExecutionState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: ExecutionState, to_state: ExecutionState) -> ExecutionState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


class RequestLifecycle:
    """Tracks one request through routing, tool calls and delivery.

    A retry may send the request back to routing only once.
    """

    def __init__(self):
        self.state = ExecutionState.ROUTING
        self.history = [ExecutionState.ROUTING]
        self.retry_passes = 0

    def move(self, to_state: ExecutionState) -> ExecutionState:
        if self.state == ExecutionState.RETRY_RESOLVE and to_state == ExecutionState.ROUTING:
            if self.retry_passes >= 1:
                raise InvalidTransitionError(self.state, to_state)
            self.retry_passes += 1
        self.state = transition(self.state, to_state)
        self.history.append(self.state)
        return self.state

    def fail(self) -> ExecutionState:
        if self.state not in TERMINAL_STATES:
            self.state = ExecutionState.FAILED
            self.history.append(self.state)
        return self.state

    @property
    def can_reenter_routing(self) -> bool:
        return self.retry_passes < 1

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES
