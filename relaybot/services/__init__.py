from relaybot.services.command_engine import CommandEngine, EngineOutcome, build_engine
from relaybot.services.dedup_service import DedupGuard, dedup_guard
from relaybot.services.result import Result
from relaybot.services.state_machine import (
    ExecutionState,
    InvalidTransitionError,
    RequestLifecycle,
    can_transition,
    transition,
)
