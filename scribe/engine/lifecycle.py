"""Agent loop state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> REQUESTING ──┬──> STREAMING <──> TOOL_CALL
                 ^        │        │              │
                 │        │        v              v
                 │        │     FINISHED    TOOL_EXECUTING ──> FINISHED
                 │        v                       │
                 │     FINISHED                   │
                 └────────────────────────────────┘

    any non-terminal state ──> ERROR | CANCELLED
"""
from __future__ import annotations

from .models import LoopState

_ABORT = {LoopState.ERROR, LoopState.CANCELLED}

VALID_TRANSITIONS: dict[LoopState, set[LoopState]] = {
    LoopState.IDLE: {
        LoopState.REQUESTING,
        LoopState.FINISHED,
        *_ABORT,
    },
    LoopState.REQUESTING: {
        LoopState.STREAMING,
        LoopState.TOOL_CALL,
        LoopState.FINISHED,
        *_ABORT,
    },
    LoopState.STREAMING: {
        LoopState.TOOL_CALL,
        LoopState.TOOL_EXECUTING,
        LoopState.FINISHED,
        *_ABORT,
    },
    LoopState.TOOL_CALL: {
        LoopState.STREAMING,
        LoopState.TOOL_EXECUTING,
        *_ABORT,
    },
    LoopState.TOOL_EXECUTING: {
        LoopState.REQUESTING,
        LoopState.FINISHED,
        *_ABORT,
    },
    LoopState.FINISHED: set(),
    LoopState.ERROR: set(),
    LoopState.CANCELLED: set(),
}


def validate_transition(current: LoopState, target: LoopState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    if current == target and not current.is_terminal:
        return
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
