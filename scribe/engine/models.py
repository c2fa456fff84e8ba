"""Core data models for the agent loop.

Enums and result types shared by the loop and the registry. Single
source of truth to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class LoopState(str, Enum):
    """Agent loop states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOL_CALL = "tool_call"
    TOOL_EXECUTING = "tool_executing"
    FINISHED = "finished"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (LoopState.FINISHED, LoopState.ERROR, LoopState.CANCELLED)


@dataclass
class GenerationOutcome:
    """How one generation request ended."""
    session_id: str
    state: LoopState
    steps: int = 0
    tool_calls: int = 0
    error: str | None = None
    # True when the loop stopped because the step budget ran out while
    # the model still wanted to call tools.
    budget_exhausted: bool = False
