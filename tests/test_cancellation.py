"""CancellationToken and loop state transitions."""
from __future__ import annotations

import asyncio

import pytest

from scribe.engine.cancellation import CANCELLED, CancellationToken
from scribe.engine.lifecycle import validate_transition
from scribe.engine.models import LoopState


@pytest.mark.asyncio
async def test_race_returns_result_when_work_wins() -> None:
    token = CancellationToken()

    async def work() -> str:
        return "done"

    assert await token.race(work()) == "done"


@pytest.mark.asyncio
async def test_race_returns_sentinel_and_cancels_work() -> None:
    token = CancellationToken()
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def stall() -> None:
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    racing = asyncio.ensure_future(token.race(stall()))
    await started.wait()
    assert token.cancel("user pressed stop") is True
    assert token.cancel() is False

    assert await asyncio.wait_for(racing, timeout=1) is CANCELLED
    assert cancelled.is_set()
    assert token.reason == "user pressed stop"


@pytest.mark.asyncio
async def test_race_on_cancelled_token_skips_work() -> None:
    token = CancellationToken()
    token.cancel()
    ran = []

    async def work() -> None:
        ran.append(True)

    assert await token.race(work()) is CANCELLED
    assert ran == []


@pytest.mark.asyncio
async def test_race_propagates_work_exceptions() -> None:
    token = CancellationToken()

    async def fail() -> None:
        raise LookupError("missing")

    with pytest.raises(LookupError):
        await token.race(fail())


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (LoopState.IDLE, LoopState.REQUESTING),
        (LoopState.IDLE, LoopState.CANCELLED),
        (LoopState.REQUESTING, LoopState.STREAMING),
        (LoopState.STREAMING, LoopState.TOOL_CALL),
        (LoopState.TOOL_CALL, LoopState.TOOL_EXECUTING),
        (LoopState.TOOL_EXECUTING, LoopState.REQUESTING),
        (LoopState.TOOL_EXECUTING, LoopState.ERROR),
        (LoopState.STREAMING, LoopState.STREAMING),
    ],
)
def test_valid_transitions(current: LoopState, target: LoopState) -> None:
    validate_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (LoopState.IDLE, LoopState.STREAMING),
        (LoopState.TOOL_CALL, LoopState.FINISHED),
        (LoopState.FINISHED, LoopState.REQUESTING),
        (LoopState.CANCELLED, LoopState.CANCELLED),
        (LoopState.ERROR, LoopState.CANCELLED),
    ],
)
def test_invalid_transitions(current: LoopState, target: LoopState) -> None:
    with pytest.raises(ValueError, match="Invalid state transition"):
        validate_transition(current, target)
