"""Bounded, cancellable polling shared by the supervisor and the gatekeeper."""

import asyncio
import inspect
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

Check = Callable[[], Union[bool, Awaitable[bool]]]


class PollOutcome(str, Enum):
    """How a bounded poll ended."""

    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


async def sleep_or_stop(seconds: float, stop_event: Optional[asyncio.Event] = None) -> bool:
    """
    Sleep for up to ``seconds``, waking early if ``stop_event`` is set.

    Returns:
        True if the stop event fired, False if the full interval elapsed
    """
    if seconds <= 0:
        return stop_event is not None and stop_event.is_set()
    if stop_event is None:
        await asyncio.sleep(seconds)
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


async def _evaluate(check: Check) -> bool:
    result = check()
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


async def poll_until(
    check: Check,
    *,
    interval: float,
    timeout: float,
    stop_event: Optional[asyncio.Event] = None,
) -> PollOutcome:
    """
    Evaluate ``check`` at a fixed interval until it passes or time runs out.

    The check runs immediately, then once per ``interval`` on the loop's
    monotonic clock, with a final evaluation at the deadline. Exceptions
    raised by ``check`` propagate to the caller.

    Args:
        check: Sync or async predicate
        interval: Seconds between evaluations
        timeout: Maximum total wait in seconds
        stop_event: Optional event that aborts the wait when set

    Returns:
        SATISFIED, TIMED_OUT, or STOPPED
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(timeout, 0.0)

    while True:
        if stop_event is not None and stop_event.is_set():
            return PollOutcome.STOPPED
        if await _evaluate(check):
            return PollOutcome.SATISFIED

        remaining = deadline - loop.time()
        if remaining <= 0:
            return PollOutcome.TIMED_OUT
        if await sleep_or_stop(min(interval, remaining), stop_event):
            return PollOutcome.STOPPED
