"""
Supervisory deadlines for calls that must never block the caller.

``asyncio.wait_for`` waits for the cancelled task to actually finish, so a
client that swallows cancellation can still hang it. ``run_with_deadline``
cancels the straggler and returns without awaiting it.
"""
import asyncio
from typing import Any, Awaitable, TypeVar

from llm_failover.core.errors import ProbeTimeout
from llm_failover.core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _discard_result(task: "asyncio.Future[Any]") -> None:
    """Consume the outcome of an abandoned task so it is never reported."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned call finished with error", error=str(exc))


def abandon(task: "asyncio.Future[Any]") -> None:
    """Cancel a task without waiting for it; its eventual result is dropped."""
    task.cancel()
    task.add_done_callback(_discard_result)


async def run_with_deadline(awaitable: Awaitable[T], timeout: float) -> T:
    """
    Await ``awaitable`` for at most ``timeout`` seconds of wall-clock time.

    Args:
        awaitable: Coroutine or future to supervise
        timeout: Hard upper bound in seconds

    Returns:
        The awaitable's result

    Raises:
        ProbeTimeout: If the deadline elapsed first
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        abandon(task)
        raise

    if task in done:
        return task.result()

    abandon(task)
    raise ProbeTimeout(f"No answer within {timeout:.2f}s")
