"""Deadline racing for arbitrary awaitables."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class OperationTimeout(Exception):
    """An operation did not settle before its deadline."""

    def __init__(self, label: str, timeout_ms: float):
        super().__init__(f"{label} timeout")
        self.label = label
        self.timeout_ms = timeout_ms


async def with_timeout(
    operation: Awaitable[T],
    timeout_ms: float,
    label: str,
    on_abandoned: Optional[Callable[[Any], Any]] = None,
) -> T:
    """Race ``operation`` against a deadline of ``timeout_ms`` milliseconds.

    Returns the operation's result, or re-raises its exception unchanged. If
    the deadline fires first, cancellation of the operation is requested but
    never awaited, and ``OperationTimeout`` is raised immediately. A result
    the abandoned operation produces later is handed to ``on_abandoned`` so
    whatever it holds can be released.
    """
    if timeout_ms <= 0:
        raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")

    task = asyncio.ensure_future(operation)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        return task.result()

    task.add_done_callback(_abandoned_callback(label, on_abandoned))
    task.cancel()
    raise OperationTimeout(label, timeout_ms)


def _abandoned_callback(label: str, on_abandoned: Optional[Callable[[Any], Any]]):
    def _settle(task: "asyncio.Future") -> None:
        if task.cancelled():
            return

        error = task.exception()
        if error is not None:
            logger.debug("abandoned_operation_failed", label=label, error=str(error))
            return

        if on_abandoned is None:
            return

        try:
            released = on_abandoned(task.result())
            if inspect.isawaitable(released):
                asyncio.ensure_future(released)
        except Exception as e:
            logger.debug("abandoned_release_failed", label=label, error=str(e))

    return _settle
