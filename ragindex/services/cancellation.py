# =============================================================================
# Cancellation — Racing Provider Calls Against a Caller Signal
# =============================================================================
#
# Every I/O-bound provider call (embed, upsert, query, judge) is awaited
# through run_cancellable(). The caller's signal is a plain asyncio.Event:
#
#   cancel = asyncio.Event()
#   task = asyncio.create_task(indexer.index_document(doc, cancel_event=cancel))
#   ...
#   cancel.set()   # in-flight call is abandoned, OperationCancelledError
#
# Native task cancellation (task.cancel()) is left alone: CancelledError
# always propagates unchanged, and the in-flight provider call is cancelled
# with it.
#
# gather_or_cancel() fans out several calls and tears the rest down as soon
# as one fails.
# =============================================================================

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from ragindex.exceptions import OperationCancelledError

T = TypeVar("T")


def check_cancelled(cancel_event: asyncio.Event | None, what: str = "operation") -> None:
    """Raise OperationCancelledError if the signal has already fired."""
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError(f"{what} cancelled")


async def run_cancellable(
    awaitable: Awaitable[T],
    cancel_event: asyncio.Event | None,
    what: str = "operation",
) -> T:
    """
    Await `awaitable` unless `cancel_event` fires first.

    Raises:
        OperationCancelledError: The event was set before or during the call.
            The abandoned call is cancelled and awaited before raising.
    """
    if cancel_event is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    if cancel_event.is_set():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise OperationCancelledError(f"{what} cancelled")

    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise OperationCancelledError(f"{what} cancelled")


async def gather_or_cancel(*awaitables: Awaitable[T]) -> list[T]:
    """
    Like asyncio.gather(), but the first failure cancels the siblings.

    The remaining tasks are cancelled and awaited before the original
    exception is re-raised, so no provider call outlives its caller.
    """
    tasks = [asyncio.ensure_future(a) for a in awaitables]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
