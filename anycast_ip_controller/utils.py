import asyncio
import logging
from typing import Coroutine, Iterable, Iterator, List, Optional, Sequence, TypeVar

from aiohttp.web_runner import GracefulExit

from anycast_ip_controller.log import trace_id_var

T = TypeVar("T")

logger = logging.getLogger(__name__)


def create_task_with_logging(coro: Coroutine, *, trace_id: Optional[str] = None) -> asyncio.Task:
    """Schedule the coroutine as a task that logs its unhandled exception instead of hiding it."""

    async def _wrapper():
        if trace_id is not None:
            trace_id_var.set(trace_id)

        return await coro

    task = asyncio.create_task(_wrapper(), name=trace_id)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task) -> None:
    if task.cancelled():
        return

    exc = task.exception()
    if exc is not None:
        logger.error("Task `%s` failed!", task.get_name(), exc_info=exc)


async def ensure_cancelled(task: asyncio.Task) -> None:
    """Cancel the task and wait until it is actually done."""

    task.cancel()

    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        # already logged by the done callback
        pass


async def ensure_cancelled_many(tasks: Iterable[asyncio.Task]) -> None:
    await asyncio.gather(*[ensure_cancelled(task) for task in tasks])


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def unique(items: Iterable[T]) -> List[T]:
    """Drop duplicates, keeping the first occurrence order."""

    return list(dict.fromkeys(items))


def raise_graceful_exit() -> None:
    raise GracefulExit()
