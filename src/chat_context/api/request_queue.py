"""Per-conversation single-flight queue for chat turns."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

import structlog

from ..config import get_settings
from ..domain.errors import ConversationNotFoundError

logger = structlog.get_logger()


@dataclass
class QueuedTurn:
    """A unit of work waiting for its conversation's slot."""

    conversation_id: UUID
    task: Callable[..., Awaitable[Any]]
    args: tuple
    kwargs: dict
    future: asyncio.Future


class RequestQueue:
    """Runs turns for the same conversation strictly one after another.

    Turns for different conversations run concurrently, bounded by
    `max_concurrent`. Each turn gets `turn_timeout` seconds once started.
    """

    def __init__(self, max_concurrent: int = 10, turn_timeout: float = 120.0) -> None:
        self.max_concurrent = max_concurrent
        self.turn_timeout = turn_timeout
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self._lock = asyncio.Lock()
        self.queues: Dict[UUID, asyncio.Queue] = {}
        self._workers: Dict[UUID, asyncio.Task] = {}
        self.active_turns = 0
        logger.info("request_queue_initialized", max_concurrent=max_concurrent)

    async def _get_queue(self, conversation_id: UUID) -> asyncio.Queue:
        async with self._lock:
            if conversation_id not in self.queues:
                self.queues[conversation_id] = asyncio.Queue()
                self._workers[conversation_id] = asyncio.create_task(
                    self._process_queue(conversation_id, self.queues[conversation_id])
                )
            return self.queues[conversation_id]

    async def _process_queue(self, conversation_id: UUID, queue: asyncio.Queue) -> None:
        try:
            while True:
                turn: QueuedTurn = await queue.get()
                try:
                    if turn.future.done():
                        continue
                    async with self.semaphore:
                        self.active_turns += 1
                        try:
                            result = await asyncio.wait_for(
                                turn.task(*turn.args, **turn.kwargs),
                                timeout=self.turn_timeout,
                            )
                            if not turn.future.done():
                                turn.future.set_result(result)
                        except asyncio.CancelledError:
                            if not turn.future.done():
                                turn.future.cancel()
                            raise
                        except asyncio.TimeoutError:
                            logger.error("turn_timeout", conversation_id=str(conversation_id))
                            if not turn.future.done():
                                turn.future.set_exception(TimeoutError("Turn processing timed out"))
                        except Exception as e:
                            if not turn.future.done():
                                turn.future.set_exception(e)
                        finally:
                            self.active_turns -= 1
                finally:
                    queue.task_done()
        except asyncio.CancelledError:
            logger.info("queue_worker_cancelled", conversation_id=str(conversation_id))

    async def enqueue(
        self,
        conversation_id: UUID,
        task: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Queue `task` behind earlier turns of the same conversation and await its result."""
        queue = await self._get_queue(conversation_id)
        future = asyncio.get_running_loop().create_future()
        await queue.put(QueuedTurn(conversation_id, task, args, kwargs, future))
        return await future

    async def discard(self, conversation_id: UUID) -> None:
        """Stop the conversation's worker and drop its queue.

        Turns still waiting in the queue fail with `ConversationNotFoundError`.
        """
        async with self._lock:
            queue = self.queues.pop(conversation_id, None)
            worker = self._workers.pop(conversation_id, None)
        if worker is None:
            return
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)
        while not queue.empty():
            turn: QueuedTurn = queue.get_nowait()
            if not turn.future.done():
                turn.future.set_exception(ConversationNotFoundError(conversation_id))
        logger.info("request_queue_discarded", conversation_id=str(conversation_id))

    async def cleanup(self) -> None:
        async with self._lock:
            workers = list(self._workers.values())
            for worker in workers:
                worker.cancel()
            if workers:
                await asyncio.gather(*workers, return_exceptions=True)
            self.queues.clear()
            self._workers.clear()
            logger.info("request_queue_cleaned_up")


_request_queue: Optional[RequestQueue] = None


def get_request_queue() -> RequestQueue:
    """Get the process-wide request queue."""
    global _request_queue
    if _request_queue is None:
        settings = get_settings()
        _request_queue = RequestQueue(
            max_concurrent=settings.max_concurrent_turns,
            turn_timeout=settings.turn_timeout_seconds,
        )
    return _request_queue


def reset_request_queue() -> None:
    global _request_queue
    _request_queue = None


async def process_queued_request(
    conversation_id: UUID,
    task: Callable[..., Awaitable[Any]],
    *args: Any,
    **kwargs: Any,
) -> Any:
    """Process a turn through the shared queue."""
    return await get_request_queue().enqueue(conversation_id, task, *args, **kwargs)
