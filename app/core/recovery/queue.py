"""
Recovery Execution Queue

Single worker draining execution ids strictly in order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

ExecutionRunner = Callable[[str], Awaitable[None]]


class ExecutionQueue:
    """FIFO of execution ids with one lazily started worker task."""

    def __init__(
        self,
        runner: ExecutionRunner,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._runner = runner
        self.logger = logger or logging.getLogger(__name__)
        self._queue: asyncio.Queue[str] | None = None
        self._worker_task: asyncio.Task | None = None
        self._lock: asyncio.Lock | None = None
        self._running = False
        self._processed = 0

    # ---------------------------
    # Lifecycle
    # ---------------------------
    def _ensure_primitives(self) -> None:
        # Created on first use so they bind to the running loop
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._lock is None:
            self._lock = asyncio.Lock()

    async def ensure_started(self) -> None:
        self._ensure_primitives()
        async with self._lock:
            if self._running:
                return
            self._start_locked()

    async def start(self) -> None:
        self._ensure_primitives()
        async with self._lock:
            self._start_locked()

    def _start_locked(self) -> None:
        if self._running:
            return
        self._running = True
        self.logger.info("Recovery queue worker starting")
        self._worker_task = asyncio.create_task(self._run_loop(), name="recovery-queue-worker")

    async def stop(self) -> None:
        if self._lock is None:
            return
        async with self._lock:
            if not self._running:
                return
            self._running = False
            self.logger.info("Recovery queue worker stopping")

            if self._worker_task:
                self._worker_task.cancel()
                try:
                    await self._worker_task
                except asyncio.CancelledError:
                    pass
                self._worker_task = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def processed(self) -> int:
        return self._processed

    # ---------------------------
    # Work
    # ---------------------------
    async def enqueue(self, execution_id: str) -> None:
        self._ensure_primitives()
        await self._queue.put(execution_id)
        await self.ensure_started()

    async def join(self) -> None:
        """Wait until every enqueued execution has been handled."""
        if self._queue is None:
            return
        await self._queue.join()

    async def _run_loop(self) -> None:
        while self._running:
            execution_id = await self._queue.get()
            try:
                await self._runner(execution_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.logger.error("Recovery worker failed on %s: %s", execution_id, exc, exc_info=True)
            finally:
                self._processed += 1
                self._queue.task_done()
