#!/usr/bin/env python3
"""
Process-wide registry of position workers, keyed by worker id.

``start`` checks and registers in one synchronous step (no await between the
running check and the insert), so two concurrent starts for the same id can
never both succeed on a single event loop.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Set

from logging_utils import get_logger
from position_worker import PositionWorker
from worker_state import WorkerState

DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 30.0


class WorkerManagerError(RuntimeError):
    pass


class AlreadyRunningError(WorkerManagerError):
    def __init__(self, worker_id: str):
        super().__init__(f"Worker {worker_id} is already running")
        self.worker_id = worker_id


class WorkerNotFoundError(WorkerManagerError):
    def __init__(self, worker_id: str):
        super().__init__(f"Worker {worker_id} not found")
        self.worker_id = worker_id


class WorkerManager:
    def __init__(self, *, shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS):
        self._workers: Dict[str, PositionWorker] = {}
        # Replaced workers whose last cycle is still in flight.
        self._retiring: Set[PositionWorker] = set()
        self.shutdown_timeout = float(shutdown_timeout)
        self.log = get_logger("worker_manager")

    def __len__(self) -> int:
        return len(self._workers)

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._workers

    def ids(self) -> List[str]:
        return list(self._workers)

    def is_running(self, worker_id: str) -> bool:
        worker = self._workers.get(worker_id)
        return worker is not None and worker.state.is_running

    def ensure_not_running(self, worker_id: str) -> None:
        if self.is_running(worker_id):
            raise AlreadyRunningError(worker_id)

    def start(self, worker: PositionWorker) -> WorkerState:
        """Register ``worker`` and launch its loop (first cycle runs immediately)."""
        worker_id = worker.state.id
        self.ensure_not_running(worker_id)
        previous = self._workers.get(worker_id)
        if previous is not None and previous.task is not None and not previous.task.done():
            # Already stopped; let its in-flight cycle finish and log.
            self._retiring.add(previous)
            previous.task.add_done_callback(lambda _t, w=previous: self._retiring.discard(w))
        self._workers[worker_id] = worker
        worker.start()
        return worker.state

    def worker(self, worker_id: str) -> PositionWorker:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        return worker

    def get(self, worker_id: str, *, log_limit: int = 10) -> Dict[str, Any]:
        return self.worker(worker_id).state.snapshot(log_limit)

    def list(self, *, log_limit: int = 10) -> List[Dict[str, Any]]:
        return [w.state.snapshot(log_limit) for w in self._workers.values()]

    def running_count(self) -> int:
        return sum(1 for w in self._workers.values() if w.state.is_running)

    def stop(self, worker_id: Optional[str] = None) -> Dict[str, int]:
        """Stop one worker, or every running one when ``worker_id`` is None.

        Returns ``{worker_id: cycles_completed}`` for each worker stopped.
        """
        if worker_id is not None:
            worker = self.worker(worker_id)
            return {worker_id: worker.stop()}
        stopped: Dict[str, int] = {}
        for wid, worker in self._workers.items():
            if worker.state.is_running:
                stopped[wid] = worker.stop()
        return stopped

    def clear(self) -> None:
        """Drop every worker without notifications (test teardown)."""
        for worker in [*self._workers.values(), *self._retiring]:
            worker.cancel()
        self._workers.clear()
        self._retiring.clear()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop all workers, wait for loops to exit, cancel stragglers, drain webhooks."""
        wait_for = self.shutdown_timeout if timeout is None else float(timeout)
        stopped = self.stop()
        if stopped:
            self.log.info(f"Shutting down {len(stopped)} running worker(s)")

        workers = [*self._workers.values(), *self._retiring]
        tasks = [w.task for w in workers if w.task is not None and not w.task.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=wait_for)
            for task in pending:
                task.cancel()
            if pending:
                self.log.warning(f"Cancelled {len(pending)} worker loop(s) still busy after {wait_for}s")
                await asyncio.gather(*pending, return_exceptions=True)

        for worker in workers:
            await worker.notifier.drain()
