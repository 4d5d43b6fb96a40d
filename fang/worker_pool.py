"""A pool of worker threads that restart themselves when they stop."""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .core import RetentionMode, SleepParams, fang_error_from
from .queue import Queueable
from .runnable import COMMON_TYPE
from .worker import Worker

logger = logging.getLogger(__name__)


@dataclass
class WorkerPool:
    """Configuration for a set of workers sharing one queue and task type."""

    queue: Queueable
    number_of_workers: int
    sleep_params: SleepParams = field(default_factory=SleepParams)
    retention_mode: RetentionMode = RetentionMode.REMOVE_ALL
    task_type: str = COMMON_TYPE

    def start(self) -> list["WorkerThread"]:
        """Start the configured number of worker threads."""
        worker_threads = []
        for idx in range(1, self.number_of_workers + 1):
            worker_thread = WorkerThread(
                name=f"worker_{self.task_type}{idx}",
                restarts=0,
                worker_pool=self,
            )
            worker_thread.spawn()
            worker_threads.append(worker_thread)
        return worker_threads


@dataclass
class WorkerThread:
    """A named worker thread that is spawned again whenever it stops."""

    name: str
    restarts: int
    worker_pool: WorkerPool

    def spawn(self) -> threading.Thread:
        """Start the worker in a new daemon thread named after this worker."""
        logger.info(
            "starting a worker thread %s, number of restarts %d",
            self.name,
            self.restarts,
        )
        thread = threading.Thread(target=self._work, name=self.name, daemon=True)
        try:
            thread.start()
        except RuntimeError as error:
            raise fang_error_from(error) from error
        return thread

    def _work(self) -> None:
        pool = self.worker_pool
        worker = Worker(
            queue=pool.queue,
            task_type=pool.task_type,
            retention_mode=pool.retention_mode,
            sleep_params=dataclasses.replace(pool.sleep_params),
        )
        try:
            worker.run_tasks()
        except Exception as error:
            logger.error("Error executing tasks in worker '%s': %r", self.name, error)
        self.restarts += 1
        logger.error(
            "Worker %s stopped. Restarting. The number of restarts %d",
            self.name,
            self.restarts,
        )
        self.spawn()


@dataclass
class WorkerParams:
    """Optional overrides for a worker's settings."""

    retention_mode: Optional[RetentionMode] = None
    sleep_params: Optional[SleepParams] = None
    task_type: Optional[str] = None