"""A worker that executes tasks of one type taken from a queue."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from .core import CronPattern, FangError, RetentionMode, SleepParams, Task
from .queue import QueueError, Queueable
from .runnable import COMMON_TYPE, runnable_from_metadata

logger = logging.getLogger(__name__)


@dataclass
class Worker:
    """Executes tasks of ``task_type`` one by one, sleeping when none are due."""

    queue: Queueable
    task_type: str = COMMON_TYPE
    sleep_params: SleepParams = field(default_factory=SleepParams)
    retention_mode: RetentionMode = RetentionMode.REMOVE_ALL

    def run(self, task: Task) -> None:
        """Execute one fetched task and record its outcome in the queue."""
        runnable = runnable_from_metadata(task.metadata)
        try:
            runnable.run(self.queue)
        except FangError as error:
            if task.retries < runnable.max_retries():
                backoff_seconds = runnable.backoff(task.retries)
                self.queue.schedule_retry(task, backoff_seconds, error.description)
            else:
                self._finalize_task(task, error)
        else:
            self._finalize_task(task, None)

    def run_tasks(self) -> None:
        """Execute tasks forever; returns only by raising."""
        while True:
            try:
                task = self.queue.fetch_and_touch_task(self.task_type)
            except QueueError as error:
                logger.error("Failed to fetch a task %r", error)
                self._sleep()
                continue
            if task is None:
                self._sleep()
            else:
                self._execute(task)

    def run_tasks_until_none(self) -> int:
        """Execute due tasks until none is left; return how many were run."""
        count = 0
        while True:
            try:
                task = self.queue.fetch_and_touch_task(self.task_type)
            except QueueError as error:
                logger.error("Failed to fetch a task %r", error)
                self._sleep()
                continue
            if task is None:
                return count
            self._execute(task)
            count += 1

    def maybe_reset_sleep_period(self) -> None:
        """Return the sleep period to its minimum."""
        self.sleep_params.maybe_reset_sleep_period()

    def _execute(self, task: Task) -> None:
        actual_task = runnable_from_metadata(task.metadata)
        self.maybe_reset_sleep_period()
        self.run(task)
        if isinstance(actual_task.cron(), CronPattern):
            self.queue.schedule_task(actual_task)

    def _sleep(self) -> None:
        self.sleep_params.maybe_increase_sleep_period()
        time.sleep(self.sleep_params.sleep_period.total_seconds())

    def _finalize_task(self, task: Task, error: Optional[FangError]) -> None:
        mode = self.retention_mode
        if mode is RetentionMode.KEEP_ALL:
            if error is None:
                from .core import FangTaskState

                self.queue.update_task_state(task, FangTaskState.FINISHED)
            else:
                self.queue.fail_task(task, error.description)
        elif mode is RetentionMode.REMOVE_ALL:
            self.queue.remove_task(task.id)
        elif error is None:
            self.queue.remove_task(task.id)
        else:
            self.queue.fail_task(task, error.description)