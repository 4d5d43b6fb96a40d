"""Core value types shared by queues, workers and tasks."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union


@dataclass(frozen=True)
class CronPattern:
    """A cron expression for a periodic task, e.g. ``"0/20 * * * * * *"``."""

    pattern: str


@dataclass(frozen=True)
class ScheduleOnce:
    """A moment at which a task is executed exactly once."""

    moment: datetime


Scheduled = Union[CronPattern, ScheduleOnce]


class CronError(Exception):
    """Base class for errors raised while working with schedules."""


class CronParseError(CronError):
    """The cron expression could not be parsed."""


class TaskNotSchedulableError(CronError):
    """The task does not define a schedule."""

    def __init__(self, message: str = "You have to implement method `cron()` in your AsyncRunnable"):
        super().__init__(message)


class NoTimestampsError(CronError):
    """No future moment matches the cron pattern."""

    def __init__(self, message: str = "No timestamps match with this cron pattern"):
        super().__init__(message)


class RetentionMode(Enum):
    """What happens to tasks in storage after they have been executed."""

    KEEP_ALL = "keep_all"
    REMOVE_ALL = "remove_all"
    REMOVE_FINISHED = "remove_finished"


@dataclass
class SleepParams:
    """How long an idle worker sleeps between polls."""

    sleep_period: timedelta = field(default_factory=lambda: timedelta(seconds=5))
    max_sleep_period: timedelta = field(default_factory=lambda: timedelta(seconds=15))
    min_sleep_period: timedelta = field(default_factory=lambda: timedelta(seconds=5))
    sleep_step: timedelta = field(default_factory=lambda: timedelta(seconds=5))

    def maybe_reset_sleep_period(self) -> None:
        """Return the sleep period to its minimum."""
        if self.sleep_period != self.min_sleep_period:
            self.sleep_period = self.min_sleep_period

    def maybe_increase_sleep_period(self) -> None:
        """Grow the sleep period by one step unless the maximum is reached."""
        if self.sleep_period < self.max_sleep_period:
            self.sleep_period += self.sleep_step


class FangError(Exception):
    """An error raised while executing a task."""

    def __init__(self, description: str):
        super().__init__(description)
        self.description = description

    def __repr__(self) -> str:
        return f"FangError(description={self.description!r})"


def fang_error_from(error: BaseException) -> FangError:
    """Wrap any exception in a :class:`FangError` carrying its representation."""
    if isinstance(error, FangError):
        return error
    return FangError(repr(error))


class FangTaskState(Enum):
    """Lifecycle states of a stored task."""

    NEW = "new"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    FINISHED = "finished"
    RETRIED = "retried"

    def __str__(self) -> str:
        return self.value


@dataclass
class Task:
    """A task row as kept in storage."""

    id: uuid.UUID
    metadata: dict[str, Any]
    error_message: Optional[str]
    state: FangTaskState
    task_type: str
    uniq_hash: Optional[str]
    retries: int
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime