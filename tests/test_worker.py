import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import pytest

from fang.core import CronPattern, FangError, FangTaskState, RetentionMode, SleepParams
from fang.queue import Queue, QueueError, Queueable
from fang.runnable import Runnable
from fang.worker import Worker


@dataclass
class WorkerTaskTest(Runnable):
    number: int

    def run(self, queue):
        pass

    def task_type(self):
        return "worker_task"


@dataclass
class FailedTask(Runnable):
    number: int

    def run(self, queue):
        raise FangError(f"the number is {self.number}")

    def max_retries(self):
        return 0

    def task_type(self):
        return "F_task"


@dataclass
class RetryTask(Runnable):
    number: int

    def run(self, queue):
        raise FangError(f"Saving Pepe. Attempt {self.number}")

    def max_retries(self):
        return 2

    def backoff(self, attempt):
        return 0

    def task_type(self):
        return "Retry_task"


@dataclass
class TaskType1(Runnable):
    def run(self, queue):
        pass

    def task_type(self):
        return "type1"


@dataclass
class TaskType2(Runnable):
    def run(self, queue):
        pass

    def task_type(self):
        return "type2"


@dataclass
class TaskScheduled(Runnable):
    def run(self, queue):
        pass

    def task_type(self):
        return "type_scheduled"

    def cron(self):
        return CronPattern("0/1 * * * * * *")


class UnbuildableWorkerTask(Runnable):
    def __init__(self, amount):
        self.total = amount

    def run(self, queue):
        pass

    def task_type(self):
        return "unbuildable_worker"


class FlakyFetchQueue(Queueable):
    """Fails the first fetch, then reports an empty queue."""

    def __init__(self):
        self.fetches = 0

    def fetch_and_touch_task(self, task_type) -> Optional[object]:
        self.fetches += 1
        if self.fetches == 1:
            raise QueueError("connection lost")
        return None

    def _unexpected(self, *args):
        raise AssertionError("unexpected call")

    insert_task = _unexpected
    schedule_task = _unexpected
    remove_all_tasks = _unexpected
    remove_all_scheduled_tasks = _unexpected
    remove_tasks_of_type = _unexpected
    remove_task = _unexpected
    remove_task_by_metadata = _unexpected
    find_task_by_id = _unexpected
    update_task_state = _unexpected
    fail_task = _unexpected
    schedule_retry = _unexpected


@pytest.fixture
def queue():
    with Queue() as q:
        yield q


def test_executes_and_finishes_task(queue):
    job = WorkerTaskTest(number=10)
    worker = Worker(queue=queue, retention_mode=RetentionMode.KEEP_ALL, task_type=job.task_type())
    task = queue.insert_task(job)
    assert task.state == FangTaskState.NEW

    worker.run(task)

    found = queue.find_task_by_id(task.id)
    assert found.state == FangTaskState.FINISHED


def test_executes_task_only_of_specific_type(queue):
    task1 = queue.insert_task(TaskType1())
    task2 = queue.insert_task(TaskType2())
    worker = Worker(queue=queue, task_type="type1", retention_mode=RetentionMode.KEEP_ALL)
    assert task1.state == FangTaskState.NEW
    assert task2.state == FangTaskState.NEW

    assert worker.run_tasks_until_none() == 1

    assert queue.find_task_by_id(task1.id).state == FangTaskState.FINISHED
    assert queue.find_task_by_id(task2.id).state == FangTaskState.NEW


def test_saves_error_for_failed_task(queue):
    job = FailedTask(number=10)
    worker = Worker(queue=queue, retention_mode=RetentionMode.KEEP_ALL, task_type=job.task_type())
    task = queue.insert_task(job)
    assert task.state == FangTaskState.NEW

    worker.run(task)

    found = queue.find_task_by_id(task.id)
    assert found.state == FangTaskState.FAILED
    assert found.error_message == "the number is 10"


def test_retries_task(queue):
    job = RetryTask(number=10)
    worker = Worker(queue=queue, retention_mode=RetentionMode.KEEP_ALL, task_type=job.task_type())
    task = queue.insert_task(job)
    assert task.state == FangTaskState.NEW

    worker.run(task)

    found = queue.find_task_by_id(task.id)
    assert found.state == FangTaskState.RETRIED
    assert found.retries == 1

    worker.run_tasks_until_none()

    found = queue.find_task_by_id(task.id)
    assert found.state == FangTaskState.FAILED
    assert found.retries == 2
    assert found.error_message == "Saving Pepe. Attempt 10"


def test_no_schedule_until_run(queue):
    job = TaskScheduled()
    queue.schedule_task(job)
    time.sleep(1.1)
    worker = Worker(queue=queue, task_type=job.task_type())

    worker.run_tasks_until_none()

    assert queue.fetch_and_touch_task(job.task_type()) is None
    # The executed task was removed and exactly one rescheduled copy remains.
    assert queue.remove_tasks_of_type("type_scheduled") == 1


def test_remove_all_removes_finished_and_failed(queue):
    worker_ok = Worker(queue=queue, task_type="worker_task")
    worker_failed = Worker(queue=queue, task_type="F_task")
    ok = queue.insert_task(WorkerTaskTest(number=1))
    failed = queue.insert_task(FailedTask(number=2))

    worker_ok.run(ok)
    worker_failed.run(failed)

    assert queue.find_task_by_id(ok.id) is None
    assert queue.find_task_by_id(failed.id) is None


def test_remove_finished_keeps_failed(queue):
    mode = RetentionMode.REMOVE_FINISHED
    ok = queue.insert_task(WorkerTaskTest(number=1))
    failed = queue.insert_task(FailedTask(number=3))

    Worker(queue=queue, task_type="worker_task", retention_mode=mode).run(ok)
    Worker(queue=queue, task_type="F_task", retention_mode=mode).run(failed)

    assert queue.find_task_by_id(ok.id) is None
    found = queue.find_task_by_id(failed.id)
    assert found.state == FangTaskState.FAILED
    assert found.error_message == "the number is 3"


def test_run_tasks_raises_on_unbuildable_metadata(queue):
    task = queue.insert_task(UnbuildableWorkerTask(5))
    worker = Worker(queue=queue, task_type="unbuildable_worker")

    with pytest.raises(FangError):
        worker.run_tasks()

    assert queue.find_task_by_id(task.id).state == FangTaskState.IN_PROGRESS


def test_fetch_error_sleeps_and_continues():
    fake = FlakyFetchQueue()
    params = SleepParams(
        sleep_period=timedelta(0),
        max_sleep_period=timedelta(milliseconds=20),
        min_sleep_period=timedelta(0),
        sleep_step=timedelta(milliseconds=10),
    )
    worker = Worker(queue=fake, sleep_params=params)

    assert worker.run_tasks_until_none() == 0
    assert fake.fetches == 2
    assert worker.sleep_params.sleep_period == timedelta(milliseconds=10)


def test_maybe_reset_sleep_period(queue):
    params = SleepParams(sleep_period=timedelta(seconds=15))
    worker = Worker(queue=queue, sleep_params=params)

    worker.maybe_reset_sleep_period()

    assert worker.sleep_params.sleep_period == worker.sleep_params.min_sleep_period


def test_worker_defaults(queue):
    worker = Worker(queue=queue)
    assert worker.task_type == "common"
    assert worker.retention_mode is RetentionMode.REMOVE_ALL
    assert worker.sleep_params == SleepParams()