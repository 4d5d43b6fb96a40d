# fang

Background task processing for Python, using only the standard library.
Tasks are stored in an SQLite database, picked up by workers of a matching
task type, retried with a backoff when they fail, and optionally scheduled
once or periodically with a cron pattern.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Defining a task

Subclass `fang.runnable.Runnable` and implement `run(queue)`. A task signals
failure by raising `fang.core.FangError`.

```python
from fang.core import FangError
from fang.runnable import Runnable


class SendReport(Runnable):
    def __init__(self, number):
        self.number = number

    def run(self, queue):
        if self.number < 0:
            raise FangError("negative report number")
        print(f"report {self.number} sent")

    def task_type(self):
        return "reports"

    def uniq(self):
        return True
```

Methods you may override:

- `task_type()` – which workers pick the task up (default `"common"`);
- `uniq()` – when true, inserting a task whose metadata equals that of a
  task still waiting (state new or retried) returns the waiting task instead
  of storing a second one (default false);
- `cron()` – return `CronPattern(...)` for a periodic task or
  `ScheduleOnce(datetime)` for a single run (default `None`);
- `max_retries()` – how many times a failing task is retried (default 20);
- `backoff(attempt)` – seconds to wait before a retry (default `2 ** attempt`).

Every subclass is registered under its class name. `to_metadata()` turns a
task into a JSON-ready dict of its fields (dataclass fields, or public
instance attributes) plus a `"type"` key holding the class name;
`runnable_from_metadata(metadata)` rebuilds the task by calling the
registered class with those fields as keyword arguments, and raises
`FangError` when the type is missing or unknown or the fields do not fit.

## The queue

`fang.queue.Queue(database=":memory:", *, timeout=5.0)` opens (and creates
if needed) a `fang_tasks` table in the given SQLite file. One connection is
shared between threads behind a lock; use it as a context manager or call
`close()` when done. Storage failures are raised as `QueueError`.

```python
from fang.queue import Queue

with Queue("tasks.db") as queue:
    task = queue.insert_task(SendReport(10))
```

Operations:

- `insert_task(task)` – store a task to run now;
- `schedule_task(task)` – store a task at the time given by its `cron()`;
  raises `TaskNotSchedulableError` if `cron()` returns `None`,
  `NoTimestampsError` if a cron pattern has no future match, and
  `CronParseError` for an invalid pattern;
- `fetch_and_touch_task(task_type)` – take the due task of that type with
  the earliest `scheduled_at` (then `created_at`) in state new or retried,
  mark it in progress and return it, or return `None`;
- `find_task_by_id(task_id)` – the stored `Task` or `None`;
- `update_task_state(task, state)`, `fail_task(task, error)`,
  `schedule_retry(task, backoff_seconds, error)` – update a task and return
  the stored result; a retry increments `retries` and reschedules the task;
- `remove_task(task_id)`, `remove_tasks_of_type(task_type)`,
  `remove_all_scheduled_tasks()` (tasks scheduled in the future) and
  `remove_all_tasks()` – return the number of removed tasks;
- `remove_task_by_metadata(task)` – remove stored tasks with the same
  metadata; raises `TaskNotUniqError` unless `task.uniq()` is true.

`calculate_hash(text)` gives the hex SHA-256 used for unique tasks.
`Queueable` is the abstract base class describing these operations.

## Tasks and states

`fang.core.Task` is a dataclass with `id`, `metadata`, `error_message`,
`state`, `task_type`, `uniq_hash`, `retries`, `scheduled_at`, `created_at`
and `updated_at` (UTC datetimes). `FangTaskState` is one of `NEW`,
`IN_PROGRESS`, `FAILED`, `FINISHED` and `RETRIED`.

## Workers

`fang.worker.Worker(queue, task_type="common", sleep_params=SleepParams(),
retention_mode=RetentionMode.REMOVE_ALL)`:

- `run(task)` rebuilds and runs one task. On `FangError`, the task is
  retried via `schedule_retry` while its `retries` is below `max_retries()`,
  with `backoff(retries)` seconds of delay; otherwise it is finalised.
- `run_tasks()` fetches and runs tasks forever, sleeping while none is due.
- `run_tasks_until_none()` runs due tasks until none is left and returns how
  many it ran.

After a task with a `CronPattern` runs, the worker schedules its next
occurrence.

`RetentionMode` decides what finalising does: `KEEP_ALL` marks the task
finished or failed, `REMOVE_ALL` deletes it, `REMOVE_FINISHED` deletes
finished tasks and marks failed ones.

`SleepParams` holds `sleep_period`, `max_sleep_period`, `min_sleep_period`
and `sleep_step` (defaults 5 s, 15 s, 5 s, 5 s). An idle worker grows its
sleep by one step up to the maximum and returns to the minimum after it
finds a task.

## Worker pools

`fang.worker_pool.WorkerPool(queue, number_of_workers, sleep_params=...,
retention_mode=..., task_type="common")`. `start()` launches
`number_of_workers` daemon threads named `worker_<task_type><n>` and returns
their `WorkerThread` records. When a worker's loop ends with an exception it
is logged and the thread is spawned again, counting `restarts`.
`WorkerParams` is a plain record of optional overrides.

## Cron patterns

`fang.cron.parse_schedule(expression)` accepts six or seven fields: seconds,
minutes, hours, day of month, month, day of week (1 = Sunday … 7 = Saturday)
and an optional year (1970–2100). Fields take `*`, `?`, values, ranges
`a-b`, steps `/n` and comma lists; months and weekdays accept English names.
The shorthands `@yearly`, `@annually`, `@monthly`, `@weekly`, `@daily` and
`@hourly` are understood. The resulting `CronSchedule` offers
`next_after(moment)` and the generator `upcoming(start)`, both in UTC.

## What this package does not do

Storage is SQLite only; there is no backend for other database servers and
no schema migration tooling. The API is synchronous (threads, no asyncio),
and there is no command-line program: workers are started from your own
code.