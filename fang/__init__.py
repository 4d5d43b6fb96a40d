"""Background task processing: an SQLite task queue, workers, worker pools and cron schedules."""

__version__ = "0.1.0"