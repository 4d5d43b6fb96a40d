"""The task interface and the registry that rebuilds tasks from metadata."""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from .core import FangError, Scheduled

if TYPE_CHECKING:
    from typing import Type

COMMON_TYPE = "common"
RETRIES_NUMBER = 20
TYPE_KEY = "type"

_REGISTRY: dict[str, "Type[Runnable]"] = {}


class Runnable(ABC):
    """Base class for tasks; subclasses are registered under their class name."""

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        _REGISTRY[cls.__name__] = cls

    @abstractmethod
    def run(self, queue: Any) -> None:
        """Execute the task; raise FangError on failure."""

    def task_type(self) -> str:
        """The type of workers that execute this task."""
        return COMMON_TYPE

    def uniq(self) -> bool:
        """Whether tasks with identical metadata are stored only once."""
        return False

    def cron(self) -> Optional[Scheduled]:
        """The schedule of the task, or None if it is not scheduled."""
        return None

    def max_retries(self) -> int:
        """How many times a failing task is retried."""
        return RETRIES_NUMBER

    def backoff(self, attempt: int) -> int:
        """Seconds to wait before the given retry attempt."""
        return 2**attempt

    def to_metadata(self) -> dict[str, Any]:
        """The task's fields as a JSON-ready mapping tagged with its type name."""
        if dataclasses.is_dataclass(self):
            fields = {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}
        else:
            fields = {k: v for k, v in vars(self).items() if not k.startswith("_")}
        return {TYPE_KEY: type(self).__name__, **fields}


def runnable_from_metadata(metadata: dict[str, Any]) -> Runnable:
    """Rebuild a task from the mapping produced by :meth:`Runnable.to_metadata`."""
    if not isinstance(metadata, dict) or TYPE_KEY not in metadata:
        raise FangError(f"task metadata has no {TYPE_KEY!r} field: {metadata!r}")
    fields = dict(metadata)
    type_name = fields.pop(TYPE_KEY)
    cls = _REGISTRY.get(type_name)
    if cls is None:
        raise FangError(f"unknown task type {type_name!r}")
    try:
        return cls(**fields)
    except TypeError as error:
        raise FangError(f"cannot rebuild task {type_name!r}: {error}") from error