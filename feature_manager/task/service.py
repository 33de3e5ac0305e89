"""Task tracking service for queued deploy requests.

Requests are run as named asyncio tasks so that a request identical to one
still in flight can join it instead of being applied twice.
"""

import asyncio
from functools import partial
import logging
from typing import Any, Coroutine
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str
    ) -> asyncio.Task[Any]:
        """Create and track a new named task.

        Args:
            coro: The coroutine to run as a task
            name: Key identifying the work the task performs

        Returns:
            The created task
        """

    @abstractmethod
    def get_task(self, name: str) -> asyncio.Task[Any] | None:
        """Return the in-flight task with the given name, if any."""

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete."""

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""


class TaskServiceImpl(TaskService):
    """Service for tracking and waiting for asynchronous tasks."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: dict[str, asyncio.Task[Any]] = {}

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str
    ) -> asyncio.Task[Any]:
        """Create and track a new named task."""
        if name in self._active_tasks:
            coro.close()
            raise ValueError(f"Task {name} is already in flight")
        task = asyncio.create_task(coro, name=name)
        self._active_tasks[name] = task
        task.add_done_callback(partial(self._task_done, name))
        return task

    def get_task(self, name: str) -> asyncio.Task[Any] | None:
        """Return the in-flight task with the given name, if any."""
        return self._active_tasks.get(name)

    def _task_done(self, name: str, task: asyncio.Task[Any]) -> None:
        """Callback when a task is done."""
        if self._active_tasks.get(name) is task:
            del self._active_tasks[name]
        if task.cancelled():
            _LOGGER.debug("Task %s cancelled", name)
        elif (err := task.exception()) is not None:
            _LOGGER.debug("Task %s failed: %s", name, err)

    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete.

        Failures are left to whoever awaits the individual task.
        """
        active_tasks = list(self._active_tasks.values())
        if active_tasks:
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)
        else:
            await asyncio.sleep(0)

    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""
        return len(self._active_tasks)
