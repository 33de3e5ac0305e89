"""Task tracking module.

This module provides a simple task tracking service used to run queued
deploy requests and wait for them.
"""

from .service import TaskService, TaskServiceImpl

__all__ = ["TaskService", "TaskServiceImpl"]
