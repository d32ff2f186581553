"""API routers for Permit Core."""

from . import tasks, task_requests

__all__ = ["tasks", "task_requests"]
