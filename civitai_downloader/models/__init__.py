"""Pydantic models and task value objects used across the CLI and the container runtime."""

from .schemas import ExportEntry, FileConfig  # noqa: F401
from .tasks import FailurePolicy, TaskResult, UserTask  # noqa: F401
