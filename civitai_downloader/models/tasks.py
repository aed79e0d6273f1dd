from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class FailurePolicy(str, Enum):
    """What a pipeline step does when its command exits non-zero."""

    tolerate = "tolerate"
    fail_fast = "fail_fast"


@dataclass(frozen=True)
class UserTask:
    """One (username, base model) pair of the download matrix."""

    username: str
    base_model: str


@dataclass
class TaskResult:
    label: str
    command: List[str] = field(default_factory=list)
    returncode: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0
