"""Job entity: one run of a catalog file on a bot."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from fabbot.core.errors import JobError


class JobState(Enum):
    """Run-state of a job."""
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELED = "canceled"


FINISHED_STATES = (JobState.COMPLETED, JobState.CANCELED)

_JOB_TRANSITIONS = {
    "start": ((JobState.READY,), JobState.RUNNING),
    "pause": ((JobState.RUNNING,), JobState.PAUSED),
    "resume": ((JobState.PAUSED,), JobState.RUNNING),
    "complete": ((JobState.RUNNING, JobState.PAUSED), JobState.COMPLETED),
    "cancel": ((JobState.READY, JobState.RUNNING, JobState.PAUSED), JobState.CANCELED),
}


class Stopwatch:
    """Accumulating elapsed-time tracker."""

    def __init__(self) -> None:
        self._accumulated = 0.0
        self._started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._started_at is not None

    def start(self) -> None:
        if self._started_at is None:
            self._started_at = time.monotonic()

    def stop(self) -> None:
        if self._started_at is not None:
            self._accumulated += time.monotonic() - self._started_at
            self._started_at = None

    @property
    def elapsed(self) -> float:
        """Seconds accumulated while running."""
        if self._started_at is None:
            return self._accumulated
        return self._accumulated + (time.monotonic() - self._started_at)


@dataclass
class Job:
    """A job streaming one file to one bot.

    ``current_line`` only ever increases while the job is active and never
    exceeds ``total_lines`` once that has been counted.
    """
    file_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: JobState = JobState.READY
    stopwatch: Stopwatch = field(default_factory=Stopwatch)
    total_lines: Optional[int] = None
    current_line: int = 0

    @property
    def is_running(self) -> bool:
        return self.state is JobState.RUNNING

    @property
    def is_finished(self) -> bool:
        return self.state in FINISHED_STATES

    @property
    def percent_complete(self) -> Optional[float]:
        if not self.total_lines:
            return None
        return round(100.0 * self.current_line / self.total_lines, 1)

    def advance(self) -> int:
        """Move the line cursor forward by one."""
        if self.total_lines is not None and self.current_line >= self.total_lines:
            raise JobError(f"Job {self.id} cursor would pass line {self.total_lines}")
        self.current_line += 1
        return self.current_line

    def _transition(self, action: str) -> None:
        sources, target = _JOB_TRANSITIONS[action]
        if self.state not in sources:
            raise JobError(f"Cannot {action} job {self.id} while {self.state.value}")
        self.state = target

    def start(self) -> None:
        self._transition("start")
        self.stopwatch.start()

    def pause(self) -> None:
        self._transition("pause")
        self.stopwatch.stop()

    def resume(self) -> None:
        self._transition("resume")
        self.stopwatch.start()

    def complete(self) -> None:
        self._transition("complete")
        self.stopwatch.stop()

    def cancel(self) -> None:
        self._transition("cancel")
        self.stopwatch.stop()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fileId": self.file_id,
            "state": self.state.value,
            "currentLine": self.current_line,
            "totalLines": self.total_lines,
            "percentComplete": self.percent_complete,
            "elapsed": round(self.stopwatch.elapsed, 3),
        }


__all__ = ["FINISHED_STATES", "Job", "JobState", "Stopwatch"]
