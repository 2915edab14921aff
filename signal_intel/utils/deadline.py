"""Run-scoped wall-clock budget with cooperative cancellation checks."""

import time
from typing import Callable, Optional


class DeadlineExceeded(Exception):
    """Raised when a run's wall-clock budget is exhausted at a checkpoint."""

    def __init__(self, stage: str, budget_seconds: float):
        self.stage = stage
        self.budget_seconds = budget_seconds
        super().__init__(f"Deadline of {budget_seconds:.1f}s exceeded during {stage}")


class Deadline:
    """
    Wall-clock budget for one pipeline run.

    Stages call check() between sub-steps; nothing is interrupted
    preemptively.
    """

    def __init__(
        self,
        budget_seconds: Optional[float],
        clock: Callable[[], float] = time.monotonic,
    ):
        if budget_seconds is not None and budget_seconds <= 0:
            raise ValueError(f"budget_seconds must be positive, got {budget_seconds}")
        self.budget_seconds = budget_seconds
        self._clock = clock
        self._started = clock()

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def elapsed(self) -> float:
        return self._clock() - self._started

    def elapsed_ms(self) -> int:
        return int(self.elapsed() * 1000)

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded."""
        if self.budget_seconds is None:
            return None
        return max(0.0, self.budget_seconds - self.elapsed())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def check(self, stage: str) -> None:
        if self.expired():
            raise DeadlineExceeded(stage, self.budget_seconds)
