"""Tests for the run-scoped Deadline."""

import pytest

from signal_intel.utils.deadline import Deadline, DeadlineExceeded


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestDeadline:

    def test_remaining_counts_down(self):
        clock = FakeClock()
        deadline = Deadline(10.0, clock=clock)

        clock.advance(4.0)

        assert deadline.remaining() == pytest.approx(6.0)
        assert deadline.elapsed_ms() == 4000
        assert not deadline.expired()

    def test_remaining_never_negative(self):
        clock = FakeClock()
        deadline = Deadline(1.0, clock=clock)

        clock.advance(5.0)

        assert deadline.remaining() == 0.0
        assert deadline.expired()

    def test_check_raises_with_stage(self):
        """check() names the stage that ran out of time."""
        clock = FakeClock()
        deadline = Deadline(2.0, clock=clock)
        deadline.check("clustering")

        clock.advance(2.5)

        with pytest.raises(DeadlineExceeded) as exc_info:
            deadline.check("clustering")

        assert exc_info.value.stage == "clustering"
        assert exc_info.value.budget_seconds == 2.0
        assert "clustering" in str(exc_info.value)

    def test_unbounded_never_expires(self):
        deadline = Deadline.unbounded()

        assert deadline.remaining() is None
        assert not deadline.expired()
        deadline.check("anything")

    @pytest.mark.parametrize("budget", [0, -1.5])
    def test_rejects_non_positive_budget(self, budget):
        with pytest.raises(ValueError):
            Deadline(budget)
