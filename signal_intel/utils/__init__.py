"""Utility modules for the signal intelligence pipeline."""

from .deadline import Deadline, DeadlineExceeded

__all__ = [
    "Deadline",
    "DeadlineExceeded",
]
