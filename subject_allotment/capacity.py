"""Run-scoped remaining intake per subject."""

import threading

from .errors import AtCapacityError, InvalidInputError


class CapacityTracker:
    """Remaining seats per subject code for a single allocation run.

    A tracker is created for one pool at the start of a run and discarded when
    the run ends; it is never shared between pools or runs.
    """

    def __init__(self, intake_by_code):
        self._remaining = dict(intake_by_code)
        self._lock = threading.Lock()
        for code, intake in self._remaining.items():
            if intake < 0:
                raise InvalidInputError(f"Negative intake for subject {code}")

    @classmethod
    def from_pool(cls, pool):
        return cls(pool.intake_by_code())

    def _check(self, subject_code):
        if subject_code not in self._remaining:
            raise InvalidInputError(f"Unknown subject code {subject_code!r}")

    def remaining(self, subject_code):
        self._check(subject_code)
        return self._remaining[subject_code]

    def reserve(self, subject_code):
        """Take one seat, or raise AtCapacityError when none are left."""
        self._check(subject_code)
        with self._lock:
            if self._remaining[subject_code] <= 0:
                raise AtCapacityError(f"Subject {subject_code} is full")
            self._remaining[subject_code] -= 1
