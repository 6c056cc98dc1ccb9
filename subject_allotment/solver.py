"""Serial dictatorship: students pick in merit order from what is left."""

import logging

from .errors import AtCapacityError
from .models import Allotted, Unallotted

logger = logging.getLogger(__name__)


def _assign(preferences, capacity_tracker):
    # Attempts run in stated rank order and stop at the first seat reserved
    if not preferences:
        return Unallotted(reason="no_preferences")
    for choice_rank, subject_code in enumerate(preferences, start=1):
        try:
            capacity_tracker.reserve(subject_code)
        except AtCapacityError:
            continue
        return Allotted(subject_code=subject_code, choice_rank=choice_rank)
    return Unallotted(reason="capacity_exhausted")


# --- Serial dictatorship allocation ---
def allocate(ordered_students, preferences_by_student, capacity_tracker):
    """
    Approach:
        - Walks students strictly in the given merit order.
        - Each student takes the highest-ranked preference that still has a seat.
        - A student whose preferences are all full (or empty) is Unallotted.
        - No backtracking: a reserved seat is never reassigned, so a lower-merit
          student can never displace a higher-merit one.

    Returns a dict regno -> Allotted | Unallotted, in merit order.
    """
    allocation = {}
    for regno in ordered_students:
        preferences = preferences_by_student.get(regno, ())
        outcome = _assign(preferences, capacity_tracker)
        allocation[regno] = outcome
        if outcome.is_allotted:
            logger.debug("Allotted %s to %s (choice %d)", regno, outcome.subject_code, outcome.choice_rank)
        else:
            logger.debug("Unallotted %s (%s)", regno, outcome.reason)
    return allocation
