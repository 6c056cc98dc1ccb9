"""Subject allotment engine: merit-ordered allocation of students to pool subjects."""

from .errors import (
    AllotmentError,
    AtCapacityError,
    CommitFailureError,
    InvalidInputError,
    PoolInactiveError,
    PoolNotFoundError,
    RunCancelledError,
    RunInProgressError,
    StorageError,
)
from .models import (
    AcademicRecord,
    AllocationResult,
    Allotted,
    Registration,
    Subject,
    SubjectPool,
    Unallotted,
)

__version__ = "0.1.0"
