"""Error taxonomy for allotment runs.

Every error carries a machine-readable ``kind`` so the CLI (and any service
wrapping the engine) can report failures without parsing messages.
"""


class AllotmentError(Exception):
    kind = "allotment_error"
    exit_code = 1

    def to_dict(self):
        return {"error": self.kind, "message": str(self)}


class PoolNotFoundError(AllotmentError):
    kind = "pool_not_found"
    exit_code = 3


class PoolInactiveError(AllotmentError):
    kind = "pool_inactive"
    exit_code = 4


class InvalidInputError(AllotmentError):
    """Malformed registration or preference data.

    Raised per registration; the coordinator records the registration as
    skipped and carries on with the rest of the pool.
    """

    kind = "invalid_input"


class AtCapacityError(AllotmentError):
    """Internal solver signal: the subject has no seats left."""

    kind = "at_capacity"


class RunInProgressError(AllotmentError):
    kind = "run_in_progress"
    exit_code = 5


class CommitFailureError(AllotmentError):
    kind = "commit_failure"
    exit_code = 6


class RunCancelledError(AllotmentError):
    kind = "run_cancelled"
    exit_code = 7


class StorageError(AllotmentError):
    """The allotment database could not be opened, read or locked."""

    kind = "storage_error"
    exit_code = 8
