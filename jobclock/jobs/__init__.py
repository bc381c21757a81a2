from jobclock.jobs.service import (
    DraftAlreadyCommittedError,
    JobConflictError,
    JobNotFoundError,
    JobOwnershipError,
    JobService,
    snapshot_to_dict,
)
from jobclock.jobs.types import JobDetailsUpdate, JobSnapshot, JobSummary, TimeEntrySnapshot

__all__ = [
    "DraftAlreadyCommittedError",
    "JobConflictError",
    "JobNotFoundError",
    "JobOwnershipError",
    "JobService",
    "snapshot_to_dict",
    "JobDetailsUpdate",
    "JobSnapshot",
    "JobSummary",
    "TimeEntrySnapshot",
]
