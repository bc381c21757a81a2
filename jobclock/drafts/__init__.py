from jobclock.drafts.store import DraftPhase, DraftSnapshot, DraftSnapshotStore
from jobclock.drafts.timer import DraftCommitter, DraftStateError, DraftTimer

__all__ = [
    "DraftCommitter",
    "DraftPhase",
    "DraftSnapshot",
    "DraftSnapshotStore",
    "DraftStateError",
    "DraftTimer",
]
