from __future__ import annotations

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterator

from jobclock.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

SNAPSHOT_SCHEMA_VERSION = 1


class DraftPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    SAVED = "saved"


@dataclass(slots=True)
class DraftSnapshot:
    job_id: int
    session_id: str | None = None
    phase: DraftPhase = DraftPhase.IDLE
    buffered_seconds: int = 0
    started_at_local: datetime | None = None
    base_at_start: int = 0
    committed: bool = False
    revision: int = 0
    schema_version: int = field(default=SNAPSHOT_SCHEMA_VERSION)

    @property
    def running(self) -> bool:
        return self.phase == DraftPhase.RUNNING

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        payload["running"] = self.running
        payload["started_at_local"] = self.started_at_local.isoformat() if self.started_at_local else None
        return payload

    @classmethod
    def from_dict(cls, job_id: int, payload: dict[str, Any]) -> "DraftSnapshot":
        started_raw = payload.get("started_at_local")
        phase = DraftPhase(payload.get("phase") or DraftPhase.IDLE.value)
        return cls(
            job_id=job_id,
            session_id=payload.get("session_id"),
            phase=phase,
            buffered_seconds=max(0, int(payload.get("buffered_seconds") or 0)),
            started_at_local=datetime.fromisoformat(started_raw) if started_raw else None,
            base_at_start=max(0, int(payload.get("base_at_start") or 0)),
            committed=bool(payload.get("committed", False)),
            revision=int(payload.get("revision") or 0),
            schema_version=int(payload.get("schema_version") or SNAPSHOT_SCHEMA_VERSION),
        )


class LockedDraft:
    """Read/write access to one job's snapshot while its file lock is held."""

    def __init__(self, handle: IO[str], job_id: int, path: Path):
        self._handle = handle
        self.job_id = job_id
        self.path = path

    def read(self) -> DraftSnapshot:
        self._handle.seek(0)
        raw = self._handle.read()
        if not raw.strip():
            return DraftSnapshot(job_id=self.job_id)
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable draft snapshot %s", self.path)
            return DraftSnapshot(job_id=self.job_id)
        return DraftSnapshot.from_dict(self.job_id, payload)

    def write(self, snapshot: DraftSnapshot) -> DraftSnapshot:
        snapshot.revision += 1
        self._handle.seek(0)
        self._handle.truncate()
        self._handle.write(json.dumps(snapshot.to_dict(), indent=2) + "\n")
        self._handle.flush()
        os.fsync(self._handle.fileno())
        return snapshot


class DraftSnapshotStore:
    """Durable per-job draft snapshots shared by every process on this machine.

    Each job has one JSON file under ``root``; an exclusive ``flock`` guards
    every read-modify-write so concurrent tabs see each other's changes.
    """

    def __init__(self, root: Path):
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)
        self._seen_revisions: dict[int, int] = {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DraftSnapshotStore":
        return cls((settings or get_settings()).drafts_root)

    def path_for(self, job_id: int) -> Path:
        return self._root / f"job_{int(job_id)}.json"

    @contextmanager
    def locked(self, job_id: int) -> Iterator[LockedDraft]:
        path = self.path_for(job_id)
        handle = path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            yield LockedDraft(handle, job_id, path)
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()

    def load(self, job_id: int) -> DraftSnapshot:
        with self.locked(job_id) as draft:
            snapshot = draft.read()
        self._seen_revisions[job_id] = snapshot.revision
        return snapshot

    def mark_seen(self, snapshot: DraftSnapshot) -> None:
        self._seen_revisions[snapshot.job_id] = snapshot.revision

    def has_changed(self, job_id: int) -> bool:
        """True when another writer bumped the snapshot since this store last read or wrote it."""
        with self.locked(job_id) as draft:
            revision = draft.read().revision
        return revision != self._seen_revisions.get(job_id, 0)

    def discard(self, job_id: int) -> DraftSnapshot:
        with self.locked(job_id) as draft:
            written = draft.write(DraftSnapshot(job_id=job_id, revision=draft.read().revision))
        self._seen_revisions[job_id] = written.revision
        return written
