from __future__ import annotations

import logging
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from .errors import ValidationError


logger = logging.getLogger(__name__)

_ARCHIVE_EXTS = (".tar.gz", ".tar.bz2", ".tar.xz", ".tgz", ".tar", ".zip")

JobState = Literal["received", "staged", "running", "succeeded", "failed", "timed_out"]

RECEIVED = "received"
STAGED = "staged"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
TIMED_OUT = "timed_out"

TERMINAL_STATES = frozenset({SUCCEEDED, FAILED, TIMED_OUT})

_TRANSITIONS: dict[str, frozenset[str]] = {
    RECEIVED: frozenset({STAGED, FAILED}),
    STAGED: frozenset({RUNNING, FAILED}),
    RUNNING: frozenset({SUCCEEDED, FAILED, TIMED_OUT}),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id(sequence_index: int | str, now: datetime | None = None) -> str:
    """Submission timestamp + sequence index, with a random suffix against same-second collisions."""
    stamp = (now or _utc_now()).strftime("%Y%m%d_%H%M%S")
    return f"{stamp}_{sequence_index}_{uuid.uuid4().hex[:8]}"


def safe_job_id(job_id: str) -> str:
    if not job_id or any(ch in job_id for ch in ("/", "\\", "..")):
        raise ValidationError("invalid job_id")
    return job_id


@dataclass
class Job:
    id: str
    checkpoint_ref: str
    parameters: dict[str, object]
    status: JobState = RECEIVED
    outputs: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utc_now)
    finished_at: datetime | None = None

    def advance(self, state: JobState) -> None:
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if state not in allowed:
            raise RuntimeError(f"job {self.id}: illegal transition {self.status} -> {state}")
        logger.info("job %s: %s -> %s", self.id, self.status, state)
        self.status = state
        if state in TERMINAL_STATES:
            self.finished_at = _utc_now()

    @property
    def prefix(self) -> str:
        return f"{self.id}/"


@dataclass(frozen=True)
class StagingPaths:
    job_id: str
    root: Path
    input_dir: Path
    data_dir: Path
    checkpoint_dir: Path
    output_dir: Path

    @property
    def manifest(self) -> Path:
        return self.input_dir / "test.csv"

    def archive(self, filename: str | None) -> Path:
        name = (filename or "").lower()
        ext = next((e for e in _ARCHIVE_EXTS if name.endswith(e)), Path(name).suffix or ".zip")
        return self.input_dir / f"data{ext}"

    def checkpoint(self, name: str) -> Path:
        return self.checkpoint_dir / Path(name).name


@contextmanager
def staging_area(job_id: str, staging_root: Path | None = None) -> Iterator[StagingPaths]:
    """Fresh scratch directory for one job, removed on every exit path."""
    if staging_root is not None:
        staging_root.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix=f"metfish_{job_id}_", dir=staging_root) as tmp:
        root = Path(tmp)
        paths = StagingPaths(
            job_id=job_id,
            root=root,
            input_dir=root / "input",
            data_dir=root / "data",
            checkpoint_dir=root / "checkpoint",
            output_dir=root / "output",
        )
        for d in (paths.input_dir, paths.checkpoint_dir, paths.output_dir):
            d.mkdir(parents=True, exist_ok=False)
        logger.debug("job %s: staging under %s", job_id, root)
        yield paths
    logger.debug("job %s: staging removed", job_id)
