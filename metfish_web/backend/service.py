from __future__ import annotations

import logging
import os
import shutil
import traceback
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO

import pydantic

from .archive import extract_data_archive
from .config import Settings
from .errors import (
    ExecutionError,
    JobTimeoutError,
    MetfishError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .job_store import (
    FAILED,
    RUNNING,
    STAGED,
    SUCCEEDED,
    TERMINAL_STATES,
    TIMED_OUT,
    Job,
    JobState,
    StagingPaths,
    new_job_id,
    safe_job_id,
    staging_area,
)
from .runner import RunOutcome, build_training_args, run_training, tail
from .schemas import TrainingParameters
from .storage import ObjectStorage


logger = logging.getLogger(__name__)

Runner = Callable[..., RunOutcome]


@dataclass(frozen=True)
class Upload:
    filename: str | None
    stream: BinaryIO

    def size(self) -> int:
        pos = self.stream.tell()
        self.stream.seek(0, os.SEEK_END)
        size = self.stream.tell()
        self.stream.seek(pos)
        return size

    def save(self, dst: Path) -> Path:
        self.stream.seek(0)
        with dst.open("wb") as f:
            shutil.copyfileobj(self.stream, f)
        return dst


@dataclass
class JobResult:
    status: str
    job_id: str | None
    state: JobState | None
    results: list[str] = field(default_factory=list)
    output: str = ""
    message: str | None = None
    error_type: str | None = None
    http_status: int = 200
    traceback: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


def parse_parameters(raw: Mapping[str, Any] | TrainingParameters | None) -> TrainingParameters:
    if isinstance(raw, TrainingParameters):
        return raw
    try:
        return TrainingParameters.model_validate(dict(raw or {}))
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid parameters: {problems}") from e


class OrchestrationService:
    def __init__(self, settings: Settings, storage: ObjectStorage, *, runner: Runner = run_training) -> None:
        self.settings = settings
        self.storage = storage
        self.runner = runner

    def health(self) -> dict[str, str]:
        return {"status": "healthy", "gpu": "available"}

    def list_checkpoints(self) -> list[str]:
        suffix = self.settings.checkpoint_suffix
        names = self.storage.list(self.settings.checkpoint_bucket)
        return [n for n in names if n.endswith(suffix)]

    def list_results(self, job_id: str) -> list[str]:
        job_id = safe_job_id(job_id)
        bucket = self.settings.result_bucket
        return [self.storage.location(bucket, n) for n in self.storage.list(bucket, prefix=f"{job_id}/")]

    def submit_job(
        self,
        data_archive: Upload | None,
        csv_manifest: Upload | None,
        checkpoint_ref: str | None,
        parameters: Mapping[str, Any] | TrainingParameters | None = None,
    ) -> JobResult:
        job: Job | None = None
        try:
            params = self._validate(data_archive, csv_manifest, checkpoint_ref, parameters)
            job = Job(
                id=new_job_id(params.sequence_index),
                checkpoint_ref=str(checkpoint_ref).strip(),
                parameters=params.model_dump(),
            )
            logger.info("job %s: received (checkpoint=%s)", job.id, job.checkpoint_ref)
            with staging_area(job.id, self.settings.staging_root) as paths:
                return self._execute(job, paths, data_archive, csv_manifest, params)
        except MetfishError as e:
            logger.warning("job %s: %s: %s", job.id if job else "-", e.error_type, e.message)
            return self._failure(job, e, e.message, e.error_type, e.http_status, e.output)
        except Exception as e:  # noqa: BLE001
            logger.exception("job %s: unexpected failure", job.id if job else "-")
            return self._failure(job, e, str(e) or type(e).__name__, "unexpected", 500, None)

    def _validate(
        self,
        data_archive: Upload | None,
        csv_manifest: Upload | None,
        checkpoint_ref: str | None,
        parameters: Mapping[str, Any] | TrainingParameters | None,
    ) -> TrainingParameters:
        missing = [
            name
            for name, upload in (("data_dir", data_archive), ("test_csv_file", csv_manifest))
            if upload is None or upload.size() == 0
        ]
        if missing:
            raise ValidationError(f"Missing or empty required file(s): {', '.join(missing)}")
        if not checkpoint_ref or not str(checkpoint_ref).strip():
            raise ValidationError("checkpoint_file is required")
        return parse_parameters(parameters)

    def _execute(
        self,
        job: Job,
        paths: StagingPaths,
        data_archive: Upload,
        csv_manifest: Upload,
        params: TrainingParameters,
    ) -> JobResult:
        archive_path = data_archive.save(paths.archive(data_archive.filename))
        csv_manifest.save(paths.manifest)
        job.advance(STAGED)

        ckpt_path = self._resolve_checkpoint(job.checkpoint_ref, paths)
        data_dir = extract_data_archive(archive_path, paths.data_dir)

        manifest_location = self.storage.put(self.settings.input_bucket, paths.manifest, job.prefix + "test.csv")
        logger.info("job %s: manifest recorded at %s", job.id, manifest_location)

        args = build_training_args(
            self.settings.train_command,
            data_dir=data_dir,
            output_dir=paths.output_dir,
            ckpt_path=ckpt_path,
            test_csv_path=paths.manifest,
            params=params,
        )
        job.advance(RUNNING)
        outcome = self.runner(args, timeout=self.settings.timeout_sec, cwd=self.settings.train_workdir)

        n = self.settings.output_tail_chars
        if outcome.kind == "timed_out":
            job.advance(TIMED_OUT)
            raise JobTimeoutError(
                f"Computation timed out after {self.settings.timeout_sec:g} seconds; no results were published",
                output=tail(outcome.stderr or outcome.stdout, n),
            )
        if outcome.kind == "launch_failed":
            raise ExecutionError(f"Failed to launch training command: {outcome.error}")
        if not outcome.succeeded:
            err_tail = tail(outcome.stderr or outcome.stdout, n)
            raise ExecutionError(f"Computation failed with exit code {outcome.exit_code}: {err_tail}", output=err_tail)

        job.outputs = self._publish(job, paths.output_dir)
        job.advance(SUCCEEDED)
        return JobResult(
            status="success",
            job_id=job.id,
            state=job.status,
            results=list(job.outputs),
            output=tail(outcome.stdout, n),
        )

    def _resolve_checkpoint(self, name: str, paths: StagingPaths) -> Path:
        bucket = self.settings.checkpoint_bucket
        if not self.storage.exists(bucket, name):
            raise NotFoundError(f"Checkpoint not found: {name}")

        cache_dir = self.settings.checkpoint_cache_dir
        if cache_dir is None:
            logger.info("downloading checkpoint %s/%s", bucket, name)
            return self.storage.get(bucket, name, paths.checkpoint(name))

        cached = cache_dir / name.replace("/", "__")
        if cached.is_file():
            logger.info("checkpoint cache hit: %s", name)
            return cached
        cache_dir.mkdir(parents=True, exist_ok=True)
        part = cached.with_name(f"{cached.name}.{uuid.uuid4().hex}.part")
        logger.info("downloading checkpoint %s/%s into cache", bucket, name)
        try:
            self.storage.get(bucket, name, part)
            os.replace(part, cached)
        finally:
            part.unlink(missing_ok=True)
        return cached

    def _publish(self, job: Job, output_dir: Path) -> list[str]:
        """Upload every output file under the job prefix; on failure remove what was already uploaded."""
        bucket = self.settings.result_bucket
        published: list[str] = []
        locations: list[str] = []
        try:
            for p in sorted(output_dir.rglob("*")):
                if not p.is_file():
                    continue
                rel = p.relative_to(output_dir).as_posix()
                name = job.prefix + rel
                locations.append(self.storage.put(bucket, p, name))
                published.append(name)
                logger.info("job %s: published %s", job.id, rel)
        except StorageError as e:
            logger.error("job %s: publishing failed after %d object(s), rolling back", job.id, len(published))
            leftover = self._unpublish(bucket, published)
            if leftover:
                e.message = f"{e.message}; could not remove partial results: {', '.join(leftover)}"
                e.args = (e.message,)
            raise
        return locations

    def _unpublish(self, bucket: str, names: list[str]) -> list[str]:
        leftover: list[str] = []
        for name in names:
            try:
                self.storage.delete(bucket, name)
            except StorageError:
                logger.exception("failed to remove %s/%s", bucket, name)
                leftover.append(self.storage.location(bucket, name))
        return leftover

    def _failure(
        self,
        job: Job | None,
        exc: BaseException,
        message: str,
        error_type: str,
        http_status: int,
        output: str | None,
    ) -> JobResult:
        if job is not None and job.status not in TERMINAL_STATES:
            job.advance(FAILED)
        return JobResult(
            status="error",
            job_id=job.id if job else None,
            state=job.status if job else None,
            output=output or "",
            message=message,
            error_type=error_type,
            http_status=http_status,
            traceback="".join(traceback.format_exception(exc)) if self.settings.debug else None,
        )
