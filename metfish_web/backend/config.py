from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import shlex
import tempfile


ENV_PREFIX = "METFISH_WEB_"


def _env(name: str, default: str | None = None) -> str | None:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_path(name: str, default: Path | str | None) -> Path | None:
    raw = _env(name)
    if raw is None:
        return Path(default).resolve() if default is not None else None
    return Path(raw).resolve()


@dataclass(frozen=True)
class Settings:
    project_root: Path
    frontend_dir: Path
    staging_root: Path
    checkpoint_cache_dir: Path | None

    storage_backend: str
    storage_root: Path
    s3_endpoint: str | None
    s3_region: str | None
    s3_access_key_id: str | None
    s3_secret_access_key: str | None
    location_scheme: str

    checkpoint_bucket: str
    input_bucket: str
    result_bucket: str
    checkpoint_suffix: str

    train_command: tuple[str, ...]
    train_workdir: Path | None
    timeout_sec: float
    output_tail_chars: int

    cors_origins: tuple[str, ...]
    debug: bool
    log_level: str


def get_settings() -> Settings:
    project_root = Path(__file__).resolve().parents[1]
    frontend_dir = _env_path("FRONTEND_DIR", project_root / "frontend")
    staging_root = _env_path("STAGING_ROOT", tempfile.gettempdir())
    checkpoint_cache_dir = _env_path("CHECKPOINT_CACHE_DIR", None)
    storage_root = _env_path("STORAGE_ROOT", project_root / "var" / "buckets")

    train_command = tuple(shlex.split(_env("TRAIN_COMMAND", "python train.py") or ""))
    if not train_command:
        raise RuntimeError(f"{ENV_PREFIX}TRAIN_COMMAND must not be empty")

    cors_raw = _env("CORS_ORIGINS", "*") or ""
    cors_origins = tuple(o.strip() for o in cors_raw.split(",") if o.strip())

    return Settings(
        project_root=project_root,
        frontend_dir=frontend_dir,
        staging_root=staging_root,
        checkpoint_cache_dir=checkpoint_cache_dir,
        storage_backend=(_env("STORAGE_BACKEND", "s3") or "s3").strip().lower(),
        storage_root=storage_root,
        s3_endpoint=_env("S3_ENDPOINT", "https://storage.googleapis.com") or None,
        s3_region=_env("S3_REGION", "auto") or None,
        s3_access_key_id=_env("S3_ACCESS_KEY_ID"),
        s3_secret_access_key=_env("S3_SECRET_ACCESS_KEY"),
        location_scheme=_env("LOCATION_SCHEME", "gs") or "gs",
        checkpoint_bucket=_env("CHECKPOINT_BUCKET", "metfishi-checkpoints"),
        input_bucket=_env("INPUT_BUCKET", "metfish-inputs"),
        result_bucket=_env("RESULT_BUCKET", "metfish-results"),
        checkpoint_suffix=_env("CHECKPOINT_SUFFIX", ".ckpt"),
        train_command=train_command,
        train_workdir=_env_path("TRAIN_WORKDIR", None),
        timeout_sec=float(_env("TIMEOUT_SEC", "7200")),
        output_tail_chars=int(_env("OUTPUT_TAIL_CHARS", "2000")),
        cors_origins=cors_origins or ("*",),
        debug=_env_bool("DEBUG"),
        log_level=(_env("LOG_LEVEL", "INFO") or "INFO").upper(),
    )
