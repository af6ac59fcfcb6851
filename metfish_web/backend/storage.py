from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import NotFoundError, StorageError


logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class ObjectStorage(Protocol):
    def get(self, bucket: str, name: str, local_path: Path) -> Path: ...

    def put(self, bucket: str, local_path: Path, name: str) -> str: ...

    def list(self, bucket: str, prefix: str = "") -> list[str]: ...

    def exists(self, bucket: str, name: str) -> bool: ...

    def delete(self, bucket: str, name: str) -> None: ...

    def location(self, bucket: str, name: str) -> str: ...


class LocalStorage:
    """Buckets as plain directories under a root; used for development and tests."""

    def __init__(self, root: Path, *, scheme: str = "file") -> None:
        self.root = Path(root).resolve()
        self.scheme = scheme

    def _object_path(self, bucket: str, name: str) -> Path:
        bucket_dir = (self.root / bucket).resolve()
        path = (bucket_dir / name).resolve()
        if bucket_dir not in path.parents:
            raise StorageError(f"invalid object name: {name}")
        return path

    def location(self, bucket: str, name: str) -> str:
        return f"{self.scheme}://{bucket}/{name}"

    def exists(self, bucket: str, name: str) -> bool:
        return self._object_path(bucket, name).is_file()

    def get(self, bucket: str, name: str, local_path: Path) -> Path:
        src = self._object_path(bucket, name)
        if not src.is_file():
            raise NotFoundError(f"object not found: {bucket}/{name}")
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile(src, local_path)
        except OSError as e:
            raise StorageError(f"failed to read {bucket}/{name}: {e}") from e
        return local_path

    def put(self, bucket: str, local_path: Path, name: str) -> str:
        dst = self._object_path(bucket, name)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, dst)
        except OSError as e:
            raise StorageError(f"failed to write {bucket}/{name}: {e}") from e
        return self.location(bucket, name)

    def delete(self, bucket: str, name: str) -> None:
        try:
            self._object_path(bucket, name).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"failed to delete {bucket}/{name}: {e}") from e

    def list(self, bucket: str, prefix: str = "") -> list[str]:
        bucket_dir = self.root / bucket
        # A bucket directory only appears with its first object.
        if not bucket_dir.is_dir():
            return []
        names = []
        for p in bucket_dir.rglob("*"):
            if not p.is_file():
                continue
            name = p.relative_to(bucket_dir).as_posix()
            if name.startswith(prefix):
                names.append(name)
        return names


class S3Storage:
    """S3-compatible buckets (GCS via its interoperability endpoint by default)."""

    def __init__(self, client, *, scheme: str = "s3") -> None:  # noqa: ANN001
        self.client = client
        self.scheme = scheme

    def location(self, bucket: str, name: str) -> str:
        return f"{self.scheme}://{bucket}/{name}"

    def exists(self, bucket: str, name: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=name)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return False
            raise StorageError(f"failed to stat {bucket}/{name}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"failed to stat {bucket}/{name}: {e}") from e
        return True

    def get(self, bucket: str, name: str, local_path: Path) -> Path:
        if not self.exists(bucket, name):
            raise NotFoundError(f"object not found: {bucket}/{name}")
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(bucket, name, str(local_path))
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise NotFoundError(f"object not found: {bucket}/{name}") from e
            raise StorageError(f"failed to download {bucket}/{name}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"failed to download {bucket}/{name}: {e}") from e
        return local_path

    def put(self, bucket: str, local_path: Path, name: str) -> str:
        try:
            self.client.upload_file(str(local_path), bucket, name)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"failed to upload {bucket}/{name}: {e}") from e
        return self.location(bucket, name)

    def delete(self, bucket: str, name: str) -> None:
        try:
            self.client.delete_object(Bucket=bucket, Key=name)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"failed to delete {bucket}/{name}: {e}") from e

    def list(self, bucket: str, prefix: str = "") -> list[str]:
        kwargs = {"Bucket": bucket}
        if prefix:
            kwargs["Prefix"] = prefix
        names: list[str] = []
        try:
            for page in self.client.get_paginator("list_objects_v2").paginate(**kwargs):
                for obj in page.get("Contents", []):
                    names.append(obj["Key"])
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"failed to list {bucket}/{prefix}: {e}") from e
        return names


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _s3_client(settings: Settings):
    config = Config(s3={"addressing_style": "path"})
    return boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint,
        region_name=settings.s3_region,
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
        config=config,
    )


def build_storage(settings: Settings) -> ObjectStorage:
    if settings.storage_backend == "local":
        logger.info("Using local bucket storage under %s", settings.storage_root)
        return LocalStorage(settings.storage_root, scheme=settings.location_scheme)
    if settings.storage_backend == "s3":
        logger.info("Using S3-compatible storage at %s", settings.s3_endpoint or "default endpoint")
        return S3Storage(_s3_client(settings), scheme=settings.location_scheme)
    raise RuntimeError(f"unknown storage backend: {settings.storage_backend}")
