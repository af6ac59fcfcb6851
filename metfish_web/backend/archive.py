from __future__ import annotations

import logging
import tarfile
import zipfile
from pathlib import Path, PurePosixPath

from .errors import ArchiveError


logger = logging.getLogger(__name__)

# Added by macOS Finder when zipping a folder.
_IGNORED_ROOTS = {"__MACOSX"}


def _check_member(name: str) -> None:
    p = PurePosixPath(name.replace("\\", "/"))
    if p.is_absolute() or ".." in p.parts:
        raise ArchiveError(f"archive member escapes extraction directory: {name}")


def _extract_zip(archive_path: Path, dest_dir: Path) -> None:
    with zipfile.ZipFile(archive_path) as zf:
        for info in zf.infolist():
            _check_member(info.filename)
        bad = zf.testzip()
        if bad is not None:
            raise ArchiveError(f"corrupt archive member: {bad}")
        zf.extractall(dest_dir)


def _extract_tar(archive_path: Path, dest_dir: Path) -> None:
    with tarfile.open(archive_path) as tf:
        members = tf.getmembers()
        for m in members:
            _check_member(m.name)
            if not (m.isfile() or m.isdir()):
                raise ArchiveError(f"unsupported archive member type: {m.name}")
        if hasattr(tarfile, "data_filter"):
            tf.extractall(dest_dir, members=members, filter="data")
        else:
            tf.extractall(dest_dir, members=members)


def extract_data_archive(archive_path: Path, dest_dir: Path) -> Path:
    """
    Extract an uploaded data archive (zip or tar, optionally compressed) into dest_dir.

    Returns the directory to hand to the training script: dest_dir itself, or the single
    top-level folder when the archive wraps everything in one. Any corruption aborts the
    whole extraction with ArchiveError.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        if zipfile.is_zipfile(archive_path):
            _extract_zip(archive_path, dest_dir)
        elif tarfile.is_tarfile(archive_path):
            _extract_tar(archive_path, dest_dir)
        else:
            raise ArchiveError("data_dir upload must be a zip or tar archive")
    except ArchiveError:
        raise
    except (zipfile.BadZipFile, zipfile.LargeZipFile, tarfile.TarError, EOFError, OSError) as e:
        raise ArchiveError(f"failed to extract data archive: {e}") from e

    entries = [p for p in dest_dir.iterdir() if p.name not in _IGNORED_ROOTS]
    if not entries:
        raise ArchiveError("data archive is empty")
    if len(entries) == 1 and entries[0].is_dir():
        logger.debug("unwrapping single top-level folder %s", entries[0].name)
        return entries[0]
    return dest_dir
