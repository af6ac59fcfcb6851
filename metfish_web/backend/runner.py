from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .schemas import TrainingParameters


logger = logging.getLogger(__name__)

OutcomeKind = Literal["exited", "timed_out", "launch_failed"]


@dataclass(frozen=True)
class RunOutcome:
    kind: OutcomeKind
    exit_code: int | None
    stdout: str
    stderr: str
    elapsed_sec: float
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.kind == "exited" and self.exit_code == 0


def build_training_args(
    base_command: Sequence[str],
    *,
    data_dir: Path,
    output_dir: Path,
    ckpt_path: Path,
    test_csv_path: Path,
    params: TrainingParameters,
) -> list[str]:
    args = [
        *base_command,
        "--data_dir", str(data_dir),
        "--output_dir", str(output_dir),
        "--ckpt_path", str(ckpt_path),
        "--test_csv_name", str(test_csv_path),
        "--saxs_ext", params.saxs_ext,
        "--num_iterations", str(params.num_iterations),
        "--learning_rate", params.learning_rate,
        "--sequence_index", str(params.sequence_index),
        "--save_frequency", str(params.save_frequency),
    ]
    if params.random_init:
        args.append("--random_init")
    return args


def tail(text: str, n: int) -> str:
    if n <= 0:
        return ""
    return text[-n:]


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


def _kill(proc: subprocess.Popen) -> None:
    # The child leads its own session, so take down anything it spawned as well.
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def run_training(
    command: Sequence[str],
    *,
    timeout: float,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> RunOutcome:
    """
    Run-and-wait with a hard wall-clock limit.

    Both streams are kept in full; truncation is the caller's business. Exactly one of
    exited / timed_out / launch_failed is reported.
    """
    t0 = time.monotonic()
    try:
        proc = subprocess.Popen(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            close_fds=True,
            start_new_session=(os.name == "posix"),
        )
    except OSError as e:
        logger.error("failed to launch %s: %s", command[0] if command else "<empty>", e)
        return RunOutcome("launch_failed", None, "", "", time.monotonic() - t0, error=str(e))

    logger.info("started training process pid=%s timeout=%ss", proc.pid, timeout)
    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill(proc)
        out, err = proc.communicate()
        elapsed = time.monotonic() - t0
        logger.warning("training process pid=%s killed after %.1fs", proc.pid, elapsed)
        return RunOutcome("timed_out", None, _decode(out), _decode(err), elapsed)
    except BaseException:
        _kill(proc)
        proc.wait()
        raise

    elapsed = time.monotonic() - t0
    logger.info("training process pid=%s exited with %s after %.1fs", proc.pid, proc.returncode, elapsed)
    return RunOutcome("exited", int(proc.returncode), _decode(out), _decode(err), elapsed)
