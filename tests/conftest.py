"""Shared fixtures: local buckets, fake training scripts and a settings factory."""

import io
import sys
import textwrap
import zipfile
from dataclasses import replace
from pathlib import Path

import pytest

from metfish_web.backend.config import get_settings
from metfish_web.backend.storage import LocalStorage


CHECKPOINT_BUCKET = "metfishi-checkpoints"
INPUT_BUCKET = "metfish-inputs"
RESULT_BUCKET = "metfish-results"

_ARGPARSE = """
import argparse, pathlib, sys, time

p = argparse.ArgumentParser()
for flag in ("--data_dir", "--output_dir", "--ckpt_path", "--test_csv_name", "--saxs_ext",
             "--num_iterations", "--learning_rate", "--sequence_index", "--save_frequency"):
    p.add_argument(flag, required=True)
p.add_argument("--random_init", action="store_true")
a = p.parse_args()
out = pathlib.Path(a.output_dir)
"""

SUCCESS_BODY = """
(out / "pdbs").mkdir()
(out / "pdbs" / "refined_0.pdb").write_text("ATOM\\n")
(out / "loss.csv").write_text("step,loss\\n0,1.0\\n")
data = sorted(p.relative_to(a.data_dir).as_posix() for p in pathlib.Path(a.data_dir).rglob("*"))
(out / "inputs.txt").write_text("\\n".join(data))
(out / "ckpt.txt").write_text(pathlib.Path(a.ckpt_path).read_text())
print("epoch 1 done")
print("training complete")
"""

FAILING_BODY = """
(out / "partial.pdb").write_text("ATOM\\n")
print("starting")
sys.stderr.write("RuntimeError: CUDA out of memory\\n")
sys.exit(3)
"""

HANGING_BODY = """
(out / "partial.pdb").write_text("ATOM\\n")
sys.stdout.flush()
time.sleep(60)
"""


def make_zip(members: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def data_zip() -> bytes:
    return make_zip({
        "sample/seq0_atom_only.csv": b"q,i\n0.01,1.0\n",
        "sample/seq0.pdb": b"ATOM\n",
    })


@pytest.fixture
def manifest_csv() -> bytes:
    return b"name,seqres\nseq0,MKV\n"


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    root = tmp_path / "buckets"
    for bucket in (CHECKPOINT_BUCKET, INPUT_BUCKET, RESULT_BUCKET):
        (root / bucket).mkdir(parents=True)
    (root / CHECKPOINT_BUCKET / "model_v1.ckpt").write_bytes(b"weights-v1")
    (root / CHECKPOINT_BUCKET / "model_v2.ckpt").write_bytes(b"weights-v2")
    (root / CHECKPOINT_BUCKET / "README.txt").write_bytes(b"not a checkpoint")
    return LocalStorage(root, scheme="gs")


@pytest.fixture
def script_factory(tmp_path: Path):
    def make(body: str) -> Path:
        path = tmp_path / f"train_{abs(hash(body))}.py"
        path.write_text(textwrap.dedent(_ARGPARSE) + textwrap.dedent(body), encoding="utf-8")
        return path

    return make


@pytest.fixture
def settings_factory(tmp_path: Path, script_factory):
    def make(body: str = SUCCESS_BODY, **overrides):
        script = script_factory(body)
        base = replace(
            get_settings(),
            storage_backend="local",
            storage_root=tmp_path / "buckets",
            staging_root=tmp_path / "staging",
            checkpoint_cache_dir=None,
            location_scheme="gs",
            checkpoint_bucket=CHECKPOINT_BUCKET,
            input_bucket=INPUT_BUCKET,
            result_bucket=RESULT_BUCKET,
            checkpoint_suffix=".ckpt",
            train_command=(sys.executable, str(script)),
            train_workdir=None,
            timeout_sec=30.0,
            output_tail_chars=2000,
            debug=False,
        )
        return replace(base, **overrides)

    return make
