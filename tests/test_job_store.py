from datetime import datetime, timezone

import pytest

from metfish_web.backend.errors import ValidationError
from metfish_web.backend.job_store import Job, new_job_id, safe_job_id, staging_area


def test_new_job_id_format():
    now = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    job_id = new_job_id(3, now=now)
    assert job_id.startswith("20260304_050607_3_")
    assert len(job_id.rsplit("_", 1)[1]) == 8


def test_new_job_id_unique_within_same_second():
    now = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    ids = {new_job_id(0, now=now) for _ in range(50)}
    assert len(ids) == 50


def test_job_lifecycle():
    job = Job(id="j", checkpoint_ref="m.ckpt", parameters={})
    job.advance("staged")
    job.advance("running")
    job.advance("succeeded")
    assert job.status == "succeeded"
    assert job.finished_at is not None


def test_job_prefix():
    assert Job(id="20260304_050607_3_deadbeef", checkpoint_ref="m.ckpt", parameters={}).prefix == (
        "20260304_050607_3_deadbeef/"
    )


@pytest.mark.parametrize(
    "path",
    [
        ["running"],
        ["staged", "succeeded"],
        ["staged", "running", "failed", "running"],
        ["failed", "staged"],
    ],
)
def test_illegal_transitions(path):
    job = Job(id="j", checkpoint_ref="m.ckpt", parameters={})
    with pytest.raises(RuntimeError, match="illegal transition"):
        for state in path:
            job.advance(state)


@pytest.mark.parametrize("bad", ["", "a/b", "..", "x\\y"])
def test_safe_job_id_rejects(bad):
    with pytest.raises(ValidationError):
        safe_job_id(bad)


def test_staging_area_is_removed(tmp_path):
    with staging_area("job1", tmp_path) as paths:
        assert paths.input_dir.is_dir()
        assert paths.output_dir.is_dir()
        (paths.output_dir / "x.pdb").write_text("ATOM")
        root = paths.root
    assert not root.exists()


def test_staging_area_is_removed_on_error(tmp_path):
    with pytest.raises(KeyError):
        with staging_area("job1", tmp_path) as paths:
            root = paths.root
            (paths.input_dir / "test.csv").write_text("a")
            raise KeyError("boom")
    assert not root.exists()
    assert list(tmp_path.iterdir()) == []


@pytest.mark.parametrize(
    "filename,expected",
    [("data.zip", "data.zip"), ("Inputs.TAR.GZ", "data.tar.gz"), (None, "data.zip"), ("x.tgz", "data.tgz")],
)
def test_archive_keeps_extension(tmp_path, filename, expected):
    with staging_area("job1", tmp_path) as paths:
        assert paths.archive(filename).name == expected
