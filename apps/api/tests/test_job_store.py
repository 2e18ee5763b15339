"""Tests for side-car job records."""

import json

import pytest

from gcode_estimator import Estimate, ToolpathSummary
from job_store import (
    SCHEMA_VERSION,
    EngineResult,
    ExitInfo,
    JobRecord,
    JobStatus,
    JobStore,
    PersistenceError,
    RequestMeta,
)
from workspace import new_job_id


def make_record(scratch_dir, job_id=None, status=JobStatus.COMPLETED):
    job_id = job_id or new_job_id()
    return JobRecord(
        status=status,
        request_meta=RequestMeta(name="cube.stl", extension=".stl", size=24, job_id=job_id),
        input_path=str(scratch_dir / "job.stl"),
        output_path=str(scratch_dir / "job.gcode"),
        engine_result=EngineResult(exit_info=ExitInfo(reason="exited", exit_code=0), stdout="ok"),
        estimate=Estimate(
            price_estimate=2.0,
            price_display="$2.00",
            time_estimate=1.5,
            quick_analysis=ToolpathSummary(total_filament=100, layer_count=50),
        ),
    )


class TestJobStore:
    """Tests for the JobStore class."""

    def test_save_then_load(self, scratch_dir):
        store = JobStore(scratch_dir)
        record = make_record(scratch_dir)

        path = store.save(record)
        loaded = store.load(record.job_id)

        assert path == scratch_dir / f"{record.job_id}.json"
        assert loaded == record

    def test_on_disk_layout_is_camel_case(self, scratch_dir):
        store = JobStore(scratch_dir)
        record = make_record(scratch_dir)
        data = json.loads(store.save(record).read_text())

        assert data["schemaVersion"] == SCHEMA_VERSION
        assert data["requestMeta"]["jobId"] == record.job_id
        assert data["engineResult"]["exitInfo"]["exitCode"] == 0
        assert data["estimate"]["quickAnalysis"]["layerCount"] == 50

    def test_written_once(self, scratch_dir):
        store = JobStore(scratch_dir)
        record = make_record(scratch_dir)
        store.save(record)

        duplicate = make_record(scratch_dir, job_id=record.job_id, status=JobStatus.SLICE_FAILED)
        with pytest.raises(PersistenceError):
            store.save(duplicate)

        assert store.load(record.job_id).status == JobStatus.COMPLETED

    def test_no_temp_files_left(self, scratch_dir):
        store = JobStore(scratch_dir)
        record = make_record(scratch_dir)
        store.save(record)

        assert [p.name for p in scratch_dir.iterdir()] == [f"{record.job_id}.json"]

    def test_unwritable_scratch(self, tmp_path):
        store = JobStore(tmp_path / "missing")
        with pytest.raises(PersistenceError):
            store.save(make_record(tmp_path))

    def test_invalid_job_id_not_saved(self, scratch_dir):
        with pytest.raises(PersistenceError):
            JobStore(scratch_dir).save(make_record(scratch_dir, job_id="../escape"))

    @pytest.mark.parametrize("job_id", ["../etc/passwd", "nope", "", "0" * 31])
    def test_load_malformed_id(self, scratch_dir, job_id):
        assert JobStore(scratch_dir).load(job_id) is None

    def test_load_unknown_id(self, scratch_dir):
        assert JobStore(scratch_dir).load(new_job_id()) is None

    def test_load_corrupt_record(self, scratch_dir):
        job_id = new_job_id()
        (scratch_dir / f"{job_id}.json").write_text("{not json")
        assert JobStore(scratch_dir).load(job_id) is None

    def test_unknown_fields_ignored(self, scratch_dir):
        store = JobStore(scratch_dir)
        record = make_record(scratch_dir)
        data = json.loads(record.to_json())
        data["addedLater"] = {"x": 1}
        store.path_for(record.job_id).write_text(json.dumps(data))

        assert store.load(record.job_id) == record
