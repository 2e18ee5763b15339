"""Side-car metadata records, one JSON file per job.

Records are written once after the pipeline finishes and never updated.
The on-disk layout is camelCase and carries a schema version so older
readers keep working when fields are added.
"""

import logging
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from artifact_reader import ArtifactReader
from gcode_estimator import Estimate
from workspace import METADATA_SUFFIX, is_valid_job_id


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class PersistenceError(Exception):
    """Raised when a metadata record cannot be written."""
    pass


class JobStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITHOUT_ESTIMATE = "completed_without_estimate"
    SLICE_FAILED = "slice_failed"


class _RecordModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RequestMeta(_RecordModel):
    name: str
    extension: str
    size: int
    job_id: str


class ExitInfo(_RecordModel):
    reason: str  # exited | nonzero_exit | missing_output | engine_unavailable | timeout
    exit_code: Optional[int] = None
    timeout_seconds: Optional[float] = None


class EngineResult(_RecordModel):
    exit_info: ExitInfo
    stdout: str = ""
    stderr: str = ""


class JobRecord(_RecordModel):
    schema_version: int = SCHEMA_VERSION
    status: JobStatus
    request_meta: RequestMeta
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    input_path: str
    output_path: str
    engine_result: EngineResult
    estimate: Optional[Estimate] = None

    @property
    def job_id(self) -> str:
        return self.request_meta.job_id

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def public_view(self) -> dict:
        """Record as served over HTTP: no server paths, no engine stdout."""
        return self.model_dump(
            by_alias=True,
            mode="json",
            exclude={"input_path": True, "output_path": True, "engine_result": {"stdout": True}},
        )


class JobStore:
    """Keyed by job id: `<scratch>/<job_id>.json`."""

    def __init__(self, scratch_dir: Path, reader: Optional[ArtifactReader] = None):
        self.scratch_dir = scratch_dir
        self.reader = reader or ArtifactReader(scratch_dir)

    def path_for(self, job_id: str) -> Path:
        return self.scratch_dir / f"{job_id}{METADATA_SUFFIX}"

    def save(self, record: JobRecord) -> Path:
        """Write the record exactly once.

        The JSON goes to a temp file first and is hard-linked into place, so
        readers never see a partial record and an existing one is never
        replaced.

        Raises:
            PersistenceError: On any filesystem failure, or if a record for
                this job id already exists
        """
        job_id = record.job_id
        if not is_valid_job_id(job_id):
            raise PersistenceError(f"Invalid job id: {job_id!r}")

        final_path = self.path_for(job_id)
        tmp_path = self.scratch_dir / f".{job_id}{METADATA_SUFFIX}.tmp"
        payload = record.to_json()

        try:
            with open(tmp_path, "x", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.link(tmp_path, final_path)
        except FileExistsError as e:
            raise PersistenceError(f"Metadata record already exists for job {job_id}") from e
        except OSError as e:
            raise PersistenceError(f"Failed to write metadata for job {job_id}: {e}") from e
        finally:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove temp metadata file {tmp_path}: {e}")

        logger.info(f"Metadata saved: {final_path}")
        return final_path

    def load(self, job_id: str) -> Optional[JobRecord]:
        """Look up a record; None when the id is malformed, unknown or unreadable."""
        if not is_valid_job_id(job_id):
            return None

        data = self.reader.read_bytes(f"{job_id}{METADATA_SUFFIX}", METADATA_SUFFIX)
        if data is None:
            return None

        try:
            return JobRecord.model_validate_json(data)
        except ValidationError as e:
            logger.warning(f"Unreadable metadata record for job {job_id}: {e}")
            return None
