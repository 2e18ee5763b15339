"""Synchronous slice job pipeline.

validate → allocate → write input → slice → estimate → persist

Each stage catches its own failures and turns them into a FailureCode, so
the HTTP layer only maps codes to responses. The only exception that
escapes is task cancellation (client went away), which kills the engine.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional

from config import Settings
from gcode_estimator import PricingModel, compute_estimate, parse_toolpath_summary
from job_store import (
    EngineResult,
    ExitInfo,
    JobRecord,
    JobStatus,
    JobStore,
    PersistenceError,
    RequestMeta,
)
from slicer import PrusaSlicer, SliceFailure, SliceOutcome, SliceSuccess, SliceTimeout
from upload_validator import Rejected, UploadValidator
from workspace import JobWorkspace, WorkspaceAllocator


logger = logging.getLogger(__name__)

UPLOAD_CHUNK = 1024 * 1024

ReadChunk = Callable[[int], Awaitable[bytes]]


class FailureCode(str, Enum):
    MISSING_FILE = "missing_file"
    UNSUPPORTED_EXTENSION = "unsupported_extension"
    FILE_TOO_LARGE = "file_too_large"
    INPUT_WRITE_FAILED = "input_write_failed"
    SLICING_FAILED = "slicing_failed"
    SLICING_TIMEOUT = "slicing_timeout"
    PERSISTENCE_FAILED = "persistence_failed"


@dataclass
class SubmissionResult:
    record: Optional[JobRecord] = None
    failure: Optional[FailureCode] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def job_id(self) -> Optional[str]:
        return self.record.job_id if self.record else None


class UploadTooLarge(Exception):
    pass


def _open_exclusive(path: Path):
    return open(path, "xb")


async def write_upload(read_chunk: ReadChunk, dest: Path, max_bytes: int) -> int:
    """Stream an upload into a freshly created file, enforcing the size cap.

    Returns:
        Number of bytes written

    Raises:
        UploadTooLarge: Payload exceeded max_bytes (partial file removed)
        OSError: File could not be created or written (partial file removed)
    """
    total = 0
    dst = await asyncio.to_thread(_open_exclusive, dest)
    try:
        with dst:
            while True:
                chunk = await read_chunk(UPLOAD_CHUNK)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_bytes:
                    raise UploadTooLarge(f"upload exceeds {max_bytes} bytes")
                await asyncio.to_thread(dst.write, chunk)
    except BaseException:
        try:
            os.remove(dest)
        except OSError:
            pass
        raise
    return total


def _exit_info(outcome: SliceOutcome) -> ExitInfo:
    if isinstance(outcome, SliceSuccess):
        return ExitInfo(reason="exited", exit_code=outcome.exit_code)
    if isinstance(outcome, SliceTimeout):
        return ExitInfo(reason="timeout", timeout_seconds=outcome.timeout_seconds)
    return ExitInfo(reason=outcome.reason, exit_code=outcome.exit_code)


class SlicePipeline:
    """Runs one submission end-to-end within the calling request."""

    def __init__(
        self,
        settings: Settings,
        slicer: Optional[PrusaSlicer] = None,
        store: Optional[JobStore] = None,
    ):
        self.settings = settings
        self.validator = UploadValidator(settings.allowed_extensions, settings.max_upload_bytes)
        self.allocator = WorkspaceAllocator(settings.scratch_dir)
        self.slicer = slicer or PrusaSlicer(
            command=settings.slicer_argv,
            extra_args=settings.slicer_extra_argv,
            timeout_seconds=settings.slice_timeout_seconds,
            capture_limit_bytes=settings.output_capture_bytes,
            max_concurrent=settings.max_concurrent_slices,
        )
        self.store = store or JobStore(settings.scratch_dir)
        self.pricing = PricingModel.from_settings(settings)

    async def submit(
        self,
        filename: Optional[str],
        size: Optional[int],
        read_chunk: Optional[ReadChunk],
    ) -> SubmissionResult:
        """Validate, slice, estimate and persist one upload.

        Args:
            filename: Client-declared file name
            size: Declared payload size in bytes, if known
            read_chunk: Coroutine returning up to n bytes of the payload (b"" at EOF)
        """
        # Validation happens before anything touches the disk
        if read_chunk is None:
            return SubmissionResult(failure=FailureCode.MISSING_FILE, detail="no file")
        validation = self.validator.validate(filename, size)
        if isinstance(validation, Rejected):
            return SubmissionResult(failure=FailureCode(validation.reason), detail=validation.detail)

        workspace = self.allocator.allocate(validation.extension)
        job_id = workspace.job_id
        logger.info(f"[{job_id}] Accepted {filename!r} ({size} bytes) -> {workspace.input_path.name}")

        # Input
        try:
            written = await write_upload(read_chunk, workspace.input_path, self.settings.max_upload_bytes)
        except UploadTooLarge:
            logger.info(f"[{job_id}] Upload exceeded {self.settings.max_upload_bytes} bytes while streaming")
            return SubmissionResult(failure=FailureCode.FILE_TOO_LARGE, detail="request too big")
        except OSError as e:
            logger.error(f"[{job_id}] Failed to write input file: {e}")
            return SubmissionResult(
                failure=FailureCode.INPUT_WRITE_FAILED,
                detail=f"error writing input file: {e}",
            )

        if written == 0:
            await asyncio.to_thread(_remove_quietly, workspace.input_path)
            return SubmissionResult(failure=FailureCode.MISSING_FILE, detail="empty file")

        # Slice
        outcome = await self.slicer.slice_async(workspace.input_path, workspace.output_path, job_id=job_id)

        # Estimate (only from a successful slice)
        estimate = None
        if isinstance(outcome, SliceSuccess):
            estimate = await self._estimate(job_id, outcome.artifact_path)
            if estimate.quick_analysis is None:
                status = JobStatus.COMPLETED_WITHOUT_ESTIMATE
            else:
                status = JobStatus.COMPLETED
        else:
            status = JobStatus.SLICE_FAILED

        record = self._build_record(
            workspace, filename, validation.extension, written, outcome, status, estimate
        )

        # Persist
        try:
            await asyncio.to_thread(self.store.save, record)
        except PersistenceError as e:
            logger.error(f"[{job_id}] {e}")
            return SubmissionResult(record=record, failure=FailureCode.PERSISTENCE_FAILED, detail=str(e))

        if isinstance(outcome, SliceTimeout):
            return SubmissionResult(
                record=record,
                failure=FailureCode.SLICING_TIMEOUT,
                detail=f"slicing timed out after {outcome.timeout_seconds}s",
            )
        if isinstance(outcome, SliceFailure):
            return SubmissionResult(record=record, failure=FailureCode.SLICING_FAILED, detail=outcome.stderr)

        logger.info(
            f"[{job_id}] Job {status.value}: price={estimate.price_estimate:.2f}, "
            f"time={estimate.time_estimate:.2f}"
        )
        return SubmissionResult(record=record)

    async def _estimate(self, job_id: str, gcode_path: Path):
        try:
            summary = await asyncio.to_thread(parse_toolpath_summary, gcode_path)
        except Exception as e:
            # estimation never fails the job; the artifact is still valid
            logger.warning(f"[{job_id}] G-code analysis failed: {e}")
            summary = None
        return compute_estimate(summary, self.pricing)

    def _build_record(
        self,
        workspace: JobWorkspace,
        filename: str,
        extension: str,
        size: int,
        outcome: SliceOutcome,
        status: JobStatus,
        estimate,
    ) -> JobRecord:
        return JobRecord(
            status=status,
            request_meta=RequestMeta(
                name=filename,
                extension=extension,
                size=size,
                job_id=workspace.job_id,
            ),
            input_path=str(workspace.input_path),
            output_path=str(workspace.output_path),
            engine_result=EngineResult(
                exit_info=_exit_info(outcome),
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            ),
            estimate=estimate,
        )


def _remove_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except OSError:
        pass
