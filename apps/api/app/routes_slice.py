"""Slicing endpoints: upload a model, get a quote, fetch the G-code."""

import asyncio
import logging
from typing import BinaryIO, Iterator, Optional

from fastapi import APIRouter, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from artifact_reader import ArtifactReader
from job_store import JobStatus, JobStore
from pipeline import FailureCode, SlicePipeline, SubmissionResult
from workspace import ARTIFACT_SUFFIX


router = APIRouter(tags=["slicing"])
logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 1.0
STREAM_CHUNK = 64 * 1024

FAILURE_STATUS = {
    FailureCode.MISSING_FILE: 400,
    FailureCode.UNSUPPORTED_EXTENSION: 400,
    FailureCode.FILE_TOO_LARGE: 413,
    FailureCode.INPUT_WRITE_FAILED: 500,
    FailureCode.SLICING_FAILED: 500,
    FailureCode.SLICING_TIMEOUT: 504,
    FailureCode.PERSISTENCE_FAILED: 500,
}


def _pipeline(request: Request) -> SlicePipeline:
    return request.app.state.pipeline


def _store(request: Request) -> JobStore:
    return request.app.state.store


def _reader(request: Request) -> ArtifactReader:
    return request.app.state.reader


def _not_found() -> HTTPException:
    # Same response for every refusal: unknown id, traversal, missing file
    return HTTPException(status_code=404, detail="not found")


def _iter_file(f: BinaryIO) -> Iterator[bytes]:
    with f:
        while True:
            chunk = f.read(STREAM_CHUNK)
            if not chunk:
                break
            yield chunk


async def _run_until_disconnect(request: Request, coro):
    """Await `coro`, cancelling it if the client goes away.

    Cancellation reaches the slicer, which kills the engine process.
    """
    task = asyncio.create_task(coro)
    while True:
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
        if done:
            return task.result()
        if await request.is_disconnected():
            logger.warning("Client disconnected, cancelling slicing job")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            raise HTTPException(status_code=499, detail="Slicing cancelled")


def _raise_for_failure(result: SubmissionResult) -> None:
    detail = {"code": result.failure.value, "message": result.detail}
    if result.job_id and result.failure in (FailureCode.SLICING_FAILED, FailureCode.SLICING_TIMEOUT):
        detail["jobId"] = result.job_id
    raise HTTPException(status_code=FAILURE_STATUS[result.failure], detail=detail)


@router.post("/slice")
async def slice_model(request: Request, file: Optional[UploadFile] = File(None)):
    """Slice an uploaded model and return a price/time quote.

    Workflow:
    1. Validate extension and size
    2. Allocate job paths in the scratch directory
    3. Write the upload and invoke the slicer
    4. Analyze the G-code for the estimate
    5. Persist the job record
    """
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data"):
        raise HTTPException(status_code=415, detail="use multipart/form-data")

    pipeline = _pipeline(request)
    if file is None:
        result = await pipeline.submit(None, None, None)
    else:
        result = await _run_until_disconnect(
            request,
            pipeline.submit(file.filename, getattr(file, "size", None), file.read),
        )

    if not result.ok:
        _raise_for_failure(result)

    job_id = result.job_id
    estimate = result.record.estimate.model_dump(by_alias=True, mode="json")
    return {
        "jobId": job_id,
        "status": result.record.status.value,
        "priceEstimate": estimate["priceEstimate"],
        "priceDisplay": estimate["priceDisplay"],
        "timeEstimate": estimate["timeEstimate"],
        "quickAnalysis": estimate["quickAnalysis"],
        "downloadUrl": f"/jobs/{job_id}/download",
    }


async def _serve_artifact(request: Request, job_id: str) -> StreamingResponse:
    record = await asyncio.to_thread(_store(request).load, job_id)
    if record is None or record.status == JobStatus.SLICE_FAILED:
        raise _not_found()

    f = await asyncio.to_thread(_reader(request).open, record.output_path, ARTIFACT_SUFFIX)
    if f is None:
        raise _not_found()

    return StreamingResponse(
        _iter_file(f),
        media_type="text/plain; charset=utf-8",
        headers={"Content-Disposition": f'inline; filename="{job_id}{ARTIFACT_SUFFIX}"'},
    )


@router.get("/")
async def root(request: Request, id: Optional[str] = Query(None)):
    """Service banner, or the G-code for `?id=<job id>`."""
    if id is not None:
        return await _serve_artifact(request, id)
    return {
        "name": "Slice Bridge API",
        "version": request.app.version,
        "endpoints": {
            "health": "/healthz",
            "slice": "POST /slice",
            "job": "GET /jobs/{job_id}",
            "download": "GET /jobs/{job_id}/download",
        },
    }


@router.get("/jobs/{job_id}")
async def get_job(request: Request, job_id: str):
    """Persisted job record, without server-side paths."""
    record = await asyncio.to_thread(_store(request).load, job_id)
    if record is None:
        raise _not_found()
    return record.public_view()


@router.get("/jobs/{job_id}/download")
async def download_gcode(request: Request, job_id: str):
    """Download the generated G-code file."""
    return await _serve_artifact(request, job_id)
