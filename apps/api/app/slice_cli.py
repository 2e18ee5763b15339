"""Run one model through the slice pipeline from the command line.

    slice-bridge path/to/model.stl

Configuration comes from the same SLICE_* environment variables as the API.
Prints the submission result as JSON and exits 0 on success, 1 otherwise.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from config import Settings, get_settings
from pipeline import SlicePipeline, SubmissionResult
from workspace import WorkspaceError, ensure_scratch_dir


logger = logging.getLogger(__name__)


def _result_payload(result: SubmissionResult) -> dict:
    payload = {"ok": result.ok, "jobId": result.job_id}
    if not result.ok:
        payload["error"] = {"code": result.failure.value, "message": result.detail}
    if result.record is not None:
        payload["record"] = result.record.model_dump(by_alias=True, mode="json")
    return payload


async def slice_file(model_path: Path, settings: Settings) -> SubmissionResult:
    """Submit a local file to the pipeline as if it had been uploaded."""
    pipeline = SlicePipeline(settings)
    f = await asyncio.to_thread(open, model_path, "rb")
    try:
        size = await asyncio.to_thread(lambda: model_path.stat().st_size)

        async def read_chunk(n: int) -> bytes:
            return await asyncio.to_thread(f.read, n)

        return await pipeline.submit(model_path.name, size, read_chunk)
    finally:
        f.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="slice-bridge",
        description="Slice a 3D model and print a price/time estimate as JSON",
    )
    parser.add_argument("model", type=Path, help="Model file (.stl, .3mf, .obj, .step, ...)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log pipeline progress to stderr")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if not args.model.is_file():
        print(f"Model file not found: {args.model}", file=sys.stderr)
        return 1

    settings = get_settings()
    try:
        ensure_scratch_dir(settings.scratch_dir)
    except WorkspaceError as e:
        print(str(e), file=sys.stderr)
        return 1

    result = asyncio.run(slice_file(args.model, settings))
    print(json.dumps(_result_payload(result), indent=2))
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
