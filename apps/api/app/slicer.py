"""PrusaSlicer CLI adapter.

Runs the slicing engine as a subprocess with a fixed argument vector and
reports the result as a tagged outcome instead of raising:

    SliceSuccess | SliceFailure | SliceTimeout

Input and output paths are passed as discrete argv entries, never through a
shell.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union


logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024

REASON_NONZERO_EXIT = "nonzero_exit"
REASON_MISSING_OUTPUT = "missing_output"
REASON_ENGINE_UNAVAILABLE = "engine_unavailable"


@dataclass(frozen=True)
class SliceSuccess:
    artifact_path: Path
    exit_code: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class SliceFailure:
    exit_code: Optional[int]
    stdout: str
    stderr: str
    reason: str = REASON_NONZERO_EXIT


@dataclass(frozen=True)
class SliceTimeout:
    timeout_seconds: float
    stdout: str = ""
    stderr: str = ""


SliceOutcome = Union[SliceSuccess, SliceFailure, SliceTimeout]


async def _read_capped(stream: Optional[asyncio.StreamReader], limit: int) -> bytes:
    """Read a pipe to EOF, keeping at most `limit` bytes.

    The rest is drained and dropped so the engine never blocks on a full pipe.
    """
    if stream is None:
        return b""
    buf = bytearray()
    dropped = 0
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        room = limit - len(buf)
        if room > 0:
            buf.extend(chunk[:room])
            dropped += max(0, len(chunk) - room)
        else:
            dropped += len(chunk)
    if dropped:
        logger.warning(f"Slicer output truncated: dropped {dropped} bytes over {limit} byte cap")
    return bytes(buf)


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove partial G-code {path}: {e}")


class PrusaSlicer:
    """Headless PrusaSlicer invocation."""

    def __init__(
        self,
        command: Sequence[str],
        extra_args: Sequence[str] = (),
        timeout_seconds: Optional[float] = None,
        capture_limit_bytes: int = 1024 * 1024,
        max_concurrent: int = 2,
    ):
        """Initialize adapter.

        Args:
            command: Engine executable plus any wrapper args,
                     e.g. ["flatpak", "run", "--command=prusa-slicer", "com.prusa3d.PrusaSlicer"]
            extra_args: Inserted before the input path, e.g. ["--load", "config.ini"]
            timeout_seconds: Wall-clock limit per invocation (None disables)
            capture_limit_bytes: Cap for each of stdout and stderr
            max_concurrent: Maximum engine processes running at once
        """
        if not command:
            raise ValueError("Slicer command must not be empty")
        self.command = list(command)
        self.extra_args = list(extra_args)
        self.timeout_seconds = timeout_seconds
        self.capture_limit_bytes = capture_limit_bytes
        self._semaphore = asyncio.Semaphore(max_concurrent)

    def build_args(self, input_path: Path, output_path: Path) -> List[str]:
        return [
            *self.command,
            *self.extra_args,
            str(input_path),
            "--gcode",
            "-o",
            str(output_path),
        ]

    async def slice_async(
        self,
        input_path: Path,
        output_path: Path,
        job_id: str = "",
    ) -> SliceOutcome:
        """Slice `input_path` into `output_path`.

        Never retries. Cancelling the awaiting task kills the engine process
        and re-raises CancelledError.
        """
        args = self.build_args(input_path, output_path)

        async with self._semaphore:
            logger.info(f"[{job_id}] Invoking slicer: {' '.join(args)}")
            started = time.monotonic()

            try:
                proc = await asyncio.create_subprocess_exec(
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                logger.error(f"[{job_id}] Could not start slicer {self.command[0]!r}: {e}")
                return SliceFailure(
                    exit_code=None,
                    stdout="",
                    stderr=str(e),
                    reason=REASON_ENGINE_UNAVAILABLE,
                )

            try:
                stdout_b, stderr_b, exit_code = await asyncio.wait_for(
                    asyncio.gather(
                        _read_capped(proc.stdout, self.capture_limit_bytes),
                        _read_capped(proc.stderr, self.capture_limit_bytes),
                        proc.wait(),
                    ),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                await _kill(proc)
                _discard(output_path)
                logger.error(f"[{job_id}] Slicer timed out after {self.timeout_seconds}s, process killed")
                return SliceTimeout(timeout_seconds=self.timeout_seconds)
            except asyncio.CancelledError:
                logger.warning(f"[{job_id}] Slicing cancelled, killing slicer process")
                await _kill(proc)
                _discard(output_path)
                raise

        elapsed = time.monotonic() - started
        stdout = _decode(stdout_b)
        stderr = _decode(stderr_b)

        if exit_code != 0:
            logger.error(f"[{job_id}] Slicer failed with exit code {exit_code} after {elapsed:.1f}s")
            logger.error(f"[{job_id}] stderr: {stderr}")
            return SliceFailure(exit_code=exit_code, stdout=stdout, stderr=stderr)

        if not output_path.is_file():
            logger.error(f"[{job_id}] Slicer exited 0 but G-code not generated: {output_path}")
            return SliceFailure(
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                reason=REASON_MISSING_OUTPUT,
            )

        logger.info(f"[{job_id}] Slicing completed in {elapsed:.1f}s")
        logger.info(f"[{job_id}] Slicer stdout: {stdout[:500]}")
        return SliceSuccess(
            artifact_path=output_path,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )
