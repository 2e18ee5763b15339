"""Per-job file naming inside the shared scratch directory."""

import logging
import os
import re
import secrets
import stat
import time
from dataclasses import dataclass
from pathlib import Path


logger = logging.getLogger(__name__)

JOB_ID_RE = re.compile(r"^[0-9a-f]{32}$")
ARTIFACT_SUFFIX = ".gcode"
METADATA_SUFFIX = ".json"


class WorkspaceError(Exception):
    """Raised when the scratch directory cannot be prepared."""
    pass


def new_job_id() -> str:
    """128-bit random token used as the external job handle."""
    return secrets.token_hex(16)


def is_valid_job_id(job_id: str) -> bool:
    return bool(JOB_ID_RE.match(job_id or ""))


def random_base(prefix: str) -> str:
    """Short unique basename for temp files: prefix, millis, random suffix."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def ensure_scratch_dir(scratch_dir: Path) -> Path:
    """Create the scratch directory (idempotent) and confirm it is writable.

    Called once at startup; a failure here is fatal.
    """
    try:
        scratch_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as e:
        raise WorkspaceError(f"Cannot create scratch directory {scratch_dir}: {e}") from e

    if not scratch_dir.is_dir():
        raise WorkspaceError(f"Scratch path is not a directory: {scratch_dir}")
    if not os.access(scratch_dir, os.W_OK | os.X_OK):
        raise WorkspaceError(f"Scratch directory is not writable: {scratch_dir}")
    _check_private(scratch_dir)

    logger.info(f"Scratch directory ready: {scratch_dir}")
    return scratch_dir


def _check_private(scratch_dir: Path) -> None:
    """Refuse a scratch dir another local user owns or can write into."""
    st = os.stat(scratch_dir)
    if hasattr(os, "getuid") and st.st_uid != os.getuid():
        raise WorkspaceError(f"Scratch directory {scratch_dir} is owned by uid {st.st_uid}, not {os.getuid()}")
    if st.st_mode & (stat.S_IWGRP | stat.S_IWOTH):
        raise WorkspaceError(
            f"Scratch directory {scratch_dir} is group or world writable (mode {stat.filemode(st.st_mode)})"
        )


@dataclass(frozen=True)
class JobWorkspace:
    job_id: str
    base_name: str
    input_path: Path
    output_path: Path


class WorkspaceAllocator:
    """Hands out collision-free paths under one scratch root.

    Uniqueness comes from random components, not locking, so concurrent
    requests can allocate freely.
    """

    def __init__(self, scratch_dir: Path):
        self.scratch_dir = scratch_dir

    def allocate(self, extension: str) -> JobWorkspace:
        job_id = new_job_id()
        # job id prefix keeps the pair unique even if two bases collide
        base = f"{random_base('job')}-{job_id[:8]}"
        return JobWorkspace(
            job_id=job_id,
            base_name=base,
            input_path=self.scratch_dir / f"{base}{extension}",
            output_path=self.scratch_dir / f"{base}{ARTIFACT_SUFFIX}",
        )
