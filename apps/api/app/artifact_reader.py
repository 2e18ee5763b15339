"""Read-only access to files inside the scratch directory.

Every lookup collapses to None on any failure so callers can answer with a
uniform "not found" that says nothing about why a path was refused.
"""

import logging
import os
import stat
from pathlib import Path
from typing import BinaryIO, Optional, Union


logger = logging.getLogger(__name__)


def resolve_contained(root_real: Path, requested: Union[str, Path], suffix: str) -> Optional[Path]:
    """Resolve `requested` to a regular file strictly inside `root_real`.

    Order matters: the path is canonicalized (symlinks resolved) before the
    containment check, and the target is only stat'ed once it is known to be
    inside the root.

    Args:
        root_real: Canonical (symlink-free) scratch root
        requested: Relative path (anchored under the root) or absolute path
        suffix: Required file suffix, e.g. ".gcode"

    Returns:
        Canonical path of the file, or None if it is refused for any reason
    """
    requested = os.fspath(requested)
    if not requested or "\x00" in requested:
        return None

    # 1. expected artifact type
    if not requested.endswith(suffix):
        return None

    # 2-3. anchor relative paths under the root, then canonicalize
    candidate = requested if os.path.isabs(requested) else os.path.join(root_real, requested)
    try:
        real = os.path.realpath(candidate)
    except (OSError, ValueError):
        return None

    # 4. containment on canonical paths
    try:
        rel = os.path.relpath(real, root_real)
    except ValueError:
        return None
    if rel == os.curdir or rel == os.pardir or rel.startswith(os.pardir + os.sep) or os.path.isabs(rel):
        return None

    # 5. only now touch the target
    try:
        st = os.stat(real)
    except OSError:
        return None
    if not stat.S_ISREG(st.st_mode):
        return None

    return Path(real)


class ArtifactReader:
    """Serves job artifacts confined to the scratch root."""

    def __init__(self, scratch_dir: Path):
        # canonical root resolved once
        self.root_real = Path(os.path.realpath(scratch_dir))

    def resolve(self, requested: Union[str, Path], suffix: str) -> Optional[Path]:
        path = resolve_contained(self.root_real, requested, suffix)
        if path is None:
            logger.info(f"Refused artifact lookup: {os.fspath(requested)!r}")
        return path

    def open(self, requested: Union[str, Path], suffix: str) -> Optional[BinaryIO]:
        """Open a contained artifact for streaming; caller closes it."""
        path = self.resolve(requested, suffix)
        if path is None:
            return None
        try:
            f = open(path, "rb")
        except OSError:
            return None
        # the opened descriptor must still be a regular file
        if not stat.S_ISREG(os.fstat(f.fileno()).st_mode):
            f.close()
            return None
        return f

    def read_bytes(self, requested: Union[str, Path], suffix: str) -> Optional[bytes]:
        f = self.open(requested, suffix)
        if f is None:
            return None
        with f:
            try:
                return f.read()
            except OSError:
                return None
