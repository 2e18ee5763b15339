"""Upload validation for model files.

Checks the declared file name and byte size of an upload before anything
touches the disk. Pure predicate: no I/O.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union


logger = logging.getLogger(__name__)

REASON_MISSING_FILE = "missing_file"
REASON_UNSUPPORTED_EXTENSION = "unsupported_extension"
REASON_FILE_TOO_LARGE = "file_too_large"
REASON_LENGTH_REQUIRED = "length_required"

# Allowance for multipart boundaries and part headers around the file bytes
MULTIPART_OVERHEAD_BYTES = 64 * 1024


def extension_of(name: str) -> str:
    """Return the lowercase extension (dot included) or an empty string."""
    i = name.rfind(".")
    return name[i:].lower() if i >= 0 else ""


@dataclass(frozen=True)
class Accepted:
    extension: str


@dataclass(frozen=True)
class Rejected:
    reason: str
    detail: str


ValidationResult = Union[Accepted, Rejected]


class UploadValidator:
    """Validates upload metadata against the extension allow-list and size cap."""

    def __init__(self, allowed_extensions: Iterable[str], max_upload_bytes: int):
        """Initialize validator.

        Args:
            allowed_extensions: Extensions including the leading dot, e.g. ".stl"
            max_upload_bytes: Largest accepted payload in bytes
        """
        self.allowed_extensions = frozenset(ext.lower() for ext in allowed_extensions)
        self.max_upload_bytes = max_upload_bytes

    def validate(self, name: Optional[str], size: Optional[int]) -> ValidationResult:
        """Validate a declared upload.

        Args:
            name: Client-supplied file name
            size: Payload size in bytes, or None when not known up front
                  (the pipeline then enforces the cap while streaming)

        Returns:
            Accepted with the normalized extension, or Rejected with a reason code
        """
        if not name:
            return Rejected(REASON_MISSING_FILE, "no file")

        if size is not None and size > self.max_upload_bytes:
            logger.info(f"Rejected upload {name!r}: {size} bytes > {self.max_upload_bytes}")
            return Rejected(REASON_FILE_TOO_LARGE, "request too big")

        ext = extension_of(name)
        if not ext or ext not in self.allowed_extensions:
            logger.info(f"Rejected upload {name!r}: unsupported extension {ext!r}")
            return Rejected(REASON_UNSUPPORTED_EXTENSION, f"unsupported extension: {ext}")

        return Accepted(ext)

    def check_request_length(self, content_length: Optional[str]) -> Optional[Rejected]:
        """Check a declared request body length before the body is read.

        A body without Content-Length (chunked) cannot be capped up front
        and is refused.

        Returns:
            None when the body may be read, otherwise Rejected
        """
        if content_length is None or not content_length.strip().isdigit():
            return Rejected(REASON_LENGTH_REQUIRED, "content-length required")
        declared = int(content_length)
        if declared > self.max_upload_bytes + MULTIPART_OVERHEAD_BYTES:
            logger.info(f"Rejected request body: {declared} bytes declared")
            return Rejected(REASON_FILE_TOO_LARGE, "request too big")
        return None
