"""Service configuration.

All knobs are read from the environment (prefix ``SLICE_``) or a local
``.env`` file. The pipeline receives a ``Settings`` instance explicitly;
``get_settings()`` is only used by the app factory and the CLI.
"""

import shlex
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_EXTENSIONS = [".stl", ".3mf", ".amf", ".obj", ".step", ".stp", ".ste"]


class Settings(BaseSettings):
    # Scratch directory shared by all jobs (inputs, G-code, metadata records)
    scratch_dir: Path = Path(tempfile.gettempdir()) / "slice-bridge"

    # Upload validation
    max_upload_bytes: int = 100 * 1024 * 1024
    allowed_extensions: List[str] = DEFAULT_ALLOWED_EXTENSIONS

    # Slicing engine
    slicer_command: str = "prusa-slicer"
    slicer_extra_args: str = ""
    slice_timeout_seconds: Optional[float] = 600.0
    max_concurrent_slices: int = 2
    output_capture_bytes: int = 1024 * 1024

    # Linear price/time model
    base_price: float = 1.00
    price_per_filament_unit: float = 0.01
    base_time: float = 1.00
    time_per_layer: float = 0.01
    currency_symbol: str = "$"

    # HTTP
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="SLICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        allow_inf_nan=False,
    )

    @field_validator("allowed_extensions")
    @classmethod
    def _normalize_extensions(cls, value: List[str]) -> List[str]:
        normalized = []
        for ext in value:
            ext = ext.strip().lower()
            if not ext:
                continue
            if not ext.startswith("."):
                ext = f".{ext}"
            if ext == ".gcode":
                raise ValueError("G-code output cannot be an accepted input type")
            normalized.append(ext)
        return normalized

    @field_validator("max_upload_bytes", "max_concurrent_slices", "output_capture_bytes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("slice_timeout_seconds")
    @classmethod
    def _timeout_positive(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("must be positive or null")
        return value

    @property
    def slicer_argv(self) -> List[str]:
        """Engine command as an argument vector (never run through a shell)."""
        return shlex.split(self.slicer_command)

    @property
    def slicer_extra_argv(self) -> List[str]:
        return shlex.split(self.slicer_extra_args)


@lru_cache
def get_settings() -> Settings:
    return Settings()
