"""Pytest configuration and fixtures."""

import io
import shlex
import sys
import textwrap
from pathlib import Path

import pytest

# Add app to path for imports
app_path = Path(__file__).parent.parent / "app"
sys.path.insert(0, str(app_path))

from config import Settings  # noqa: E402
from workspace import ensure_scratch_dir  # noqa: E402


SAMPLE_GCODE = """\
; generated by PrusaSlicer 2.7.1+linux-x64
G90
M83
G92 E0
;LAYER_CHANGE
;Z:0.2
G1 Z0.2 F7800
G1 X10 Y10 F3000
G1 X20 Y10 E50
;LAYER_CHANGE
;Z:0.4
G1 Z0.4
G1 X20 Y20 E50
; filament used [mm] = 100.00
; estimated printing time (normal mode) = 1h 2m 3s
; total layers count = 50
"""

# Stands in for the slicing engine. Invoked as:
#   python stub_slicer.py <mode> <input> --gcode -o <output>
STUB_SLICER = textwrap.dedent(
    '''
    import os
    import sys
    import time

    mode = sys.argv[1]
    args = sys.argv[2:]
    output = args[args.index("-o") + 1]

    if mode == "ok":
        with open(output, "w") as f:
            f.write(GCODE)
        print(f"Slicing result exported to {output}")
    elif mode in ("nan", "inf"):
        with open(output, "w") as f:
            f.write(GCODE.replace("= 100.00", "= " + mode))
    elif mode == "empty":
        open(output, "w").close()
    elif mode == "fail":
        sys.stderr.write("boom")
        sys.exit(1)
    elif mode == "sleep":
        with open(output + ".pid", "w") as f:
            f.write(str(os.getpid()))
        time.sleep(30)
    elif mode == "noout":
        pass
    elif mode == "loud":
        sys.stdout.write("x" * 200000)
        open(output, "w").close()
    '''
)


@pytest.fixture
def stub_slicer(tmp_path):
    """Path of a python script mimicking the PrusaSlicer CLI."""
    path = tmp_path / "stub_slicer.py"
    path.write_text(f"GCODE = {SAMPLE_GCODE!r}\n{STUB_SLICER}")
    return path


@pytest.fixture
def slicer_command(stub_slicer):
    """Build an argv list for the stub in a given mode."""
    def build(mode: str = "ok"):
        return [sys.executable, str(stub_slicer), mode]
    return build


@pytest.fixture
def scratch_dir(tmp_path):
    return ensure_scratch_dir(tmp_path / "scratch")


@pytest.fixture
def make_settings(scratch_dir, slicer_command):
    """Settings pointing at the scratch dir and the stub engine."""
    def build(mode: str = "ok", **overrides):
        values = {
            "scratch_dir": scratch_dir,
            "slicer_command": shlex.join(slicer_command(mode)),
            "slice_timeout_seconds": 30,
        }
        values.update(overrides)
        return Settings(**values)
    return build


@pytest.fixture
def chunk_reader():
    """Async read(n) over an in-memory payload, like UploadFile.read."""
    def build(data: bytes):
        buf = io.BytesIO(data)

        async def read(n: int) -> bytes:
            return buf.read(n)
        return read
    return build
