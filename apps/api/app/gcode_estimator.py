"""G-code analysis and price/time estimation.

Streams through a G-code file line-by-line, tracking positioning and
extrusion modes, and collects a quick analysis of the toolpath:

- bounding box of extruding moves (min, max, model size)
- net filament extruded, total and per tool
- layer count and typical layer height
- engine-reported print time, when present in comments

Header/footer comments written by PrusaSlicer, OrcaSlicer and Cura take
precedence over values derived from moves. Any field that cannot be
extracted stays None; a file that cannot be read at all gives a None
summary rather than an error.
"""

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


logger = logging.getLogger(__name__)

COORD_RE = re.compile(r'([XYZE])\s*([-+]?\d*\.?\d+)')
COMMAND_RE = re.compile(r'^([GM])(\d+)(?![\d.])')

# Engine comments
PRINT_TIME_RE = re.compile(
    r'^;\s*estimated printing time(?:s)?(?:\s*\((?:normal|silent)\s*mode\))?\s*[:=]\s*(.+)$', re.I
)
CURA_TIME_RE = re.compile(r'^;\s*TIME\s*:\s*(\d+(?:\.\d+)?)\s*$', re.I)
FILAMENT_MM_RE = re.compile(r'^;\s*filament used \[mm\]\s*=\s*(.+)$', re.I)
CURA_FILAMENT_M_RE = re.compile(r'^;\s*Filament used\s*:\s*([0-9.]+)\s*m\b', re.I)
LAYER_TOTAL_RE = re.compile(
    r'^;\s*(?:total layers count|total layer number|LAYER_COUNT)\s*[:=]\s*(\d+)', re.I
)
LAYER_MARKER_RE = re.compile(r'^;\s*(LAYER_CHANGE|CHANGE_LAYER)\b|^;\s*LAYER\s*:\s*-?\d+\b', re.I)
LAYER_HEIGHT_RE = re.compile(r'^;\s*layer_height\s*[:=]\s*([0-9.]+)', re.I)
DURATION_PART_RE = re.compile(r'(\d+)\s*([dhms])', re.I)

Z_EPSILON = 1e-4


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)


class Point3(_CamelModel):
    x: float
    y: float
    z: float


class ToolpathSummary(_CamelModel):
    """Quick analysis of a G-code file. Every field may be missing."""
    min: Optional[Point3] = None
    max: Optional[Point3] = None
    model_size: Optional[Point3] = None
    total_filament: Optional[float] = None
    filament_by_extruder: Optional[List[float]] = None
    print_time: Optional[str] = None
    print_time_seconds: Optional[float] = None
    layer_height: Optional[float] = None
    layer_count: Optional[int] = None


class Estimate(_CamelModel):
    price_estimate: float
    price_display: str
    time_estimate: float
    quick_analysis: Optional[ToolpathSummary] = None


@dataclass(frozen=True)
class PricingModel:
    base_price: float
    price_per_filament_unit: float
    base_time: float
    time_per_layer: float
    currency_symbol: str = "$"

    @classmethod
    def from_settings(cls, settings) -> "PricingModel":
        return cls(
            base_price=settings.base_price,
            price_per_filament_unit=settings.price_per_filament_unit,
            base_time=settings.base_time,
            time_per_layer=settings.time_per_layer,
            currency_symbol=settings.currency_symbol,
        )


def parse_duration(text: str) -> Optional[float]:
    """Parse '1d 2h 3m 4s' style durations into seconds."""
    parts = DURATION_PART_RE.findall(text or "")
    if not parts:
        return None
    scale = {"d": 86400, "h": 3600, "m": 60, "s": 1}
    return _finite_float(sum(int(value) * scale[unit.lower()] for value, unit in parts))


def _finite_float(value) -> Optional[float]:
    """float(value), or None for unparsable, infinite or NaN input."""
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _sum_floats(text: str) -> Optional[float]:
    """Sum a comma separated value list (multi-extruder headers list one value per tool)."""
    total = 0.0
    found = False
    for piece in text.split(','):
        number = _finite_float(piece.strip())
        if number is None:
            continue
        total += number
        found = True
    return total if found and math.isfinite(total) else None


def _parse_coords(line: str) -> Optional[Dict[str, float]]:
    """Axis words of one command; None if any value is not a finite number."""
    coords = {}
    for axis, text in COORD_RE.findall(line):
        number = _finite_float(text)
        if number is None:
            return None
        coords[axis] = number
    return coords

class _GcodeScanner:
    """Single-pass G-code state machine."""

    def __init__(self):
        self.x = self.y = self.z = 0.0
        self.e = 0.0
        self.absolute_pos = True
        self.absolute_ext = True
        self.current_tool = 0

        self.lines_seen = 0
        self.moves_seen = 0
        self.bounds_min: Optional[List[float]] = None
        self.bounds_max: Optional[List[float]] = None
        self.extruded: Dict[int, float] = {}
        self.layer_zs: List[float] = []
        self.layer_markers = 0

        self.print_time: Optional[str] = None
        self.print_time_seconds: Optional[float] = None
        self.reported_filament: Optional[float] = None
        self.reported_layers: Optional[int] = None
        self.reported_layer_height: Optional[float] = None

    def feed_comment(self, comment: str) -> None:
        if LAYER_MARKER_RE.match(comment):
            self.layer_markers += 1
            return

        m = PRINT_TIME_RE.match(comment)
        if m and self.print_time is None:
            self.print_time = m.group(1).strip()
            self.print_time_seconds = parse_duration(self.print_time)
            return

        m = CURA_TIME_RE.match(comment)
        if m and self.print_time is None:
            self.print_time = m.group(1)
            self.print_time_seconds = _finite_float(m.group(1))
            return

        m = FILAMENT_MM_RE.match(comment)
        if m:
            # an unparsable repeat never clears an earlier good value
            filament = _sum_floats(m.group(1))
            if filament is not None:
                self.reported_filament = filament
            return

        m = CURA_FILAMENT_M_RE.match(comment)
        if m and self.reported_filament is None:
            meters = _finite_float(m.group(1))
            if meters is not None:
                self.reported_filament = meters * 1000.0
            return

        m = LAYER_TOTAL_RE.match(comment)
        if m:
            self.reported_layers = int(m.group(1))
            return

        m = LAYER_HEIGHT_RE.match(comment)
        if m and self.reported_layer_height is None:
            self.reported_layer_height = _finite_float(m.group(1))

    def feed(self, raw_line: str) -> None:
        line = raw_line.strip()
        if not line:
            return
        self.lines_seen += 1

        if line[0] == ';':
            self.feed_comment(line)
            return
        if ';' in line:
            line = line[:line.index(';')].strip()
            if not line:
                return

        line = line.upper()
        first = line[0]

        # Tool change
        if first == 'T' and len(line) >= 2 and line[1].isdigit():
            try:
                self.current_tool = int(line[1:].split()[0])
            except (ValueError, IndexError):
                pass
            return

        m = COMMAND_RE.match(line)
        if not m:
            return
        word = f"{m.group(1)}{int(m.group(2))}"

        if word == 'G90':
            self.absolute_pos = True
            self.absolute_ext = True
            return
        if word == 'G91':
            self.absolute_pos = False
            self.absolute_ext = False
            return
        if word == 'M82':
            self.absolute_ext = True
            return
        if word == 'M83':
            self.absolute_ext = False
            return

        # Position reset: no material moves
        if word == 'G92':
            coords = _parse_coords(line)
            if coords is None:
                return
            if 'X' in coords: self.x = coords['X']
            if 'Y' in coords: self.y = coords['Y']
            if 'Z' in coords: self.z = coords['Z']
            if 'E' in coords: self.e = coords['E']
            return

        if word not in ('G0', 'G1', 'G2', 'G3'):
            return

        self.moves_seen += 1
        coords = _parse_coords(line)
        if coords is None:
            return

        if 'X' in coords:
            self.x = coords['X'] if self.absolute_pos else self.x + coords['X']
        if 'Y' in coords:
            self.y = coords['Y'] if self.absolute_pos else self.y + coords['Y']
        if 'Z' in coords:
            self.z = coords['Z'] if self.absolute_pos else self.z + coords['Z']

        delta_e = 0.0
        if 'E' in coords:
            new_e = coords['E'] if self.absolute_ext else self.e + coords['E']
            delta_e = new_e - self.e
            self.e = new_e

        if delta_e == 0.0:
            return

        # Retractions subtract, unretracts add back: net is what was consumed
        self.extruded[self.current_tool] = self.extruded.get(self.current_tool, 0.0) + delta_e

        if delta_e > 0:
            self._extend_bounds()
            if not self.layer_zs or abs(self.z - self.layer_zs[-1]) > Z_EPSILON:
                if not self.layer_zs or self.z > self.layer_zs[-1]:
                    self.layer_zs.append(self.z)

    def _extend_bounds(self) -> None:
        point = [self.x, self.y, self.z]
        if not all(math.isfinite(v) for v in point):
            return
        if self.bounds_min is None:
            self.bounds_min = list(point)
            self.bounds_max = list(point)
            return
        for i, value in enumerate(point):
            if value < self.bounds_min[i]:
                self.bounds_min[i] = value
            if value > self.bounds_max[i]:
                self.bounds_max[i] = value

    def layer_height(self) -> Optional[float]:
        if self.reported_layer_height is not None:
            return self.reported_layer_height
        if len(self.layer_zs) < 2:
            return None
        deltas = Counter(
            round(b - a, 3) for a, b in zip(self.layer_zs, self.layer_zs[1:]) if b - a > Z_EPSILON
        )
        if not deltas:
            return None
        return deltas.most_common(1)[0][0]

    def summary(self) -> Optional[ToolpathSummary]:
        if self.lines_seen == 0:
            return None

        has_moves = self.bounds_min is not None or bool(self.extruded)
        has_reports = any(
            v is not None for v in (self.print_time, self.reported_filament, self.reported_layers)
        )
        if not has_moves and not has_reports and self.moves_seen == 0:
            return None

        min_point = max_point = size = None
        if self.bounds_min is not None:
            min_point = Point3(x=self.bounds_min[0], y=self.bounds_min[1], z=self.bounds_min[2])
            max_point = Point3(x=self.bounds_max[0], y=self.bounds_max[1], z=self.bounds_max[2])
            size = Point3(
                x=self.bounds_max[0] - self.bounds_min[0],
                y=self.bounds_max[1] - self.bounds_min[1],
                z=self.bounds_max[2] - self.bounds_min[2],
            )

        by_extruder = None
        total_filament = None
        if self.extruded:
            top_tool = max(self.extruded)
            by_extruder = [round(max(0.0, self.extruded.get(t, 0.0)), 5) for t in range(top_tool + 1)]
            total_filament = _finite_float(round(sum(by_extruder), 5))
            if total_filament is None:
                by_extruder = None
        if self.reported_filament is not None:
            total_filament = self.reported_filament

        if self.reported_layers is not None:
            layer_count = self.reported_layers
        elif self.layer_markers:
            layer_count = self.layer_markers
        elif self.layer_zs:
            layer_count = len(self.layer_zs)
        else:
            layer_count = None

        return ToolpathSummary(
            min=min_point,
            max=max_point,
            model_size=size,
            total_filament=total_filament,
            filament_by_extruder=by_extruder,
            print_time=self.print_time,
            print_time_seconds=self.print_time_seconds,
            layer_height=self.layer_height(),
            layer_count=layer_count,
        )


def parse_toolpath_summary(gcode_path: Path) -> Optional[ToolpathSummary]:
    """Parse a G-code file into a ToolpathSummary.

    Returns None when the file is missing, unreadable, empty, or carries no
    recognizable toolpath content. Never raises.
    """
    scanner = _GcodeScanner()
    try:
        with open(gcode_path, 'r', encoding='utf-8', errors='replace') as f:
            for raw_line in f:
                scanner.feed(raw_line)
    except OSError as e:
        logger.warning(f"Could not read G-code {gcode_path}: {e}")
        return None

    summary = scanner.summary()
    if summary is None:
        logger.warning(f"No toolpath content found in {gcode_path}")
    else:
        logger.info(
            f"G-code analysis: filament={summary.total_filament}, "
            f"layers={summary.layer_count}, time={summary.print_time}"
        )
    return summary


def format_price(value: float, currency_symbol: str = "$") -> str:
    """Presentation-only price string; the raw float is the contract."""
    sign = "-" if value < 0 else ""
    return f"{sign}{currency_symbol}{abs(value):,.2f}"


def compute_estimate(summary: Optional[ToolpathSummary], pricing: PricingModel) -> Estimate:
    """Apply the linear price/time model.

    price = base_price + price_per_filament_unit * filament
    time  = base_time + time_per_layer * layers

    A None summary yields exactly 0 for both so consumers never need to
    branch on presence.
    """
    if summary is None:
        return Estimate(
            price_estimate=0,
            price_display=format_price(0, pricing.currency_symbol),
            time_estimate=0,
            quick_analysis=None,
        )

    # non-finite inputs count as missing
    filament = _finite_float(summary.total_filament) or 0.0
    layers = _finite_float(summary.layer_count) or 0
    price = pricing.base_price + pricing.price_per_filament_unit * filament
    time_estimate = pricing.base_time + pricing.time_per_layer * layers
    if not (math.isfinite(price) and math.isfinite(time_estimate)):
        logger.warning(f"Estimate overflowed (filament={filament}, layers={layers}), reporting zero")
        price = time_estimate = 0.0

    return Estimate(
        price_estimate=price,
        price_display=format_price(price, pricing.currency_symbol),
        time_estimate=time_estimate,
        quick_analysis=summary,
    )
