"""Time range parsing and trim mode selection."""

from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass

from errors import InvalidRange


_TIMESTAMP_RE = re.compile(r"^(?:(?:(\d+):)?(\d{1,2}):)?(\d+(?:\.\d+)?)$")
_MODE_HINTS = ("auto", "copy", "precise")


class TrimMode(str, enum.Enum):
    COPY = "copy"  # keyframe-aligned stream copy
    PRECISE = "precise"  # re-encode for exact boundaries


@dataclass(frozen=True, slots=True)
class TimeRange:
    start_ms: int
    end_ms: int

    def __post_init__(self) -> None:
        if self.start_ms < 0 or self.end_ms <= self.start_ms:
            raise InvalidRange(f"End must be after start ({self.start_ms}ms-{self.end_ms}ms)")

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    @property
    def has_subsecond(self) -> bool:
        return self.start_ms % 1000 != 0 or self.end_ms % 1000 != 0


@dataclass(frozen=True, slots=True)
class NormalizedRange:
    time_range: TimeRange
    force_precise: bool
    mode: TrimMode


def format_seconds(ms: int) -> str:
    """Format milliseconds as an ffmpeg time argument, e.g. 2500 -> '2.500'."""
    return f"{ms // 1000}.{ms % 1000:03d}"


def parse_timestamp(value: str) -> float:
    """Parse ``HH:MM:SS[.mmm]`` (or ``MM:SS``, ``SS``) into seconds."""
    m = _TIMESTAMP_RE.match(value.strip())
    if not m:
        raise InvalidRange(f"Malformed timestamp: {value!r}")
    hours, minutes, seconds = m.groups()
    if hours is not None and int(minutes) >= 60:
        raise InvalidRange(f"Malformed timestamp: {value!r}")
    if minutes is not None and float(seconds) >= 60:
        raise InvalidRange(f"Malformed timestamp: {value!r}")
    return int(hours or 0) * 3600 + int(minutes or 0) * 60 + float(seconds)


def _to_ms(value: float, scale: int) -> int:
    if not math.isfinite(value):
        raise InvalidRange("Time bounds must be finite")
    ms = round(value * scale)
    if ms < 0:
        raise InvalidRange("Time bounds must not be negative")
    return ms


def _pick_pair(
    start_ms: float | None,
    end_ms: float | None,
    start: float | None,
    end: float | None,
    start_time: str | None,
    end_time: str | None,
) -> tuple[int, int]:
    # Millisecond pair wins over seconds, seconds over timestamp strings
    if start_ms is not None or end_ms is not None:
        if start_ms is None or end_ms is None:
            raise InvalidRange("Both start_ms and end_ms are required")
        return _to_ms(start_ms, 1), _to_ms(end_ms, 1)
    if start is not None or end is not None:
        if start is None or end is None:
            raise InvalidRange("Both start and end are required")
        return _to_ms(start, 1000), _to_ms(end, 1000)
    if start_time or end_time:
        if not start_time or not end_time:
            raise InvalidRange("Both start_time and end_time are required")
        return _to_ms(parse_timestamp(start_time), 1000), _to_ms(parse_timestamp(end_time), 1000)
    raise InvalidRange("No time range given")


def normalize_range(
    start_ms: float | None = None,
    end_ms: float | None = None,
    start: float | None = None,
    end: float | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
    mode_hint: str | None = None,
) -> NormalizedRange:
    """Build the canonical range and decide the trim mode.

    Sub-second bounds force PRECISE since stream copy can only cut on
    keyframes. A "precise" hint forces PRECISE too; a "copy" hint is ignored
    when the bounds need PRECISE.
    """
    hint = (mode_hint or "auto").lower()
    if hint not in _MODE_HINTS:
        raise InvalidRange(f"Unknown mode: {mode_hint!r}")
    lo, hi = _pick_pair(start_ms, end_ms, start, end, start_time, end_time)
    time_range = TimeRange(lo, hi)
    force_precise = time_range.has_subsecond
    mode = TrimMode.PRECISE if force_precise or hint == "precise" else TrimMode.COPY
    return NormalizedRange(time_range, force_precise, mode)
