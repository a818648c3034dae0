"""Parser for FFmpeg's machine-readable progress stream (`-progress pipe:1`).

Grammar, one token per line:

    block    := pair* sentinel
    pair     := KEY "=" VALUE
    sentinel := "progress=" ("continue" | "end")

A snapshot is produced only when a sentinel closes a block. Lines that do not
fit the grammar (blank, no "=", unparsable numbers, "N/A") are ignored, never
raised on: the encoder's output is not ours to trust.
"""

import re
from dataclasses import dataclass

_CLOCK = re.compile(r"^(\d+):([0-5]?\d):(\d+(?:\.\d+)?)$")


@dataclass(frozen=True)
class ProgressSnapshot:
    position_seconds: float | None
    speed: float | None
    frame: int | None
    ended: bool


def compute_percent(position_seconds: float, duration_seconds: float) -> float:
    """Clamp position/duration into 0..100. Unknown duration reports 0."""
    if duration_seconds <= 0 or position_seconds <= 0:
        return 0.0
    return min(100.0, position_seconds / duration_seconds * 100)


def _parse_float(value: str) -> float | None:
    try:
        parsed = float(value)
    except ValueError:
        return None
    if parsed != parsed or parsed in (float("inf"), float("-inf")):  # NaN / inf
        return None
    return parsed


def _parse_clock(value: str) -> float | None:
    match = _CLOCK.match(value)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class FFmpegProgressParser:
    def __init__(self) -> None:
        self._fields: dict[str, str] = {}

    def feed(self, line: str) -> ProgressSnapshot | None:
        """Consume one line; return a snapshot when it closes a block."""
        key, sep, value = line.strip().partition("=")
        if not sep or not key:
            return None
        key, value = key.strip(), value.strip()
        if key != "progress":
            self._fields[key] = value
            return None
        if value not in ("continue", "end"):
            return None
        snapshot = self._snapshot(ended=value == "end")
        self._fields = {}
        return snapshot

    def _snapshot(self, ended: bool) -> ProgressSnapshot:
        return ProgressSnapshot(
            position_seconds=self._position(),
            speed=self._speed(),
            frame=self._frame(),
            ended=ended,
        )

    def _position(self) -> float | None:
        # out_time_ms is microseconds as well (long-standing FFmpeg naming quirk)
        for key in ("out_time_us", "out_time_ms"):
            raw = self._fields.get(key)
            if raw is None:
                continue
            micros = _parse_float(raw)
            if micros is not None and micros >= 0:
                return micros / 1_000_000
        raw = self._fields.get("out_time")
        return _parse_clock(raw) if raw else None

    def _speed(self) -> float | None:
        raw = self._fields.get("speed", "").rstrip("x").strip()
        speed = _parse_float(raw) if raw else None
        return speed if speed is not None and speed >= 0 else None

    def _frame(self) -> int | None:
        raw = self._fields.get("frame")
        if raw is None:
            return None
        try:
            frame = int(raw)
        except ValueError:
            return None
        return frame if frame >= 0 else None
