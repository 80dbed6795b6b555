"""Reduce raw CPU profile samples into per-contributor slices.

A profile is a pair of index-aligned sequences: ``ids[i]`` spent ``deltas[i]``
microseconds of CPU time. Aggregation merges samples by contributor id,
expresses each total as a share of the capture duration, and picks the
dominant contributor.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

# A stall is worth interrupting the user for only when a single contributor
# owned (nearly) the whole capture and the capture was long enough to notice.
PROMPT_PERCENTAGE = 99
PROMPT_MIN_TOTAL = 5_000_000  # microseconds


@dataclass
class Profile:
    """Raw capture result from a profiling session."""

    ids: list[str]
    deltas: list[float]
    start_time: float
    end_time: float
    data: Any = None  # Opaque payload persisted as the .cpuprofile artifact

    def __post_init__(self) -> None:
        if len(self.ids) != len(self.deltas):
            raise ValueError(
                f"ids and deltas must have the same length, got {len(self.ids)} and "
                f"{len(self.deltas)}"
            )

    @property
    def duration(self) -> float:
        """Capture duration in microseconds."""
        return self.end_time - self.start_time

    @classmethod
    def from_dict(cls, raw: dict) -> "Profile":
        """Build a profile from its JSON form.

        Accepts ``startTime``/``endTime`` (profiler wire names) or
        ``start_time``/``end_time``. The optional ``data`` key carries the
        original payload; without it the whole document is kept as payload.
        """
        try:
            ids = [str(i) for i in raw["ids"]]
            deltas = list(raw["deltas"])
            start_time = raw["startTime"] if "startTime" in raw else raw["start_time"]
            end_time = raw["endTime"] if "endTime" in raw else raw["end_time"]
        except KeyError as e:
            raise ValueError(f"Profile is missing field {e.args[0]!r}") from e
        return cls(
            ids=ids,
            deltas=deltas,
            start_time=start_time,
            end_time=end_time,
            data=raw.get("data", raw),
        )


@dataclass
class Slice:
    """Merged CPU time for one contributor."""

    id: str
    total: float
    percentage: int = 0

    def to_dict(self) -> dict:
        return {"id": self.id, "total": self.total, "percentage": self.percentage}


@dataclass
class Summary:
    """Ranked aggregation result for one profile."""

    slices: list[Slice]
    top: Slice
    duration: float
    prompt_warranted: bool = False


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero (98.5 -> 99)."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def merge_slices(ids: list[str], deltas: list[float]) -> list[Slice]:
    """Merge samples by id, summing totals. Result is in ascending id order."""
    candidates = [Slice(id=i, total=d) for i, d in zip(ids, deltas)]
    candidates.sort(key=lambda s: s.id)  # list.sort is stable

    merged: list[Slice] = []
    for candidate in candidates:
        if merged and merged[-1].id == candidate.id:
            merged[-1].total += candidate.total
        else:
            merged.append(candidate)
    return merged


def aggregate(profile: Profile) -> Summary | None:
    """Aggregate a profile into a Summary.

    Returns None when there is nothing to report: no samples, or a capture
    whose duration is zero or negative.
    """
    slices = merge_slices(profile.ids, profile.deltas)
    if not slices:
        return None

    duration = profile.duration
    if duration <= 0:
        return None

    percentage_unit = duration / 100
    top: Slice | None = None
    for s in slices:
        s.percentage = round_half_away(s.total / percentage_unit)
        # Strict comparison: the first slice wins ties
        if top is None or s.percentage > top.percentage:
            top = s

    assert top is not None
    return Summary(
        slices=slices,
        top=top,
        duration=duration,
        prompt_warranted=is_prompt_warranted(top),
    )


def is_prompt_warranted(top: Slice) -> bool:
    """Check whether the dominant slice is bad enough to alert the user."""
    return top.percentage >= PROMPT_PERCENTAGE and top.total >= PROMPT_MIN_TOTAL


def load_profile(path: Path) -> Profile:
    """Load a profile saved as JSON.

    Raises:
        ValueError: If the file is not valid JSON or lacks required fields.
    """
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse profile {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError(f"Profile {path} must be a JSON object")
    return Profile.from_dict(raw)
