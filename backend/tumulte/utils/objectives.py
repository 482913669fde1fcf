from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional


@dataclass
class StreamerSnapshot:
    streamer_id: str
    streamer_name: str
    viewer_count: int
    local_objective: int
    contributions: int = 0


@dataclass
class GroupObjective:
    total_objective: int
    snapshots: List[StreamerSnapshot] = field(default_factory=list)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_individual(viewer_count: int, coefficient: float, minimum_objective: int) -> int:
    """max(minimum, round(viewers * coefficient)), rounding halves up."""
    viewers = max(0, int(viewer_count or 0))
    scaled = _round_half_up(viewers * float(coefficient or 0.0))
    return max(int(minimum_objective or 0), scaled)


def calculate_group(streamers: Iterable, coefficient: float, minimum_objective: int) -> GroupObjective:
    """Per-streamer objectives summed into a group target.

    ``streamers`` yields dicts or objects with ``streamer_id``, ``viewer_count``
    and optionally ``streamer_name``. Order is kept and nobody is skipped.
    """
    snapshots: List[StreamerSnapshot] = []
    for s in streamers:
        if isinstance(s, dict):
            sid, name, viewers = s.get("streamer_id"), s.get("streamer_name"), s.get("viewer_count")
        else:
            sid, name, viewers = s.streamer_id, getattr(s, "streamer_name", None), s.viewer_count
        viewers = max(0, int(viewers or 0))
        snapshots.append(StreamerSnapshot(
            streamer_id=str(sid),
            streamer_name=name or str(sid),
            viewer_count=viewers,
            local_objective=calculate_individual(viewers, coefficient, minimum_objective),
        ))
    return GroupObjective(total_objective=sum(s.local_objective for s in snapshots), snapshots=snapshots)


def recalculate_if_significant_change(
    current: int,
    old_viewers: int,
    new_viewers: int,
    coefficient: float,
    minimum_objective: int,
    threshold: float = 0.2,
) -> Optional[int]:
    """New objective when the audience moved by at least ``threshold``, else None."""
    if not old_viewers:
        return calculate_individual(new_viewers, coefficient, minimum_objective)

    variation = abs(int(new_viewers) - int(old_viewers)) / float(old_viewers)
    if variation < threshold:
        return None

    fresh = calculate_individual(new_viewers, coefficient, minimum_objective)
    if fresh == int(current):
        return None
    return fresh
