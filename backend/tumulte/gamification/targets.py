"""Weighted random target selection for action handlers."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Tuple

from flask import current_app


@dataclass
class Candidate:
    id: str
    name: str
    weight: float = 1.0
    active_effect: bool = False
    level: Optional[int] = None
    data: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict) -> "Candidate":
        known = {"id", "name", "weight", "active_effect", "level"}
        return cls(
            id=str(raw.get("id")),
            name=raw.get("name") or "",
            weight=float(raw.get("weight", 1.0) if raw.get("weight") is not None else 1.0),
            active_effect=bool(raw.get("active_effect")),
            level=raw.get("level"),
            data={k: v for k, v in raw.items() if k not in known},
        )


class TargetSource(Protocol):
    """Read side of the tabletop sync, provided by the host application."""

    def spells_for(self, campaign_id: int, streamer_id: str) -> Tuple[Optional[str], Sequence[dict]]:
        """(actor_id, spells) for the streamer's character; actor_id None if unassigned."""

    def monsters_for(self, campaign_id: int) -> Sequence[dict]:
        """Hostile, non-defeated combatants of the campaign's active combat."""


def eligible_candidates(candidates: Sequence[Candidate], *, exclude_affected: bool = True) -> List[Candidate]:
    """Named, positively weighted candidates, minus those under an active effect.

    When every remaining candidate is already affected the exclusion is
    bypassed so the draw still has something to pick from.
    """
    pool = [c for c in candidates if c.name and c.weight > 0]
    if not exclude_affected:
        return pool
    fresh = [c for c in pool if not c.active_effect]
    if pool and not fresh:
        current_app.logger.info("all %s candidate(s) carry an active effect; bypassing exclusion", len(pool))
        return pool
    return fresh


def pick_weighted(candidates: Sequence[Candidate], *, exclude_affected: bool = True, rng: random.Random | None = None) -> Optional[Candidate]:
    pool = eligible_candidates(candidates, exclude_affected=exclude_affected)
    if not pool:
        return None
    draw = (rng or random).random() * sum(c.weight for c in pool)
    for c in pool:
        draw -= c.weight
        if draw < 0:
            return c
    return pool[-1]
