"""Effective gamification settings from the three-tier override chain.

Per field: streamer override (present and non-null) > campaign override
(non-null) > event default. Missing layers defer downward.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EffectiveConfig:
    enabled: bool
    cost: int
    coefficient: float
    minimum_objective: int
    duration: int
    cooldown: int
    max_contributions_per_user: int = 0


def _first(*values):
    for v in values:
        if v is not None:
            return v
    return None


def _event_cooldown(event, default_cooldown: int) -> int:
    if (event.cooldown_type or "time") == "time":
        seconds = event.cooldown_config.duration_seconds
        if seconds is not None:
            return int(seconds)
    return int(default_cooldown)


def resolve_effective_config(event, campaign_override=None, streamer_override=None, *, default_cooldown: int = 300) -> EffectiveConfig:
    c = campaign_override
    s = streamer_override

    enabled = True
    if c is not None and c.is_enabled is not None:
        enabled = enabled and bool(c.is_enabled)
    if s is not None and s.is_enabled is not None:
        enabled = enabled and bool(s.is_enabled)

    cost = _first(
        s.cost_override if s is not None else None,
        c.cost if c is not None else None,
        event.default_cost,
    )
    coefficient = _first(c.objective_coefficient if c is not None else None, event.default_objective_coefficient)
    minimum = _first(c.minimum_objective if c is not None else None, event.default_minimum_objective)
    duration = _first(c.duration if c is not None else None, event.default_duration)
    cooldown = _first(c.cooldown if c is not None else None)
    if cooldown is None:
        cooldown = _event_cooldown(event, default_cooldown)

    return EffectiveConfig(
        enabled=enabled,
        cost=int(cost or 0),
        coefficient=float(coefficient or 0.0),
        minimum_objective=int(minimum or 0),
        duration=int(duration or 0),
        cooldown=int(cooldown),
        max_contributions_per_user=int((c.max_contributions_per_user if c is not None else 0) or 0),
    )
