"""Trigger evaluation: a dispatch table from trigger type to evaluator.

Evaluators never raise. Any unmet precondition yields ``should_trigger=False``
with a readable reason.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from tumulte.utils.typed_configs import (
    CriticalBranch,
    CustomTriggerConfig,
    DiceCriticalTriggerConfig,
    parse_trigger_config,
)


@dataclass
class TriggerResult:
    should_trigger: bool
    trigger_data: Optional[dict] = None
    reason: str = ""
    cooldown_remaining_seconds: int = 0


def _reject(reason: str) -> TriggerResult:
    return TriggerResult(should_trigger=False, reason=reason)


def _numbers(values) -> bool:
    return (
        isinstance(values, (list, tuple))
        and len(values) > 0
        and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values)
    )


def _dice_roll_data(payload: dict) -> dict:
    return {
        "roll_id": payload.get("roll_id"),
        "character_id": payload.get("character_id"),
        "vtt_character_id": payload.get("vtt_character_id"),
        "character_name": payload.get("character_name"),
        "formula": payload.get("formula"),
        "result": payload.get("result"),
        "dice_results": list(payload.get("dice_results") or []),
        "critical_type": payload.get("critical_type"),
        "message_id": payload.get("message_id"),
    }


def _check_branch(branch: CriticalBranch, payload: dict, extreme: float, *, success: bool) -> Optional[str]:
    if branch.threshold is not None:
        if success and extreme < branch.threshold:
            return f"result {extreme} below threshold {branch.threshold}"
        if not success and extreme > branch.threshold:
            return f"result {extreme} above threshold {branch.threshold}"

    severity = payload.get("severity")
    if branch.severity_filter and severity and severity not in branch.severity_filter:
        return f"severity '{severity}' excluded by filter"

    category = payload.get("category") or payload.get("critical_category")
    if branch.category_filter and category and category not in branch.category_filter:
        return f"category '{category}' excluded by filter"
    return None


def evaluate_dice_critical(config: DiceCriticalTriggerConfig, payload: Any) -> TriggerResult:
    if not isinstance(payload, dict):
        return _reject("payload is not a dice roll")
    if not _numbers(payload.get("dice_results")) or not isinstance(payload.get("formula"), str):
        return _reject("payload is not a dice roll")
    if not payload.get("is_critical") or payload.get("critical_type") not in ("success", "failure"):
        return _reject("not a critical roll")

    success = payload["critical_type"] == "success"
    branch = config.critical_success if success else config.critical_failure
    if branch is None or not branch.enabled:
        return _reject(f"critical {payload['critical_type']} not enabled")

    dice = payload["dice_results"]
    reason = _check_branch(branch, payload, max(dice) if success else min(dice), success=success)
    if reason:
        return _reject(reason)
    return TriggerResult(should_trigger=True, trigger_data={"dice_roll": _dice_roll_data(payload)})


def evaluate_manual(config, payload: Any) -> TriggerResult:
    return TriggerResult(should_trigger=True, trigger_data={"custom": dict(payload) if isinstance(payload, dict) else {}})


def evaluate_custom(config: CustomTriggerConfig, payload: Any) -> TriggerResult:
    if not isinstance(payload, dict) or not payload:
        return _reject("empty custom payload")
    missing = [f for f in config.required_fields if payload.get(f) is None]
    if missing:
        return _reject(f"missing fields: {', '.join(missing)}")
    for key, expected in config.rules.items():
        allowed = expected if isinstance(expected, list) else [expected]
        if payload.get(key) not in allowed:
            return _reject(f"field '{key}' does not match")
    return TriggerResult(should_trigger=True, trigger_data={"custom": dict(payload)})


EVALUATORS: Dict[str, Callable[[Any, Any], TriggerResult]] = {
    "dice_critical": evaluate_dice_critical,
    "manual": evaluate_manual,
    "custom": evaluate_custom,
}


def evaluate(trigger_type: str, config, payload: Any) -> TriggerResult:
    """Evaluate ``payload`` against a parsed (or raw dict) trigger config."""
    fn = EVALUATORS.get(trigger_type)
    if fn is None:
        return _reject(f"unknown trigger type: {trigger_type}")
    try:
        if config is None or isinstance(config, dict):
            config = parse_trigger_config(trigger_type, config or {})
        return fn(config, payload)
    except Exception as e:
        return _reject(f"evaluation error: {e}")


def cooldown_remaining(cooldown_ends_at: datetime | None, now: datetime | None = None) -> int:
    if cooldown_ends_at is None:
        return 0
    delta = (cooldown_ends_at - (now or datetime.utcnow())).total_seconds()
    return int(math.ceil(delta)) if delta > 0 else 0


def evaluate_event(event, payload: Any, *, cooldown_ends_at: datetime | None = None, now: datetime | None = None) -> TriggerResult:
    remaining = cooldown_remaining(cooldown_ends_at, now)
    if remaining > 0:
        return TriggerResult(should_trigger=False, reason="on cooldown", cooldown_remaining_seconds=remaining)
    return evaluate(event.trigger_type, event.trigger_config_raw, payload)
