"""Typed trigger, action and cooldown configurations.

Each stored JSON config is a tagged union: the discriminant lives in its own
column (``trigger_type``, ``action_type``, ``cooldown_type``) and the payload is
parsed into the matching frozen dataclass when it is written. Parsers raise
``InvalidConfigError`` so bad configs never reach the evaluators.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from tumulte.gamification.errors import InvalidConfigError


TRIGGER_TYPES = ("dice_critical", "manual", "custom")
ACTION_TYPES = (
    "dice_invert",
    "chat_message",
    "spell_disable",
    "spell_buff",
    "spell_debuff",
    "monster_buff",
    "monster_debuff",
)
COOLDOWN_TYPES = ("time", "gm_validation", "event_complete")
SEVERITIES = ("minor", "major", "extreme")


def _mapping(raw: Any, what: str) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise InvalidConfigError(f"{what} must be an object")
    return raw


def _opt_number(raw: dict, key: str, *, minimum: float | None = None) -> Optional[float]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidConfigError(f"{key} must be a number")
    if minimum is not None and value < minimum:
        raise InvalidConfigError(f"{key} must be >= {minimum}")
    return value


def _opt_int(raw: dict, key: str, default: int, *, minimum: int = 0) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfigError(f"{key} must be an integer")
    if value < minimum:
        raise InvalidConfigError(f"{key} must be >= {minimum}")
    return value


def _opt_str(raw: dict, key: str, default: str | None = None) -> Optional[str]:
    value = raw.get(key, default)
    if value is not None and not isinstance(value, str):
        raise InvalidConfigError(f"{key} must be a string")
    return value


def _opt_bool(raw: dict, key: str, default: bool) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise InvalidConfigError(f"{key} must be a boolean")
    return value


def _str_list(raw: dict, key: str, allowed: Tuple[str, ...] | None = None) -> Tuple[str, ...]:
    value = raw.get(key)
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise InvalidConfigError(f"{key} must be a list of strings")
    if allowed is not None:
        unknown = [v for v in value if v not in allowed]
        if unknown:
            raise InvalidConfigError(f"{key} has unknown values: {', '.join(unknown)}")
    return tuple(value)


# =====================================================
# TRIGGERS
# =====================================================

@dataclass(frozen=True)
class CriticalBranch:
    enabled: bool = False
    threshold: Optional[float] = None
    dice_type: Optional[str] = None
    severity_filter: Tuple[str, ...] = ()
    category_filter: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DiceCriticalTriggerConfig:
    critical_success: Optional[CriticalBranch] = None
    critical_failure: Optional[CriticalBranch] = None


@dataclass(frozen=True)
class ManualTriggerConfig:
    pass


@dataclass(frozen=True)
class CustomTriggerConfig:
    required_fields: Tuple[str, ...] = ()
    # field -> expected value, or a list of allowed values
    rules: Dict[str, Any] = field(default_factory=dict)


def _parse_branch(raw: Any, name: str) -> Optional[CriticalBranch]:
    if raw is None:
        return None
    raw = _mapping(raw, name)
    return CriticalBranch(
        enabled=_opt_bool(raw, "enabled", False),
        threshold=_opt_number(raw, "threshold"),
        dice_type=_opt_str(raw, "dice_type"),
        severity_filter=_str_list(raw, "severity_filter", SEVERITIES),
        category_filter=_str_list(raw, "category_filter"),
    )


def _parse_dice_critical(raw: dict) -> DiceCriticalTriggerConfig:
    cfg = DiceCriticalTriggerConfig(
        critical_success=_parse_branch(raw.get("critical_success"), "critical_success"),
        critical_failure=_parse_branch(raw.get("critical_failure"), "critical_failure"),
    )
    if cfg.critical_success is None and cfg.critical_failure is None:
        raise InvalidConfigError("dice_critical needs critical_success or critical_failure")
    return cfg


def _parse_manual(raw: dict) -> ManualTriggerConfig:
    return ManualTriggerConfig()


def _parse_custom(raw: dict) -> CustomTriggerConfig:
    rules = raw.get("rules") or {}
    if not isinstance(rules, dict):
        raise InvalidConfigError("rules must be an object")
    return CustomTriggerConfig(required_fields=_str_list(raw, "required_fields"), rules=dict(rules))


_TRIGGER_PARSERS: Dict[str, Callable[[dict], Any]] = {
    "dice_critical": _parse_dice_critical,
    "manual": _parse_manual,
    "custom": _parse_custom,
}


def parse_trigger_config(trigger_type: str, raw: Any):
    parser = _TRIGGER_PARSERS.get(trigger_type)
    if parser is None:
        raise InvalidConfigError(f"Unknown trigger type: {trigger_type}")
    return parser(_mapping(raw, "trigger_config"))


# =====================================================
# ACTIONS
# =====================================================

@dataclass(frozen=True)
class DiceInvertActionConfig:
    troll_message: str = "The chat has inverted fate! Blame them..."
    delete_original: bool = True
    dice_max: int = 20
    dice_min: int = 1


@dataclass(frozen=True)
class ChatMessageActionConfig:
    content: str = ""
    speaker: Optional[str] = None


@dataclass(frozen=True)
class SpellEffectActionConfig:
    duration_seconds: int = 600
    message: Optional[str] = None
    exclude_cantrips: bool = True
    exclude_affected: bool = True
    bonus_value: int = 2
    penalty_value: int = 2


@dataclass(frozen=True)
class MonsterEffectActionConfig:
    ac_bonus: int = 2
    temp_hp: int = 10
    ac_penalty: int = 2
    max_hp_reduction: int = 10
    highlight_color: Optional[str] = None
    message: Optional[str] = None
    exclude_affected: bool = True


def _parse_dice_invert(raw: dict) -> DiceInvertActionConfig:
    cfg = DiceInvertActionConfig(
        troll_message=_opt_str(raw, "troll_message", DiceInvertActionConfig.troll_message),
        delete_original=_opt_bool(raw, "delete_original", True),
        dice_max=_opt_int(raw, "dice_max", 20, minimum=1),
        dice_min=_opt_int(raw, "dice_min", 1, minimum=1),
    )
    if cfg.dice_min > cfg.dice_max:
        raise InvalidConfigError("dice_min must be <= dice_max")
    return cfg


def _parse_chat_message(raw: dict) -> ChatMessageActionConfig:
    content = _opt_str(raw, "content", "")
    if not (content or "").strip():
        raise InvalidConfigError("chat_message needs a non-empty content")
    return ChatMessageActionConfig(content=content, speaker=_opt_str(raw, "speaker"))


def _parse_spell_effect(raw: dict) -> SpellEffectActionConfig:
    return SpellEffectActionConfig(
        duration_seconds=_opt_int(raw, "duration_seconds", 600, minimum=1),
        message=_opt_str(raw, "message"),
        exclude_cantrips=_opt_bool(raw, "exclude_cantrips", True),
        exclude_affected=_opt_bool(raw, "exclude_affected", True),
        bonus_value=_opt_int(raw, "bonus_value", 2),
        penalty_value=_opt_int(raw, "penalty_value", 2),
    )


def _parse_monster_effect(raw: dict) -> MonsterEffectActionConfig:
    return MonsterEffectActionConfig(
        ac_bonus=_opt_int(raw, "ac_bonus", 2),
        temp_hp=_opt_int(raw, "temp_hp", 10),
        ac_penalty=_opt_int(raw, "ac_penalty", 2),
        max_hp_reduction=_opt_int(raw, "max_hp_reduction", 10),
        highlight_color=_opt_str(raw, "highlight_color"),
        message=_opt_str(raw, "message"),
        exclude_affected=_opt_bool(raw, "exclude_affected", True),
    )


_ACTION_PARSERS: Dict[str, Callable[[dict], Any]] = {
    "dice_invert": _parse_dice_invert,
    "chat_message": _parse_chat_message,
    "spell_disable": _parse_spell_effect,
    "spell_buff": _parse_spell_effect,
    "spell_debuff": _parse_spell_effect,
    "monster_buff": _parse_monster_effect,
    "monster_debuff": _parse_monster_effect,
}


def parse_action_config(action_type: str, raw: Any):
    parser = _ACTION_PARSERS.get(action_type)
    if parser is None:
        raise InvalidConfigError(f"Unknown action type: {action_type}")
    return parser(_mapping(raw, "action_config"))


# =====================================================
# COOLDOWNS
# =====================================================

@dataclass(frozen=True)
class CooldownConfig:
    duration_seconds: Optional[int] = None
    wait_for_event_id: Optional[int] = None


def parse_cooldown_config(cooldown_type: str, raw: Any) -> CooldownConfig:
    if cooldown_type not in COOLDOWN_TYPES:
        raise InvalidConfigError(f"Unknown cooldown type: {cooldown_type}")
    raw = _mapping(raw, "cooldown_config")
    duration = raw.get("duration_seconds")
    if duration is not None:
        duration = _opt_int(raw, "duration_seconds", 0)
    if cooldown_type == "time" and duration is None:
        raise InvalidConfigError("time cooldown needs duration_seconds")
    wait_for = raw.get("wait_for_event_id")
    if wait_for is not None:
        wait_for = _opt_int(raw, "wait_for_event_id", 0, minimum=1)
    if cooldown_type == "event_complete" and wait_for is None:
        raise InvalidConfigError("event_complete cooldown needs wait_for_event_id")
    return CooldownConfig(duration_seconds=duration, wait_for_event_id=wait_for)


def config_to_dict(cfg: Any) -> dict:
    """Serialize a parsed config back to the JSON shape the parsers accept."""
    out = asdict(cfg)
    for key, value in list(out.items()):
        if isinstance(value, tuple):
            out[key] = list(value)
        elif isinstance(value, dict):
            out[key] = {k: (list(v) if isinstance(v, tuple) else v) for k, v in value.items()}
    return {k: v for k, v in out.items() if v is not None}
