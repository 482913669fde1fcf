"""Completion side effects.

Each handler declares the capabilities it needs and issues exactly one
``apply_effect`` call on the command channel. Failures are reported in the
returned ``ResultData`` and never retried.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Sequence

from flask import current_app

from tumulte.gamification.errors import MissingCapabilityError
from tumulte.gamification.targets import Candidate, TargetSource, pick_weighted
from tumulte.utils.typed_configs import parse_action_config


@dataclass
class ResultData:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    action_result: Optional[dict] = None

    def to_dict(self) -> dict:
        out = {"success": bool(self.success)}
        if self.message is not None:
            out["message"] = self.message
        if self.error is not None:
            out["error"] = self.error
        if self.action_result is not None:
            out["action_result"] = self.action_result
        return out


class CommandChannel(Protocol):
    def apply_effect(self, connection_id: str, target: dict, effect: dict) -> dict:
        ...

    def is_connected(self, connection_id: str) -> bool:
        ...


def _triggered_by(instance) -> str:
    data = instance.trigger_data or {}
    return ((data.get("activation") or {}).get("triggered_by")) or "the chat"


class ActionHandler:
    action_type = ""
    requires: Sequence[str] = ()

    def __init__(self, channel: CommandChannel, targets: TargetSource | None = None):
        self.channel = channel
        self.targets = targets

    def execute(self, config, instance, connection_id: str) -> ResultData:
        raise NotImplementedError

    def _send(self, connection_id: str, target: dict, effect: dict) -> Optional[str]:
        """Single outbound command. Returns an error string or None."""
        res = self.channel.apply_effect(connection_id, target, effect) or {}
        if res.get("success"):
            return None
        return res.get("error") or "effect could not be applied"


class DiceInvertAction(ActionHandler):
    action_type = "dice_invert"
    requires = ("vtt_connection",)

    def execute(self, config, instance, connection_id):
        data = instance.trigger_data or {}
        roll = data.get("dice_roll")
        custom = data.get("custom") or {}
        test_mode = custom.get("is_test") is True

        if not roll and test_mode and custom.get("dice_value") is not None:
            value = int(custom["dice_value"])
            roll = {
                "roll_id": f"test-{int(time.time() * 1000)}",
                "character_id": "test-character",
                "character_name": "Test Character",
                "formula": "1d20",
                "result": value,
                "dice_results": [value],
                "critical_type": "success" if value >= config.dice_max else "failure",
            }

        if not roll:
            return ResultData(False, error="missing dice roll data")

        critical = roll.get("critical_type")
        inverted = config.dice_min if critical == "success" else config.dice_max
        action_result = {
            "original_result": roll.get("result"),
            "inverted_result": inverted,
            "original_critical_type": critical,
            "new_critical_type": "failure" if critical == "success" else "success",
        }
        if test_mode:
            action_result["test_mode"] = True

        target = {
            "type": "roll",
            "character_id": roll.get("vtt_character_id") or roll.get("character_id"),
            "message_id": roll.get("message_id"),
        }
        effect = {
            "type": "dice_invert",
            "formula": roll.get("formula"),
            "original_result": roll.get("result"),
            "inverted_result": inverted,
            "message": config.troll_message,
            "delete_original": bool(config.delete_original and roll.get("message_id") and not test_mode),
        }
        err = self._send(connection_id, target, effect)
        if err:
            return ResultData(False, error=err, action_result=action_result)
        return ResultData(True, message=f"Dice inverted: {roll.get('result')} -> {inverted}", action_result=action_result)


class ChatMessageAction(ActionHandler):
    action_type = "chat_message"
    requires = ("vtt_connection",)

    def execute(self, config, instance, connection_id):
        effect = {"type": "chat_message", "content": config.content, "speaker": config.speaker or "Tumulte"}
        err = self._send(connection_id, {"type": "chat"}, effect)
        if err:
            return ResultData(False, error=err)
        return ResultData(True, message="Message sent", action_result={"content": config.content})


class SpellEffectAction(ActionHandler):
    requires = ("vtt_connection",)
    effect_type = ""
    default_message = ""

    def _effect_fields(self, config) -> dict:
        return {}

    def execute(self, config, instance, connection_id):
        if self.targets is None:
            return ResultData(False, error="no target source configured")
        if not instance.streamer_id:
            return ResultData(False, error="instance has no streamer")

        actor_id, spells = self.targets.spells_for(instance.campaign_id, instance.streamer_id)
        if not actor_id:
            return ResultData(False, error="no character assigned to the streamer")
        candidates = [Candidate.from_dict(s) for s in spells or []]
        if config.exclude_cantrips:
            candidates = [c for c in candidates if c.level != 0]
        if not candidates:
            return ResultData(False, error="character has no eligible spells")

        spell = pick_weighted(candidates, exclude_affected=config.exclude_affected)
        if spell is None:
            return ResultData(False, error="no eligible spell found")

        triggered_by = _triggered_by(instance)
        effect = {
            "type": self.effect_type,
            "duration_seconds": config.duration_seconds,
            "message": config.message or self.default_message,
            "triggered_by": triggered_by,
        }
        effect.update(self._effect_fields(config))
        current_app.logger.info(
            "spell %s on '%s' (actor %s) for %ss, instance %s",
            self.effect_type, spell.name, actor_id, config.duration_seconds, instance.id,
        )

        err = self._send(connection_id, {"type": "spell", "actor_id": actor_id, "spell_id": spell.id, "spell_name": spell.name}, effect)
        if err:
            return ResultData(False, error=err)
        result = {
            "spell_id": spell.id,
            "spell_name": spell.name,
            "spell_img": spell.data.get("img"),
            "effect_type": self.effect_type,
            "duration_seconds": config.duration_seconds,
            "triggered_by": triggered_by,
        }
        result.update(self._effect_fields(config))
        minutes = round(config.duration_seconds / 60)
        return ResultData(True, message=f"Spell \"{spell.name}\" {self.effect_type} for {minutes} min", action_result=result)


class SpellDisableAction(SpellEffectAction):
    action_type = "spell_disable"
    effect_type = "disable"
    default_message = "A spell was blocked by the chat!"


class SpellBuffAction(SpellEffectAction):
    action_type = "spell_buff"
    effect_type = "buff"
    default_message = "A spell was empowered by the chat!"

    def _effect_fields(self, config):
        return {"bonus_value": config.bonus_value}


class SpellDebuffAction(SpellEffectAction):
    action_type = "spell_debuff"
    effect_type = "debuff"
    default_message = "A spell was cursed by the chat!"

    def _effect_fields(self, config):
        return {"penalty_value": config.penalty_value}


class MonsterEffectAction(ActionHandler):
    requires = ("vtt_connection",)
    effect_type = ""
    default_color = ""
    default_message = ""

    def _effect_fields(self, config) -> dict:
        return {}

    def execute(self, config, instance, connection_id):
        if self.targets is None:
            return ResultData(False, error="no target source configured")
        monsters = [Candidate.from_dict(m) for m in self.targets.monsters_for(instance.campaign_id) or []]
        if not monsters:
            return ResultData(False, error="no hostile monster in the active combat")

        monster = pick_weighted(monsters, exclude_affected=config.exclude_affected)
        if monster is None:
            return ResultData(False, error="no eligible monster found")

        triggered_by = _triggered_by(instance)
        color = config.highlight_color or self.default_color
        effect = {
            "type": self.effect_type,
            "highlight_color": color,
            "message": config.message or self.default_message,
            "triggered_by": triggered_by,
        }
        effect.update(self._effect_fields(config))

        target = {"type": "monster", "actor_id": monster.id, "monster_name": monster.name, "monster_img": monster.data.get("img")}
        err = self._send(connection_id, target, effect)
        if err:
            return ResultData(False, error=err)
        result = {"monster_name": monster.name, "monster_img": monster.data.get("img"), "effect_type": self.effect_type,
                  "highlight_color": color, "triggered_by": triggered_by}
        result.update(self._effect_fields(config))
        return ResultData(True, message=f"Monster \"{monster.name}\" {self.effect_type}", action_result=result)


class MonsterBuffAction(MonsterEffectAction):
    action_type = "monster_buff"
    effect_type = "buff"
    default_color = "#10B981"
    default_message = "A monster was empowered by the chat!"

    def _effect_fields(self, config):
        return {"ac_bonus": config.ac_bonus, "temp_hp": config.temp_hp}


class MonsterDebuffAction(MonsterEffectAction):
    action_type = "monster_debuff"
    effect_type = "debuff"
    default_color = "#EF4444"
    default_message = "A monster was weakened by the chat!"

    def _effect_fields(self, config):
        return {"ac_penalty": config.ac_penalty, "max_hp_reduction": config.max_hp_reduction}


HANDLER_CLASSES = (
    DiceInvertAction,
    ChatMessageAction,
    SpellDisableAction,
    SpellBuffAction,
    SpellDebuffAction,
    MonsterBuffAction,
    MonsterDebuffAction,
)


class ActionExecutor:
    """Capability-checked dispatch from action type to handler."""

    def __init__(self, channel: CommandChannel, target_source: TargetSource | None = None,
                 handlers: Dict[str, ActionHandler] | None = None):
        self.channel = channel
        self.handlers: Dict[str, ActionHandler] = handlers or {
            cls.action_type: cls(channel, target_source) for cls in HANDLER_CLASSES
        }
        self.capabilities: Dict[str, Callable[[Optional[str]], bool]] = {
            "vtt_connection": lambda connection_id: bool(connection_id) and self.channel.is_connected(connection_id),
        }

    def check_capabilities(self, handler: ActionHandler, connection_id: Optional[str]) -> None:
        for cap in handler.requires:
            checker = self.capabilities.get(cap)
            if checker is None or not checker(connection_id):
                raise MissingCapabilityError(cap, f"capability '{cap}' unavailable for connection {connection_id or '-'}")

    def execute(self, action_type: str, config, instance, connection_id: Optional[str]) -> ResultData:
        handler = self.handlers.get(action_type)
        if handler is None:
            return ResultData(False, error=f"no handler for action type {action_type}")
        try:
            self.check_capabilities(handler, connection_id)
        except MissingCapabilityError as e:
            return ResultData(False, error=str(e))

        try:
            if config is None or isinstance(config, dict):
                config = parse_action_config(action_type, config or {})
            return handler.execute(config, instance, connection_id)
        except Exception as e:
            current_app.logger.exception("action %s failed for instance %s", action_type, getattr(instance, "id", None))
            return ResultData(False, error=str(e))
