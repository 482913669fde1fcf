"""Tests for typed config parsing and write-time validation."""

import pytest

from tumulte.gamification.errors import InvalidConfigError
from tumulte.models import EventDefinition
from tumulte.utils.typed_configs import (
    DiceCriticalTriggerConfig,
    MonsterEffectActionConfig,
    parse_action_config,
    parse_cooldown_config,
    parse_trigger_config,
)


class TestTriggerConfigs:
    def test_dice_critical_parses_branches(self):
        cfg = parse_trigger_config("dice_critical", {
            "critical_success": {"enabled": True, "threshold": 20, "severity_filter": ["major"]},
        })
        assert isinstance(cfg, DiceCriticalTriggerConfig)
        assert cfg.critical_success.threshold == 20
        assert cfg.critical_success.severity_filter == ("major",)
        assert cfg.critical_failure is None

    def test_dice_critical_needs_a_branch(self):
        with pytest.raises(InvalidConfigError):
            parse_trigger_config("dice_critical", {})

    def test_unknown_severity_rejected(self):
        with pytest.raises(InvalidConfigError):
            parse_trigger_config("dice_critical", {"critical_failure": {"enabled": True, "severity_filter": ["huge"]}})

    def test_unknown_trigger_type_rejected(self):
        with pytest.raises(InvalidConfigError):
            parse_trigger_config("poll_finished", {})

    def test_invalid_config_is_a_value_error(self):
        with pytest.raises(ValueError):
            parse_trigger_config("custom", {"required_fields": "nope"})


class TestActionConfigs:
    def test_monster_defaults(self):
        cfg = parse_action_config("monster_debuff", {})
        assert isinstance(cfg, MonsterEffectActionConfig)
        assert cfg.ac_penalty == 2
        assert cfg.max_hp_reduction == 10

    def test_spell_duration_must_be_positive(self):
        with pytest.raises(InvalidConfigError):
            parse_action_config("spell_disable", {"duration_seconds": 0})

    def test_chat_message_needs_content(self):
        with pytest.raises(InvalidConfigError):
            parse_action_config("chat_message", {"content": "   "})

    def test_dice_bounds_checked(self):
        with pytest.raises(InvalidConfigError):
            parse_action_config("dice_invert", {"dice_min": 30, "dice_max": 20})


class TestCooldownConfigs:
    def test_time_needs_duration(self):
        with pytest.raises(InvalidConfigError):
            parse_cooldown_config("time", {})

    def test_event_complete_needs_target(self):
        with pytest.raises(InvalidConfigError):
            parse_cooldown_config("event_complete", {})
        assert parse_cooldown_config("event_complete", {"wait_for_event_id": 4}).wait_for_event_id == 4


class TestEventDefinitionSetters:
    def test_build_rejects_bad_action(self):
        with pytest.raises(InvalidConfigError):
            EventDefinition.build(slug="x", name="X", trigger_type="manual", action_type="teleport")

    def test_build_rejects_bad_scope(self):
        with pytest.raises(InvalidConfigError):
            EventDefinition.build(slug="x", name="X", trigger_type="manual", action_type="dice_invert", scope="world")

    def test_stored_config_round_trips_to_typed(self):
        ev = EventDefinition.build(
            slug="x", name="X", trigger_type="dice_critical", action_type="spell_buff",
            trigger_config={"critical_failure": {"enabled": True, "threshold": 1}},
            action_config={"bonus_value": 4},
        )
        assert ev.trigger_config.critical_failure.threshold == 1
        assert ev.action_config.bonus_value == 4
        assert ev.cooldown_config.duration_seconds == 300
