import json
from datetime import datetime

from tumulte.extensions import db
from tumulte.gamification.errors import InvalidConfigError
from tumulte.utils.typed_configs import (
    config_to_dict,
    parse_action_config,
    parse_cooldown_config,
    parse_trigger_config,
)


SCOPES = ("individual", "group")
ACTIVATION_POLICIES = ("on_arm", "on_first_contribution")

# Column defaults only apply at flush; unsaved definitions need them too.
_DEFAULTS = (
    ("default_cost", 100),
    ("default_objective_coefficient", 0.3),
    ("default_minimum_objective", 3),
    ("default_duration", 300),
    ("is_system_event", False),
)


def _load(raw):
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except Exception:
        return {}


class EventDefinition(db.Model):
    __tablename__ = "gamification_events"

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(80), nullable=False, unique=True, index=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)

    scope = db.Column(db.String(16), nullable=False, default="individual")  # individual|group

    trigger_type = db.Column(db.String(32), nullable=False)
    trigger_config_json = db.Column(db.Text, nullable=True)
    action_type = db.Column(db.String(32), nullable=False)
    action_config_json = db.Column(db.Text, nullable=True)

    default_cost = db.Column(db.Integer, nullable=False, default=100)
    default_objective_coefficient = db.Column(db.Float, nullable=False, default=0.3)
    default_minimum_objective = db.Column(db.Integer, nullable=False, default=3)
    default_duration = db.Column(db.Integer, nullable=False, default=300)  # seconds

    cooldown_type = db.Column(db.String(24), nullable=False, default="time")  # time|gm_validation|event_complete
    cooldown_config_json = db.Column(db.Text, nullable=True)

    activation_policy = db.Column(db.String(32), nullable=False, default="on_arm")
    reward_color = db.Column(db.String(16), nullable=True)
    is_system_event = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Typed configs are validated on write, so readers can trust the stored JSON.

    def set_trigger(self, trigger_type: str, config) -> None:
        parsed = parse_trigger_config(trigger_type, config)
        self.trigger_type = trigger_type
        self.trigger_config_json = json.dumps(config_to_dict(parsed))

    def set_action(self, action_type: str, config) -> None:
        parsed = parse_action_config(action_type, config)
        self.action_type = action_type
        self.action_config_json = json.dumps(config_to_dict(parsed))

    def set_cooldown(self, cooldown_type: str, config) -> None:
        parsed = parse_cooldown_config(cooldown_type, config)
        self.cooldown_type = cooldown_type
        self.cooldown_config_json = json.dumps(config_to_dict(parsed))

    def set_scope(self, scope: str) -> None:
        if scope not in SCOPES:
            raise InvalidConfigError(f"Unknown scope: {scope}")
        self.scope = scope

    def set_activation_policy(self, policy: str) -> None:
        if policy not in ACTIVATION_POLICIES:
            raise InvalidConfigError(f"Unknown activation policy: {policy}")
        self.activation_policy = policy

    @property
    def trigger_config(self):
        return parse_trigger_config(self.trigger_type, _load(self.trigger_config_json))

    @property
    def trigger_config_raw(self) -> dict:
        return _load(self.trigger_config_json)

    @property
    def action_config(self):
        return parse_action_config(self.action_type, _load(self.action_config_json))

    @property
    def cooldown_config(self):
        return parse_cooldown_config(self.cooldown_type or "time", _load(self.cooldown_config_json))

    @classmethod
    def build(cls, *, slug: str, name: str, trigger_type: str, action_type: str,
              trigger_config=None, action_config=None, cooldown_type: str = "time",
              cooldown_config=None, scope: str = "individual",
              activation_policy: str = "on_arm", **fields) -> "EventDefinition":
        """Construct a validated definition; raises InvalidConfigError on bad configs."""
        ev = cls(slug=slug, name=name, **fields)
        for key, default in _DEFAULTS:
            if getattr(ev, key) is None:
                setattr(ev, key, default)
        ev.set_scope(scope)
        ev.set_activation_policy(activation_policy)
        ev.set_trigger(trigger_type, trigger_config or {})
        ev.set_action(action_type, action_config or {})
        if cooldown_config is None and cooldown_type == "time":
            cooldown_config = {"duration_seconds": 300}
        ev.set_cooldown(cooldown_type, cooldown_config or {})
        for key in ("default_cost", "default_minimum_objective", "default_duration"):
            value = getattr(ev, key)
            if value is not None and int(value) < (1 if key == "default_duration" else 0):
                raise InvalidConfigError(f"{key} is out of range")
        coef = ev.default_objective_coefficient
        if coef is not None and float(coef) < 0:
            raise InvalidConfigError("default_objective_coefficient must be >= 0")
        return ev

    def to_dict(self):
        return {
            "id": int(self.id) if self.id else None,
            "slug": self.slug,
            "name": self.name,
            "description": self.description or "",
            "scope": self.scope,
            "trigger_type": self.trigger_type,
            "trigger_config": _load(self.trigger_config_json),
            "action_type": self.action_type,
            "action_config": _load(self.action_config_json),
            "default_cost": int(self.default_cost or 0),
            "default_objective_coefficient": float(self.default_objective_coefficient or 0.0),
            "default_minimum_objective": int(self.default_minimum_objective or 0),
            "default_duration": int(self.default_duration or 0),
            "cooldown_type": self.cooldown_type,
            "cooldown_config": _load(self.cooldown_config_json),
            "activation_policy": self.activation_policy,
            "reward_color": self.reward_color,
            "is_system_event": bool(self.is_system_event),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
