"""
Pytest fixtures for the gamification engine.

Builds the app on an in-memory database and provides fakes for the
command channel, reward provider and target source.
"""

from datetime import datetime

import pytest

from tumulte import create_app
from tumulte.config import TestingConfig
from tumulte.extensions import db
from tumulte.gamification.actions import ActionExecutor
from tumulte.gamification.instances import ContributionEvent, InstanceLifecycleManager
from tumulte.gamification.service import GamificationService
from tumulte.models import CampaignOverride, EventDefinition


NOW = datetime(2026, 3, 1, 20, 0, 0)


class FakeChannel:
    """Command channel that records every apply_effect call."""

    def __init__(self, connected=("vtt-1",), response=None):
        self.connected = set(connected)
        self.response = response or {"success": True, "error": None}
        self.calls = []

    def is_connected(self, connection_id):
        return connection_id in self.connected

    def apply_effect(self, connection_id, target, effect):
        self.calls.append({"connection_id": connection_id, "target": target, "effect": effect})
        return dict(self.response)


class FakeRewardProvider:
    def __init__(self):
        self.rewards = {}
        self.created = []
        self.fail_create = False
        self.fail_lookup = set()
        self.fail_delete = set()
        self.fail_update = set()
        self.fail_refund = set()
        self.refunds = []

    def create_reward(self, streamer_id, title, cost, *, color=None):
        from tumulte.gamification.errors import RewardProviderError

        if self.fail_create:
            raise RewardProviderError("provider down", status_code=503)
        for reward_id, item in self.rewards.items():
            if item["streamer_id"] == streamer_id and item["title"] == title:
                return reward_id
        reward_id = f"reward-{len(self.rewards) + 1}"
        self.rewards[reward_id] = {"streamer_id": streamer_id, "title": title, "cost": cost, "state": "active"}
        self.created.append(reward_id)
        return reward_id

    def get_state(self, streamer_id, reward_id):
        if reward_id in self.fail_lookup:
            raise RuntimeError("lookup exploded")
        item = self.rewards.get(reward_id)
        return item["state"] if item else None

    def exists(self, streamer_id, reward_id):
        return self.get_state(streamer_id, reward_id) is not None

    def set_state(self, streamer_id, reward_id, state):
        from tumulte.gamification.errors import RewardProviderError

        if state == "deleted":
            if reward_id in self.fail_delete:
                raise RewardProviderError("delete refused", status_code=500)
            self.rewards.pop(reward_id, None)
        else:
            if reward_id in self.fail_update:
                raise RewardProviderError("update refused", status_code=500)
            self.rewards[reward_id]["state"] = state

    def update_reward(self, streamer_id, reward_id, *, cost):
        from tumulte.gamification.errors import RewardProviderError

        if reward_id in self.fail_update:
            raise RewardProviderError("update refused", status_code=500)
        self.rewards[reward_id]["cost"] = cost

    def refund_redemption(self, streamer_id, redemption_id, *, reward_id=None):
        from tumulte.gamification.errors import RewardProviderError

        if redemption_id in self.fail_refund:
            raise RewardProviderError("refund refused", status_code=500)
        self.refunds.append({"streamer_id": streamer_id, "redemption_id": redemption_id, "reward_id": reward_id})


class FakeTargets:
    def __init__(self, actor_id="actor-1", spells=None, monsters=None):
        self.actor_id = actor_id
        self.spells = spells or []
        self.monsters = monsters or []

    def spells_for(self, campaign_id, streamer_id):
        return self.actor_id, list(self.spells)

    def monsters_for(self, campaign_id):
        return list(self.monsters)


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def provider():
    return FakeRewardProvider()


@pytest.fixture
def targets():
    return FakeTargets(
        spells=[
            {"id": "s-fireball", "name": "Fireball", "level": 3},
            {"id": "s-shield", "name": "Shield", "level": 1},
            {"id": "s-light", "name": "Light", "level": 0},
        ],
        monsters=[
            {"id": "m-goblin", "name": "Goblin"},
            {"id": "m-ogre", "name": "Ogre"},
        ],
    )


@pytest.fixture
def executor(channel, targets):
    return ActionExecutor(channel, targets)


@pytest.fixture
def lifecycle(app, executor, provider):
    return InstanceLifecycleManager(executor, connection_resolver=lambda campaign_id: "vtt-1", reward_provider=provider)


@pytest.fixture
def service(lifecycle, provider):
    return GamificationService(lifecycle, reward_provider=provider)


@pytest.fixture
def make_event(app):
    """Persist a validated event definition."""

    def _make(slug="chat-boom", **kwargs):
        kwargs.setdefault("name", slug.replace("-", " ").title())
        kwargs.setdefault("trigger_type", "manual")
        kwargs.setdefault("action_type", "chat_message")
        if kwargs["action_type"] == "chat_message":
            kwargs.setdefault("action_config", {"content": "The chat strikes!"})
        kwargs.setdefault("default_cost", 100)
        kwargs.setdefault("default_objective_coefficient", 0.2)
        kwargs.setdefault("default_minimum_objective", 3)
        kwargs.setdefault("default_duration", 300)
        ev = EventDefinition.build(slug=slug, **kwargs)
        db.session.add(ev)
        db.session.commit()
        return ev

    return _make


@pytest.fixture
def campaign_override(app):
    def _make(event, campaign_id=1, **fields):
        row = CampaignOverride(campaign_id=campaign_id, event_id=event.id, **fields)
        db.session.add(row)
        db.session.commit()
        return row

    return _make


@pytest.fixture
def armed_instance(lifecycle, make_event):
    """Individual instance, armed at NOW, objective 10 (50 viewers x 0.2)."""
    event = make_event()
    inst = lifecycle.create_individual(event, 1, "streamer-a", 50)
    return lifecycle.arm(inst.id, now=NOW)


def contribution(instance_id, n, *, contributor=None, amount=1, streamer_id=None):
    return ContributionEvent(
        instance_id=instance_id,
        contributor_id=contributor or f"viewer-{n}",
        contributor_name=f"Viewer {n}",
        amount=amount,
        dedup_key=f"redemption-{n}",
        streamer_id=streamer_id,
    )
