"""Tests for the instance lifecycle."""

import json
from datetime import timedelta

import pytest

from conftest import NOW, contribution
from tumulte.extensions import db
from tumulte.gamification.errors import InstanceNotFoundError
from tumulte.models import AuditLog, Contribution, Instance
from tumulte.utils import ledger


class TestCreateAndArm:
    def test_individual_instance_starts_pending(self, lifecycle, make_event):
        inst = lifecycle.create_individual(make_event(), 1, "streamer-a", 50)
        assert inst.status == "pending"
        assert inst.objective_target == 10
        assert inst.expires_at is None

    def test_arm_on_arm_policy_starts_window(self, lifecycle, make_event):
        inst = lifecycle.create_individual(make_event(), 1, "streamer-a", 50)
        armed = lifecycle.arm(inst.id, now=NOW)
        assert armed.status == "armed"
        assert armed.starts_at == NOW
        assert armed.expires_at == NOW + timedelta(seconds=300)

    def test_on_first_contribution_policy_defers_window(self, lifecycle, make_event):
        event = make_event(activation_policy="on_first_contribution")
        inst = lifecycle.arm(lifecycle.create_individual(event, 1, "streamer-a", 50).id, now=NOW)
        assert inst.expires_at is None

        later = NOW + timedelta(minutes=30)
        lifecycle.contribute(inst.id, contribution(inst.id, 1), now=later)
        db.session.refresh(inst)
        assert inst.status == "active"
        assert inst.starts_at == later
        assert inst.expires_at == later + timedelta(seconds=300)

    def test_arm_twice_is_harmless(self, lifecycle, armed_instance):
        again = lifecycle.arm(armed_instance.id, now=NOW + timedelta(seconds=5))
        assert again.armed_at == NOW

    def test_group_instance_snapshots(self, lifecycle, make_event):
        event = make_event("group-boom", scope="group")
        inst = lifecycle.create_group(event, 1, [
            {"streamer_id": "a", "streamer_name": "Alpha", "viewer_count": 50},
            {"streamer_id": "b", "streamer_name": "Beta", "viewer_count": 0},
        ])
        assert inst.objective_target == 13
        assert [s.streamer_id for s in inst.snapshots] == ["a", "b"]
        assert [s.local_objective for s in inst.snapshots] == [10, 3]

    def test_unknown_instance(self, lifecycle):
        with pytest.raises(InstanceNotFoundError):
            lifecycle.arm(999)


class TestContribute:
    def test_first_contribution_activates(self, lifecycle, armed_instance):
        out = lifecycle.contribute(armed_instance.id, contribution(armed_instance.id, 1), now=NOW)
        assert out.accepted is True
        assert out.instance["status"] == "active"
        assert out.instance["current_progress"] == 1

    def test_pending_instance_rejects(self, lifecycle, make_event):
        inst = lifecycle.create_individual(make_event(), 1, "streamer-a", 50)
        out = lifecycle.contribute(inst.id, contribution(inst.id, 1), now=NOW)
        assert out.accepted is False
        assert "pending" in out.reason
        assert Contribution.query.count() == 0

    def test_duplicate_delivery_counts_once(self, lifecycle, armed_instance):
        event = contribution(armed_instance.id, 1)
        lifecycle.contribute(armed_instance.id, event, now=NOW)
        out = lifecycle.contribute(armed_instance.id, event, now=NOW)
        assert out.accepted is False
        assert out.duplicate is True
        assert out.instance["current_progress"] == 1
        assert Contribution.query.count() == 1

    def test_overdue_instance_rejects(self, lifecycle, armed_instance):
        out = lifecycle.contribute(
            armed_instance.id, contribution(armed_instance.id, 1), now=NOW + timedelta(seconds=301),
        )
        assert out.accepted is False
        assert out.reason == "instance has expired"
        assert ledger.sum_active(armed_instance.id) == 0

    def test_contribution_at_deadline_is_accepted(self, lifecycle, armed_instance):
        deadline = NOW + timedelta(seconds=300)
        out = lifecycle.contribute(armed_instance.id, contribution(armed_instance.id, 1), now=deadline)
        assert out.accepted is True
        assert lifecycle.expire(armed_instance.id, now=deadline)["expired"] is False

    def test_per_user_limit(self, lifecycle, make_event, campaign_override):
        event = make_event()
        campaign_override(event, max_contributions_per_user=2)
        inst = lifecycle.arm(lifecycle.create_individual(event, 1, "streamer-a", 50).id, now=NOW)
        for n in range(3):
            out = lifecycle.contribute(inst.id, contribution(inst.id, n, contributor="greedy"), now=NOW)
        assert out.accepted is False
        assert out.reason == "contribution limit reached"
        assert ledger.count_for(inst.id, "greedy") == 2

    def test_redelivery_at_limit_is_a_duplicate(self, lifecycle, make_event, campaign_override):
        event = make_event()
        campaign_override(event, max_contributions_per_user=1)
        inst = lifecycle.arm(lifecycle.create_individual(event, 1, "streamer-a", 50).id, now=NOW)
        first = contribution(inst.id, 1, contributor="fan")
        lifecycle.contribute(inst.id, first, now=NOW)
        out = lifecycle.contribute(inst.id, first, now=NOW)
        assert out.accepted is False
        assert out.duplicate is True
        assert out.reason == "duplicate"

    def test_progress_matches_ledger(self, lifecycle, armed_instance):
        for n, amount in enumerate([1, 3, 2]):
            lifecycle.contribute(armed_instance.id, contribution(armed_instance.id, n, amount=amount), now=NOW)
        inst = db.session.get(Instance, armed_instance.id)
        assert inst.current_progress == ledger.sum_active(inst.id) == 6


class TestCompletion:
    def test_completes_once_and_dispatches_once(self, lifecycle, armed_instance, channel):
        outcomes = [
            lifecycle.contribute(armed_instance.id, contribution(armed_instance.id, n), now=NOW + timedelta(seconds=n))
            for n in range(12)
        ]
        completed = [o for o in outcomes if o.completed]
        assert len(completed) == 1
        assert outcomes[9].completed is True
        assert all(not o.accepted for o in outcomes[10:])
        assert len(channel.calls) == 1

        inst = db.session.get(Instance, armed_instance.id)
        assert inst.status == "completed"
        assert inst.execution_status == "executed"
        assert inst.cooldown_ends_at == inst.completed_at + timedelta(seconds=300)
        assert json.loads(inst.result_json)["success"] is True

    def test_action_failure_keeps_completed(self, lifecycle, armed_instance, channel):
        channel.connected.clear()
        for n in range(10):
            out = lifecycle.contribute(armed_instance.id, contribution(armed_instance.id, n), now=NOW)
        assert out.completed is True
        assert out.result.success is False
        assert "vtt_connection" in out.result.error

        inst = db.session.get(Instance, armed_instance.id)
        assert inst.status == "completed"
        assert inst.execution_status == "failed"
        assert AuditLog.query.filter_by(action="action_execution_failed").count() == 1
        assert channel.calls == []

    def test_force_complete(self, lifecycle, armed_instance, channel):
        result = lifecycle.force_complete(armed_instance.id, now=NOW)
        assert result.success is True
        assert db.session.get(Instance, armed_instance.id).status == "completed"
        assert lifecycle.force_complete(armed_instance.id, now=NOW) is None
        assert len(channel.calls) == 1


class TestExpire:
    def test_expire_refunds_everything(self, lifecycle, armed_instance):
        for n in range(4):
            lifecycle.contribute(armed_instance.id, contribution(armed_instance.id, n, amount=2), now=NOW)

        res = lifecycle.expire(armed_instance.id, now=NOW + timedelta(seconds=301))
        assert res == {"expired": True, "refunded": 4, "amount": 8, "redemptions_refunded": 4, "redemptions_failed": 0}

        inst = db.session.get(Instance, armed_instance.id)
        assert inst.status == "expired"
        assert inst.current_progress == 0
        assert inst.cooldown_ends_at is None
        assert Contribution.query.filter_by(refunded=False).count() == 0

    def test_not_yet_due(self, lifecycle, armed_instance):
        res = lifecycle.expire(armed_instance.id, now=NOW + timedelta(seconds=10))
        assert res["expired"] is False
        assert db.session.get(Instance, armed_instance.id).status == "armed"

    def test_contribution_after_expiry_is_rejected(self, lifecycle, armed_instance):
        lifecycle.expire(armed_instance.id, now=NOW + timedelta(seconds=301))
        out = lifecycle.contribute(armed_instance.id, contribution(armed_instance.id, 1), now=NOW)
        assert out.accepted is False
        assert "expired" in out.reason

    def test_group_snapshots_refunded(self, lifecycle, make_event):
        event = make_event("group-boom", scope="group")
        inst = lifecycle.create_group(event, 1, [
            {"streamer_id": "a", "viewer_count": 50},
            {"streamer_id": "b", "viewer_count": 50},
        ])
        lifecycle.arm(inst.id, now=NOW)
        lifecycle.contribute(inst.id, contribution(inst.id, 1, streamer_id="a"), now=NOW)
        lifecycle.contribute(inst.id, contribution(inst.id, 2, streamer_id="b", amount=2), now=NOW)
        out = lifecycle.contribute(inst.id, contribution(inst.id, 3, streamer_id="zzz"), now=NOW)
        assert out.accepted is False

        snaps = {s.streamer_id: s.local_progress for s in db.session.get(Instance, inst.id).snapshots}
        assert snaps == {"a": 1, "b": 2}

        lifecycle.expire(inst.id, now=NOW + timedelta(seconds=301))
        db.session.expire_all()
        snaps = {s.streamer_id: s.local_progress for s in db.session.get(Instance, inst.id).snapshots}
        assert snaps == {"a": 0, "b": 0}


class TestCooldownsAndQueries:
    def _complete(self, lifecycle, inst):
        lifecycle.force_complete(inst.id, now=NOW)

    def test_cooldown_status(self, lifecycle, armed_instance):
        self._complete(lifecycle, armed_instance)
        status = lifecycle.cooldown_status(1, armed_instance.event_id, "streamer-a", now=NOW + timedelta(seconds=100))
        assert status["on_cooldown"] is True
        assert status["remaining_seconds"] == 200
        assert lifecycle.cooldown_status(1, armed_instance.event_id, "streamer-b", now=NOW)["on_cooldown"] is False

    def test_reset_cooldowns(self, lifecycle, armed_instance):
        self._complete(lifecycle, armed_instance)
        assert lifecycle.reset_cooldowns(1, now=NOW) == 1
        assert lifecycle.cooldown_status(1, armed_instance.event_id, "streamer-a", now=NOW)["on_cooldown"] is False

    def test_active_instances(self, lifecycle, armed_instance, make_event):
        lifecycle.create_individual(make_event("other"), 1, "streamer-a", 10)
        active = lifecycle.active_instances(1, now=NOW)
        assert [i.id for i in active] == [armed_instance.id]
        assert lifecycle.active_instances(1, now=NOW + timedelta(hours=1)) == []


class TestRecalculate:
    def test_significant_change_rescales(self, lifecycle, armed_instance):
        assert lifecycle.recalculate_objective(armed_instance.id, 100, now=NOW) == 20
        assert db.session.get(Instance, armed_instance.id).objective_target == 20

    def test_jitter_is_ignored(self, lifecycle, armed_instance):
        assert lifecycle.recalculate_objective(armed_instance.id, 55, now=NOW) is None
        assert db.session.get(Instance, armed_instance.id).objective_target == 10

    def test_shrinking_below_progress_completes(self, lifecycle, armed_instance, channel):
        for n in range(5):
            lifecycle.contribute(armed_instance.id, contribution(armed_instance.id, n), now=NOW)
        assert lifecycle.recalculate_objective(armed_instance.id, 10, now=NOW) == 3
        assert db.session.get(Instance, armed_instance.id).status == "completed"
        assert len(channel.calls) == 1
