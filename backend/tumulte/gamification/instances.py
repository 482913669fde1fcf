"""Instance state machine and progress accounting.

pending -> armed -> active -> completed | expired. Every transition is a
guarded ``UPDATE ... WHERE status ...`` so the row count tells the caller
whether it won. Ledger writes and progress updates share one transaction per
instance; completion side effects run after commit.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from flask import current_app
from sqlalchemy import or_

from tumulte.extensions import db
from tumulte.gamification.actions import ActionExecutor, ResultData
from tumulte.gamification.errors import InstanceNotFoundError
from tumulte.models import (
    CampaignOverride,
    EventDefinition,
    Instance,
    InstanceStreamerSnapshot,
    StreamerOverride,
)
from tumulte.models.instance import (
    OPEN_STATUSES,
    STATUS_ACTIVE,
    STATUS_ARMED,
    STATUS_COMPLETED,
    STATUS_EXPIRED,
    STATUS_PENDING,
)
from tumulte.realtime.socket import broadcast_instance_update
from tumulte.utils import ledger
from tumulte.utils.audit import audit
from tumulte.utils.config_resolver import EffectiveConfig, resolve_effective_config
from tumulte.utils.objectives import calculate_group, calculate_individual, recalculate_if_significant_change


def _now():
    return datetime.utcnow()


@dataclass
class ContributionEvent:
    instance_id: int
    contributor_id: str
    contributor_name: str
    amount: int
    dedup_key: str
    streamer_id: Optional[str] = None


@dataclass
class ContributionOutcome:
    accepted: bool
    reason: str = ""
    duplicate: bool = False
    completed: bool = False
    contribution_id: Optional[int] = None
    instance: Optional[dict] = None
    result: Optional[ResultData] = None


class InstanceLifecycleManager:
    def __init__(
        self,
        executor: ActionExecutor | None = None,
        connection_resolver: Callable[[int], Optional[str]] | None = None,
        *,
        reward_provider=None,
        default_cooldown: int | None = None,
        recalc_threshold: float | None = None,
    ):
        self.executor = executor
        self.connection_resolver = connection_resolver
        self.reward_provider = reward_provider
        self._default_cooldown = default_cooldown
        self._recalc_threshold = recalc_threshold

    @property
    def default_cooldown(self) -> int:
        if self._default_cooldown is not None:
            return int(self._default_cooldown)
        return int(current_app.config.get("GAMIFICATION_DEFAULT_COOLDOWN_SECONDS", 300))

    @property
    def recalc_threshold(self) -> float:
        if self._recalc_threshold is not None:
            return float(self._recalc_threshold)
        return float(current_app.config.get("GAMIFICATION_RECALC_THRESHOLD", 0.2))

    @property
    def refund_max_attempts(self) -> int:
        return int(current_app.config.get("GAMIFICATION_REFUND_MAX_ATTEMPTS", 5))

    # =====================================================
    # CONFIG
    # =====================================================

    def effective_config(self, event: EventDefinition, campaign_id: int, streamer_id: str | None = None) -> EffectiveConfig:
        campaign_override = CampaignOverride.query.filter_by(campaign_id=int(campaign_id), event_id=int(event.id)).first()
        streamer_override = None
        if streamer_id is not None:
            streamer_override = StreamerOverride.query.filter_by(
                campaign_id=int(campaign_id), streamer_id=str(streamer_id), event_id=int(event.id)
            ).first()
        return resolve_effective_config(event, campaign_override, streamer_override, default_cooldown=self.default_cooldown)

    def _effective_for(self, inst: Instance) -> EffectiveConfig:
        event = db.session.get(EventDefinition, int(inst.event_id))
        return self.effective_config(event, inst.campaign_id, inst.streamer_id if inst.scope == "individual" else None)

    # =====================================================
    # CREATION
    # =====================================================

    def create_individual(self, event: EventDefinition, campaign_id: int, streamer_id: str, viewer_count: int, *,
                          effective: EffectiveConfig | None = None, trigger_data: dict | None = None) -> Instance:
        effective = effective or self.effective_config(event, campaign_id, streamer_id)
        inst = Instance(
            campaign_id=int(campaign_id),
            event_id=int(event.id),
            scope="individual",
            streamer_id=str(streamer_id),
            viewer_count_at_start=max(0, int(viewer_count or 0)),
            status=STATUS_PENDING,
            objective_target=calculate_individual(viewer_count, effective.coefficient, effective.minimum_objective),
            current_progress=0,
            duration=int(effective.duration),
            trigger_data_json=json.dumps(trigger_data) if trigger_data is not None else None,
        )
        db.session.add(inst)
        db.session.commit()
        current_app.logger.info(
            "instance %s created for event %s streamer %s objective %s",
            inst.id, event.slug, streamer_id, inst.objective_target,
        )
        return inst

    def create_group(self, event: EventDefinition, campaign_id: int, streamers: Iterable, *,
                     effective: EffectiveConfig | None = None, trigger_data: dict | None = None) -> Instance:
        """``streamers`` yields {streamer_id, streamer_name, viewer_count} in display order."""
        effective = effective or self.effective_config(event, campaign_id)
        group = calculate_group(streamers, effective.coefficient, effective.minimum_objective)
        inst = Instance(
            campaign_id=int(campaign_id),
            event_id=int(event.id),
            scope="group",
            streamer_id=None,
            viewer_count_at_start=sum(s.viewer_count for s in group.snapshots),
            status=STATUS_PENDING,
            objective_target=group.total_objective,
            current_progress=0,
            duration=int(effective.duration),
            trigger_data_json=json.dumps(trigger_data) if trigger_data is not None else None,
        )
        db.session.add(inst)
        db.session.flush()
        for position, snap in enumerate(group.snapshots):
            db.session.add(InstanceStreamerSnapshot(
                instance_id=int(inst.id),
                streamer_id=snap.streamer_id,
                streamer_name=snap.streamer_name,
                viewer_count_at_start=snap.viewer_count,
                local_objective=snap.local_objective,
                local_progress=0,
                position=position,
            ))
        db.session.commit()
        current_app.logger.info(
            "group instance %s created for event %s with %s streamer(s), objective %s",
            inst.id, event.slug, len(group.snapshots), inst.objective_target,
        )
        return inst

    def get(self, instance_id: int) -> Instance:
        inst = db.session.get(Instance, int(instance_id))
        if inst is None:
            raise InstanceNotFoundError(instance_id)
        return inst

    # =====================================================
    # TRANSITIONS
    # =====================================================

    def arm(self, instance_id: int, *, now: datetime | None = None) -> Instance:
        now = now or _now()
        inst = self.get(instance_id)
        event = db.session.get(EventDefinition, int(inst.event_id))

        values = {"status": STATUS_ARMED, "armed_at": now, "updated_at": now}
        if (event.activation_policy or "on_arm") == "on_arm":
            values["starts_at"] = now
            values["expires_at"] = now + timedelta(seconds=int(inst.duration or 0))

        won = (
            Instance.query
            .filter(Instance.id == int(instance_id), Instance.status == STATUS_PENDING)
            .update(values, synchronize_session=False)
        )
        db.session.commit()
        if not won:
            current_app.logger.info("arm skipped for instance %s (status %s)", instance_id, inst.status)
        db.session.refresh(inst)
        return inst

    def _lock_open(self, instance_id: int, now: datetime) -> Optional[Instance]:
        """Take the per-instance write lock; None when the instance is not open."""
        # The guarded write serializes writers on every backend; FOR UPDATE adds row locking where supported.
        touched = (
            Instance.query
            .filter(Instance.id == int(instance_id), Instance.status.in_(OPEN_STATUSES))
            .update({"updated_at": now}, synchronize_session=False)
        )
        if not touched:
            return None
        return (
            Instance.query
            .filter_by(id=int(instance_id))
            .with_for_update()
            .populate_existing()
            .first()
        )

    def _reject(self, instance_id: int, reason: str, *, duplicate: bool = False) -> ContributionOutcome:
        db.session.rollback()
        inst = db.session.get(Instance, int(instance_id))
        if inst is None:
            raise InstanceNotFoundError(instance_id)
        return ContributionOutcome(accepted=False, reason=reason, duplicate=duplicate, instance=inst.to_dict())

    def contribute(self, instance_id: int, contribution: ContributionEvent, *, now: datetime | None = None) -> ContributionOutcome:
        now = now or _now()

        inst = self._lock_open(instance_id, now)
        if inst is None:
            db.session.rollback()
            current = db.session.get(Instance, int(instance_id))
            if current is None:
                raise InstanceNotFoundError(instance_id)
            return ContributionOutcome(accepted=False, reason=f"instance is {current.status}", instance=current.to_dict())

        if inst.expires_at is not None and inst.expires_at < now:
            return self._reject(instance_id, "instance has expired")

        streamer_id = contribution.streamer_id or inst.streamer_id
        if inst.scope == "group":
            if not streamer_id or not any(s.streamer_id == str(streamer_id) for s in inst.snapshots):
                return self._reject(instance_id, "streamer is not part of this instance")

        if ledger.find(inst.id, (contribution.dedup_key or "").strip()[:160]) is not None:
            return self._reject(instance_id, "duplicate", duplicate=True)

        effective = self._effective_for(inst)
        limit = int(effective.max_contributions_per_user or 0)
        if limit and ledger.count_for(inst.id, contribution.contributor_id) >= limit:
            return self._reject(instance_id, "contribution limit reached")

        res = ledger.append(
            inst.id,
            contribution.contributor_id,
            contribution.amount,
            contribution.dedup_key,
            contributor_name=contribution.contributor_name,
            streamer_id=streamer_id,
        )
        if not res.created:
            return self._reject(instance_id, res.reason, duplicate=res.reason == "duplicate")

        amount = int(res.contribution.amount)
        contribution_id = int(res.contribution.id)

        if inst.status == STATUS_ARMED:
            values = {"status": STATUS_ACTIVE}
            event = db.session.get(EventDefinition, int(inst.event_id))
            if event.activation_policy == "on_first_contribution" and inst.starts_at is None:
                values["starts_at"] = now
                values["expires_at"] = now + timedelta(seconds=int(inst.duration or 0))
            Instance.query.filter(Instance.id == inst.id, Instance.status == STATUS_ARMED).update(values, synchronize_session=False)

        bumped = (
            Instance.query
            .filter(Instance.id == inst.id, Instance.status == STATUS_ACTIVE)
            .update({"current_progress": Instance.current_progress + amount}, synchronize_session=False)
        )
        if bumped != 1:
            return self._reject(instance_id, "instance is no longer accepting contributions")

        if inst.scope == "group":
            (
                InstanceStreamerSnapshot.query
                .filter_by(instance_id=inst.id, streamer_id=str(streamer_id))
                .update({"local_progress": InstanceStreamerSnapshot.local_progress + amount}, synchronize_session=False)
            )

        won = self._complete_if_reached(inst.id, now, effective.cooldown)
        db.session.commit()

        result = None
        if won:
            current_app.logger.info("instance %s completed by contribution %s", inst.id, contribution_id)
            result = self._dispatch(inst.id)

        fresh = self.get(inst.id).to_dict()
        broadcast_instance_update(fresh)
        return ContributionOutcome(
            accepted=True,
            completed=bool(won),
            contribution_id=contribution_id,
            instance=fresh,
            result=result,
        )

    def _complete_if_reached(self, instance_id: int, now: datetime, cooldown: int) -> bool:
        won = (
            Instance.query
            .filter(
                Instance.id == int(instance_id),
                Instance.status == STATUS_ACTIVE,
                Instance.current_progress >= Instance.objective_target,
            )
            .update({
                "status": STATUS_COMPLETED,
                "completed_at": now,
                "cooldown_ends_at": now + timedelta(seconds=int(cooldown)),
                "execution_status": "pending",
            }, synchronize_session=False)
        )
        return won == 1

    def force_complete(self, instance_id: int, *, now: datetime | None = None) -> Optional[ResultData]:
        """Host override: complete an open instance regardless of progress."""
        now = now or _now()
        inst = self._lock_open(instance_id, now)
        if inst is None:
            db.session.rollback()
            self.get(instance_id)
            return None
        effective = self._effective_for(inst)
        won = (
            Instance.query
            .filter(Instance.id == inst.id, Instance.status.in_(OPEN_STATUSES))
            .update({
                "status": STATUS_COMPLETED,
                "completed_at": now,
                "cooldown_ends_at": now + timedelta(seconds=int(effective.cooldown)),
                "execution_status": "pending",
            }, synchronize_session=False)
        )
        db.session.commit()
        if not won:
            return None
        current_app.logger.info("instance %s force-completed", inst.id)
        return self._dispatch(inst.id)

    def expire(self, instance_id: int, *, now: datetime | None = None) -> dict:
        """Move an overdue open instance to expired and refund its ledger in one transaction."""
        now = now or _now()
        won = (
            Instance.query
            .filter(
                Instance.id == int(instance_id),
                Instance.status.in_(OPEN_STATUSES),
                Instance.expires_at.isnot(None),
                Instance.expires_at < now,
            )
            .update({"status": STATUS_EXPIRED, "updated_at": now}, synchronize_session=False)
        )
        if not won:
            db.session.rollback()
            self.get(instance_id)
            return {"expired": False, "refunded": 0, "amount": 0}

        refund = self._refund_locked(int(instance_id), now)
        db.session.commit()
        broadcast_instance_update(self.get(instance_id).to_dict())
        current_app.logger.info(
            "instance %s expired, %s contribution(s) refunded (%s)", instance_id, refund.count, refund.amount,
        )
        issued = self.issue_provider_refunds(int(instance_id), now=now)
        return {"expired": True, "refunded": refund.count, "amount": refund.amount, **issued}

    def refund_expired(self, instance_id: int, *, now: datetime | None = None) -> dict:
        """Refund leftovers of an already expired instance."""
        now = now or _now()
        touched = (
            Instance.query
            .filter(Instance.id == int(instance_id), Instance.status == STATUS_EXPIRED)
            .update({"updated_at": now}, synchronize_session=False)
        )
        if not touched:
            db.session.rollback()
            return {"refunded": 0, "amount": 0}
        refund = self._refund_locked(int(instance_id), now)
        db.session.commit()
        issued = self.issue_provider_refunds(int(instance_id), now=now)
        return {"refunded": refund.count, "amount": refund.amount, **issued}

    def _refund_locked(self, instance_id: int, now: datetime):
        refund = ledger.refund_all(instance_id, now=now)
        if not refund.count:
            return refund

        Instance.query.filter(Instance.id == instance_id).update(
            {"current_progress": Instance.current_progress - refund.amount}, synchronize_session=False,
        )
        for streamer_id, amount in refund.by_streamer.items():
            if streamer_id is None or not amount:
                continue
            (
                InstanceStreamerSnapshot.query
                .filter_by(instance_id=instance_id, streamer_id=streamer_id)
                .update({"local_progress": InstanceStreamerSnapshot.local_progress - amount}, synchronize_session=False)
            )
        audit(
            "contributions_refunded",
            target_type="gamification_instance",
            target_id=instance_id,
            meta={"count": refund.count, "amount": refund.amount,
                  "by_streamer": {str(k): v for k, v in refund.by_streamer.items()}},
        )
        return refund

    def issue_provider_refunds(self, instance_id: int, *, now: datetime | None = None) -> dict:
        """Return refunded redemptions to viewers through the reward provider.

        Runs after the ledger commit. Each row is marked on its own, so a failed
        row is retried by the next sweep until it runs out of attempts.
        """
        issued = {"redemptions_refunded": 0, "redemptions_failed": 0}
        if self.reward_provider is None:
            return issued
        now = now or _now()
        inst = self.get(instance_id)
        rows = [
            (int(r.id), r.streamer_id, r.dedup_key, r.contributor_id)
            for r in ledger.provider_refunds_due(inst.id, max_attempts=self.refund_max_attempts)
        ]
        reward_ids = {}
        for contribution_id, streamer_id, redemption_id, contributor_id in rows:
            if not streamer_id:
                ledger.mark_provider_refund(contribution_id, "skipped", now=now)
                db.session.commit()
                continue
            if streamer_id not in reward_ids:
                override = StreamerOverride.query.filter_by(
                    campaign_id=int(inst.campaign_id), streamer_id=streamer_id, event_id=int(inst.event_id),
                ).first()
                reward_ids[streamer_id] = override.reward_id if override is not None else None
            try:
                self.reward_provider.refund_redemption(streamer_id, redemption_id, reward_id=reward_ids[streamer_id])
                ledger.mark_provider_refund(contribution_id, "refunded", now=now)
                db.session.commit()
                issued["redemptions_refunded"] += 1
            except Exception as e:
                db.session.rollback()
                issued["redemptions_failed"] += 1
                ledger.mark_provider_refund(contribution_id, "failed", now=now)
                audit(
                    "redemption_refund_failed",
                    target_type="gamification_contribution",
                    target_id=contribution_id,
                    meta={"instance_id": inst.id, "streamer_id": streamer_id, "redemption_id": redemption_id,
                          "contributor_id": contributor_id, "error": str(e)},
                    level="warning",
                )
                db.session.commit()
        if rows:
            current_app.logger.info(
                "instance %s: %s redemption(s) returned, %s failed",
                inst.id, issued["redemptions_refunded"], issued["redemptions_failed"],
            )
        return issued

    def recalculate_objective(self, instance_id: int, new_viewer_count: int, *, now: datetime | None = None) -> Optional[int]:
        """Re-scale an open individual objective when the audience moved significantly."""
        now = now or _now()
        inst = self._lock_open(instance_id, now)
        if inst is None or inst.scope != "individual":
            db.session.rollback()
            self.get(instance_id)
            return None

        effective = self._effective_for(inst)
        previous = int(inst.objective_target)
        fresh = recalculate_if_significant_change(
            inst.objective_target,
            inst.viewer_count_at_start,
            new_viewer_count,
            effective.coefficient,
            effective.minimum_objective,
            threshold=self.recalc_threshold,
        )
        if fresh is None or fresh == previous:
            db.session.rollback()
            return None

        Instance.query.filter(Instance.id == inst.id, Instance.status.in_(OPEN_STATUSES)).update(
            {"objective_target": int(fresh)}, synchronize_session=False,
        )
        won = self._complete_if_reached(inst.id, now, effective.cooldown)
        db.session.commit()
        current_app.logger.info(
            "instance %s objective %s -> %s (viewers %s -> %s)",
            inst.id, previous, fresh, inst.viewer_count_at_start, new_viewer_count,
        )
        if won:
            self._dispatch(inst.id)
        return int(fresh)

    # =====================================================
    # ACTION DISPATCH
    # =====================================================

    def _dispatch(self, instance_id: int) -> ResultData:
        """Run the completion action once, outside any instance transaction."""
        inst = self.get(instance_id)
        event = db.session.get(EventDefinition, int(inst.event_id))

        if self.executor is None:
            result = ResultData(False, error="no action executor configured")
        else:
            try:
                connection_id = self.connection_resolver(inst.campaign_id) if self.connection_resolver else None
                result = self.executor.execute(event.action_type, event.action_config, inst, connection_id)
            except Exception as e:
                current_app.logger.exception("action dispatch failed for instance %s", instance_id)
                result = ResultData(False, error=str(e))

        self._record_result(instance_id, event, result)
        return result

    def _record_result(self, instance_id: int, event: EventDefinition, result: ResultData) -> None:
        try:
            Instance.query.filter(Instance.id == int(instance_id)).update({
                "result_json": json.dumps(result.to_dict(), default=str),
                "execution_status": "executed" if result.success else "failed",
                "executed_at": _now(),
            }, synchronize_session=False)
            if not result.success:
                current_app.logger.error("action %s failed for instance %s: %s", event.action_type, instance_id, result.error)
                audit(
                    "action_execution_failed",
                    target_type="gamification_instance",
                    target_id=instance_id,
                    meta={"action_type": event.action_type, "error": result.error},
                    level="error",
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            current_app.logger.exception("could not record action result for instance %s", instance_id)

    # =====================================================
    # QUERIES
    # =====================================================

    def cooldown_status(self, campaign_id: int, event_id: int, streamer_id: str | None = None, *, now: datetime | None = None) -> dict:
        now = now or _now()
        q = Instance.query.filter(
            Instance.campaign_id == int(campaign_id),
            Instance.event_id == int(event_id),
            Instance.status == STATUS_COMPLETED,
            Instance.cooldown_ends_at.isnot(None),
            Instance.cooldown_ends_at > now,
        )
        if streamer_id is not None:
            q = q.filter(Instance.streamer_id == str(streamer_id))
        inst = q.order_by(Instance.cooldown_ends_at.desc()).first()
        if inst is None:
            return {"on_cooldown": False, "cooldown_ends_at": None, "remaining_seconds": 0}
        remaining = int((inst.cooldown_ends_at - now).total_seconds())
        return {"on_cooldown": True, "cooldown_ends_at": inst.cooldown_ends_at, "remaining_seconds": max(1, remaining)}

    def reset_cooldowns(self, campaign_id: int, streamer_id: str | None = None, *, now: datetime | None = None) -> int:
        now = now or _now()
        q = Instance.query.filter(
            Instance.campaign_id == int(campaign_id),
            Instance.status == STATUS_COMPLETED,
            Instance.cooldown_ends_at.isnot(None),
            Instance.cooldown_ends_at > now,
        )
        if streamer_id is not None:
            q = q.filter(Instance.streamer_id == str(streamer_id))
        count = q.update({"cooldown_ends_at": None}, synchronize_session=False)
        db.session.commit()
        current_app.logger.info("reset %s cooldown(s) for campaign %s streamer %s", count, campaign_id, streamer_id or "all")
        return int(count)

    def active_instances(self, campaign_id: int, *, now: datetime | None = None) -> List[Instance]:
        now = now or _now()
        return (
            Instance.query
            .filter(
                Instance.campaign_id == int(campaign_id),
                Instance.status.in_(OPEN_STATUSES),
                or_(Instance.expires_at.is_(None), Instance.expires_at >= now),
            )
            .order_by(Instance.id.asc())
            .all()
        )

    def open_instance_for(self, campaign_id: int, event_id: int, streamer_id: str | None = None, *, now: datetime | None = None) -> Optional[Instance]:
        """Pending or open instance already running for this event and scope."""
        now = now or _now()
        q = Instance.query.filter(
            Instance.campaign_id == int(campaign_id),
            Instance.event_id == int(event_id),
            Instance.status.in_((STATUS_PENDING,) + OPEN_STATUSES),
            or_(Instance.expires_at.is_(None), Instance.expires_at >= now),
        )
        if streamer_id is not None:
            q = q.filter(Instance.streamer_id == str(streamer_id))
        else:
            q = q.filter(Instance.scope == "group")
        return q.order_by(Instance.id.desc()).first()
