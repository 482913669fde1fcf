from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from tumulte.extensions import db
from tumulte.gamification.errors import GamificationError, RewardProviderError
from tumulte.gamification.instances import ContributionEvent, ContributionOutcome, InstanceLifecycleManager
from tumulte.gamification.triggers import evaluate_event
from tumulte.models import CampaignOverride, EventDefinition, Instance, StreamerOverride
from tumulte.models.instance import OPEN_STATUSES, STATUS_PENDING
from tumulte.utils.audit import audit
from tumulte.utils.config_resolver import EffectiveConfig


@dataclass
class TriggerOutcome:
    triggered: bool
    reason: str = ""
    instance: Optional[Instance] = None
    cooldown_remaining_seconds: int = 0


def _now():
    return datetime.utcnow()


def _streamer_id(s) -> str:
    return str(s.get("streamer_id") if isinstance(s, dict) else s.streamer_id)


def get_or_create_streamer_override(campaign_id: int, streamer_id: str, event_id: int) -> StreamerOverride:
    row = StreamerOverride.query.filter_by(campaign_id=int(campaign_id), streamer_id=str(streamer_id), event_id=int(event_id)).first()
    if row:
        return row
    row = StreamerOverride(campaign_id=int(campaign_id), streamer_id=str(streamer_id), event_id=int(event_id))
    try:
        db.session.add(row)
        db.session.commit()
        return row
    except IntegrityError:
        db.session.rollback()
        row = StreamerOverride.query.filter_by(campaign_id=int(campaign_id), streamer_id=str(streamer_id), event_id=int(event_id)).first()
        if row:
            return row
        raise


class GamificationService:
    """Entry points for trigger events and contribution events."""

    def __init__(self, manager: InstanceLifecycleManager, reward_provider=None):
        self.manager = manager
        self.reward_provider = reward_provider

    def _event(self, event_or_slug) -> EventDefinition:
        if isinstance(event_or_slug, EventDefinition):
            return event_or_slug
        event = EventDefinition.query.filter_by(slug=str(event_or_slug)).first()
        if event is None:
            raise GamificationError(f"Unknown gamification event: {event_or_slug}")
        return event

    def on_trigger_event(
        self,
        campaign_id: int,
        event_or_slug,
        payload,
        *,
        streamer_id: str | None = None,
        viewer_count: int = 0,
        streamers: Iterable | None = None,
        now: datetime | None = None,
    ) -> TriggerOutcome:
        """Evaluate a domain event and start an instance when it matches.

        Individual events need ``streamer_id`` and ``viewer_count``; group
        events take ``streamers`` as {streamer_id, streamer_name, viewer_count}.
        """
        now = now or _now()
        event = self._event(event_or_slug)
        individual = event.scope == "individual"
        if individual and not streamer_id:
            return TriggerOutcome(False, reason="individual event needs a streamer")

        effective = self.manager.effective_config(event, campaign_id, streamer_id if individual else None)
        if not effective.enabled:
            return TriggerOutcome(False, reason="event disabled")

        cooldown = self.manager.cooldown_status(campaign_id, event.id, streamer_id if individual else None, now=now)
        result = evaluate_event(event, payload, cooldown_ends_at=cooldown["cooldown_ends_at"], now=now)
        if not result.should_trigger:
            return TriggerOutcome(False, reason=result.reason, cooldown_remaining_seconds=result.cooldown_remaining_seconds)

        running = self.manager.open_instance_for(campaign_id, event.id, streamer_id if individual else None, now=now)
        if running is not None:
            return TriggerOutcome(False, reason="instance already running", instance=running)

        if individual:
            inst = self.manager.create_individual(
                event, campaign_id, streamer_id, viewer_count, effective=effective, trigger_data=result.trigger_data,
            )
        else:
            taking_part = [
                s for s in (streamers or [])
                if self.manager.effective_config(event, campaign_id, _streamer_id(s)).enabled
            ]
            if not taking_part:
                return TriggerOutcome(False, reason="event disabled")
            inst = self.manager.create_group(
                event, campaign_id, taking_part, effective=effective, trigger_data=result.trigger_data,
            )

        if not self.provision(inst.id, now=now):
            return TriggerOutcome(True, reason="reward provisioning pending", instance=inst)
        return TriggerOutcome(True, reason="armed", instance=self.manager.get(inst.id))

    def provision(self, instance_id: int, *, now: datetime | None = None) -> bool:
        """Ensure rewards exist for every streamer of a pending instance, then arm it.

        Returns False when provisioning failed; the instance stays pending and
        this call can be retried.
        """
        inst = self.manager.get(instance_id)
        if inst.status != STATUS_PENDING:
            return inst.status in OPEN_STATUSES
        event = db.session.get(EventDefinition, int(inst.event_id))

        if self.reward_provider is not None:
            streamer_ids = [inst.streamer_id] if inst.scope == "individual" else [s.streamer_id for s in inst.snapshots]
            for sid in streamer_ids:
                effective = self.manager.effective_config(event, inst.campaign_id, sid)
                if not effective.enabled:
                    current_app.logger.info("streamer %s opted out of event %s; no reward", sid, event.slug)
                    continue
                try:
                    self.ensure_reward(event, inst.campaign_id, sid, effective)
                except RewardProviderError as e:
                    current_app.logger.warning(
                        "reward provisioning failed for instance %s streamer %s: %s", inst.id, sid, e,
                    )
                    return False

        self.manager.arm(inst.id, now=now)
        return True

    def ensure_reward(self, event: EventDefinition, campaign_id: int, streamer_id: str, effective: EffectiveConfig) -> StreamerOverride:
        override = get_or_create_streamer_override(campaign_id, streamer_id, event.id)
        if override.reward_id and override.reward_state == "active":
            return override

        reward_id = self.reward_provider.create_reward(streamer_id, event.name, effective.cost, color=event.reward_color)
        override.reward_id = str(reward_id)
        override.reward_state = "active"
        db.session.commit()
        current_app.logger.info("reward %s ready for streamer %s event %s", reward_id, streamer_id, event.slug)
        return override

    def instance_for_reward(self, streamer_id: str, reward_id: str, *, now: datetime | None = None) -> Optional[Instance]:
        """Open instance a channel-points redemption should feed."""
        override = StreamerOverride.query.filter_by(streamer_id=str(streamer_id), reward_id=str(reward_id)).first()
        if override is None:
            return None
        inst = self.manager.open_instance_for(override.campaign_id, override.event_id, streamer_id, now=now)
        if inst is None:
            # Group instances carry no streamer on the row itself
            inst = self.manager.open_instance_for(override.campaign_id, override.event_id, None, now=now)
        if inst is None or not inst.is_open(now):
            return None
        return inst

    # =====================================================
    # REWARD MANAGEMENT
    # =====================================================

    def _override(self, campaign_id: int, streamer_id: str, event_id: int) -> Optional[StreamerOverride]:
        return StreamerOverride.query.filter_by(
            campaign_id=int(campaign_id), streamer_id=str(streamer_id), event_id=int(event_id),
        ).first()

    def _move_reward(self, override: StreamerOverride, from_state: str, to_state: str) -> bool:
        """Pause or resume the linked reward. Provider failures are audited and leave the state as is."""
        if self.reward_provider is None or not override.reward_id or override.reward_state != from_state:
            return False
        try:
            self.reward_provider.set_state(override.streamer_id, override.reward_id, to_state)
        except Exception as e:
            db.session.rollback()
            audit("reward_state_change_failed", target_type="streamer_gamification_config", target_id=override.id,
                  meta={"reward_id": override.reward_id, "streamer_id": override.streamer_id,
                        "to_state": to_state, "error": str(e)}, level="warning", commit=True)
            return False
        override.reward_state = to_state
        db.session.commit()
        current_app.logger.info("reward %s %s for streamer %s", override.reward_id, to_state, override.streamer_id)
        return True

    def disable_for_streamer(self, campaign_id: int, streamer_id: str, event_id: int) -> Optional[StreamerOverride]:
        """Opt a streamer out and pause their reward; the reward id is kept for re-enabling."""
        override = self._override(campaign_id, streamer_id, event_id)
        if override is None:
            return None
        override.is_enabled = False
        db.session.commit()
        self._move_reward(override, "active", "paused")
        return override

    def enable_for_streamer(self, campaign_id: int, streamer_id: str, event_id: int) -> StreamerOverride:
        override = get_or_create_streamer_override(campaign_id, streamer_id, event_id)
        override.is_enabled = True
        db.session.commit()
        self._move_reward(override, "paused", "active")
        return override

    def _set_campaign_enabled(self, campaign_id: int, event_id: int, enabled: bool) -> CampaignOverride:
        row = CampaignOverride.query.filter_by(campaign_id=int(campaign_id), event_id=int(event_id)).first()
        if row is None:
            row = CampaignOverride(campaign_id=int(campaign_id), event_id=int(event_id))
            db.session.add(row)
        row.is_enabled = bool(enabled)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            row = CampaignOverride.query.filter_by(campaign_id=int(campaign_id), event_id=int(event_id)).one()
            row.is_enabled = bool(enabled)
            db.session.commit()
        return row

    def disable_for_campaign(self, campaign_id: int, event_id: int) -> dict:
        """Host switch-off: disable the event and pause every active reward of the campaign."""
        self._set_campaign_enabled(campaign_id, event_id, False)
        overrides = (
            StreamerOverride.query
            .filter_by(campaign_id=int(campaign_id), event_id=int(event_id), reward_state="active")
            .filter(StreamerOverride.reward_id.isnot(None))
            .order_by(StreamerOverride.id.asc())
            .all()
        )
        summary = {"paused": 0, "failed": 0}
        for override in overrides:
            if self._move_reward(override, "active", "paused"):
                summary["paused"] += 1
            else:
                summary["failed"] += 1
        audit("event_disabled_for_campaign", target_type="campaign_gamification_config",
              target_id=f"{campaign_id}:{event_id}", meta=summary, commit=True)
        return summary

    def enable_for_campaign(self, campaign_id: int, event_id: int) -> dict:
        """Re-enable the event and resume paused rewards of streamers still opted in."""
        self._set_campaign_enabled(campaign_id, event_id, True)
        overrides = (
            StreamerOverride.query
            .filter_by(campaign_id=int(campaign_id), event_id=int(event_id), reward_state="paused", is_enabled=True)
            .filter(StreamerOverride.reward_id.isnot(None))
            .order_by(StreamerOverride.id.asc())
            .all()
        )
        summary = {"resumed": 0, "failed": 0}
        for override in overrides:
            if self._move_reward(override, "paused", "active"):
                summary["resumed"] += 1
            else:
                summary["failed"] += 1
        audit("event_enabled_for_campaign", target_type="campaign_gamification_config",
              target_id=f"{campaign_id}:{event_id}", meta=summary, commit=True)
        return summary

    def update_cost(self, campaign_id: int, streamer_id: str, event_id: int, cost: int) -> Optional[StreamerOverride]:
        """Store a streamer cost override and re-price the live reward.

        A provider failure is raised after the override is saved; the next
        provisioning uses the stored cost either way.
        """
        override = self._override(campaign_id, streamer_id, event_id)
        if override is None:
            return None
        override.cost_override = max(1, int(cost))
        db.session.commit()
        if self.reward_provider is not None and override.reward_id and override.reward_state == "active":
            self.reward_provider.update_reward(override.streamer_id, override.reward_id, cost=override.cost_override)
            current_app.logger.info("reward %s re-priced to %s", override.reward_id, override.cost_override)
        return override

    def delete_reward(self, campaign_id: int, streamer_id: str, event_id: int, *, now: datetime | None = None) -> Optional[StreamerOverride]:
        """Delete the streamer's reward. A failed deletion is left to the reconciler."""
        now = now or _now()
        override = self._override(campaign_id, streamer_id, event_id)
        if override is None or not override.reward_id:
            return override
        if self.reward_provider is not None:
            try:
                self.reward_provider.set_state(override.streamer_id, override.reward_id, "deleted")
            except Exception as e:
                db.session.rollback()
                override.reward_state = "deleted"
                override.next_deletion_retry_at = now
                audit("reward_delete_failed", target_type="streamer_gamification_config", target_id=override.id,
                      meta={"reward_id": override.reward_id, "streamer_id": override.streamer_id, "error": str(e)},
                      level="warning")
                db.session.commit()
                return override
        override.clear_reward("deleted")
        db.session.commit()
        current_app.logger.info("reward deleted for streamer %s event %s", streamer_id, event_id)
        return override

    def on_contribution(self, contribution: ContributionEvent, *, now: datetime | None = None) -> ContributionOutcome:
        return self.manager.contribute(contribution.instance_id, contribution, now=now)
