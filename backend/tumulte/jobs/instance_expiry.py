from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import or_

from tumulte.extensions import db
from tumulte.gamification.instances import InstanceLifecycleManager
from tumulte.models import Contribution, Instance
from tumulte.models.instance import OPEN_STATUSES, STATUS_EXPIRED
from tumulte.utils.audit import audit


def _now():
    return datetime.utcnow()


def _add_issued(summary: dict, res: dict) -> None:
    summary["redemptions_refunded"] += int(res.get("redemptions_refunded", 0))
    summary["redemptions_failed"] += int(res.get("redemptions_failed", 0))


def run_instance_expiry(manager: InstanceLifecycleManager | None = None, *, reward_provider=None,
                        limit: int = 500, now: datetime | None = None) -> dict:
    """Expire overdue open instances and refund their contributions.

    A second pass refunds expired instances that still hold active rows, which
    covers a crash between the status flip and the refund. A third pass retries
    provider-side redemption refunds that failed on an earlier run.
    """
    manager = manager or InstanceLifecycleManager(reward_provider=reward_provider)
    now = now or _now()
    summary = {
        "ok": True,
        "processed": 0,
        "expired": 0,
        "refunded": 0,
        "refunded_amount": 0,
        "healed": 0,
        "redemptions_refunded": 0,
        "redemptions_failed": 0,
        "errors": 0,
    }

    overdue = (
        Instance.query
        .filter(Instance.status.in_(OPEN_STATUSES), Instance.expires_at.isnot(None), Instance.expires_at < now)
        .order_by(Instance.expires_at.asc())
        .limit(int(limit))
        .all()
    )
    overdue_ids = [int(i.id) for i in overdue]
    audit("expiry_sweep_started", target_type="sweep", target_id="instance_expiry",
          meta={"candidates": len(overdue_ids), "at": now.isoformat()}, commit=True)

    handled = set()
    for instance_id in overdue_ids:
        summary["processed"] += 1
        handled.add(instance_id)
        try:
            res = manager.expire(instance_id, now=now)
            if res["expired"]:
                summary["expired"] += 1
                summary["refunded"] += int(res["refunded"])
                summary["refunded_amount"] += int(res["amount"])
                _add_issued(summary, res)
        except Exception:
            summary["errors"] += 1
            db.session.rollback()
            current_app.logger.exception("expiry failed for instance %s", instance_id)

    leftovers = (
        db.session.query(Instance.id)
        .join(Contribution, Contribution.instance_id == Instance.id)
        .filter(Instance.status == STATUS_EXPIRED, Contribution.refunded.is_(False))
        .distinct()
        .limit(int(limit))
        .all()
    )
    for (instance_id,) in leftovers:
        handled.add(int(instance_id))
        try:
            res = manager.refund_expired(int(instance_id), now=now)
            if res["refunded"]:
                summary["healed"] += 1
                summary["refunded"] += int(res["refunded"])
                summary["refunded_amount"] += int(res["amount"])
                _add_issued(summary, res)
        except Exception:
            summary["errors"] += 1
            db.session.rollback()
            current_app.logger.exception("self-heal refund failed for instance %s", instance_id)

    if manager.reward_provider is not None:
        owing = (
            db.session.query(Instance.id)
            .join(Contribution, Contribution.instance_id == Instance.id)
            .filter(
                Instance.status == STATUS_EXPIRED,
                Contribution.refunded.is_(True),
                or_(Contribution.provider_refund_status.is_(None), Contribution.provider_refund_status == "failed"),
                Contribution.provider_refund_attempts < manager.refund_max_attempts,
            )
            .distinct()
            .limit(int(limit))
            .all()
        )
        for (instance_id,) in owing:
            if int(instance_id) in handled:
                continue
            try:
                _add_issued(summary, manager.issue_provider_refunds(int(instance_id), now=now))
            except Exception:
                summary["errors"] += 1
                db.session.rollback()
                current_app.logger.exception("redemption refunds failed for instance %s", instance_id)

    summary["ok"] = summary["errors"] == 0
    try:
        audit("instances_expired", target_type="sweep", target_id="instance_expiry", meta=summary, commit=True)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("could not audit expiry sweep")
    return summary
