"""Append-only contribution ledger.

Mutations flush into the caller's transaction; the lifecycle manager and the
expiry sweep own the commit so ledger rows and instance progress move together.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from tumulte.extensions import db
from tumulte.models import Contribution


@dataclass
class AppendResult:
    created: bool
    contribution: Optional[Contribution] = None
    reason: str = ""


@dataclass
class RefundResult:
    count: int = 0
    amount: int = 0
    by_streamer: Dict[Optional[str], int] = field(default_factory=dict)


def find(instance_id: int, dedup_key: str) -> Contribution | None:
    return Contribution.query.filter_by(instance_id=int(instance_id), dedup_key=dedup_key).first()


def append(
    instance_id: int,
    contributor_id: str,
    amount: int,
    dedup_key: str,
    *,
    contributor_name: str | None = None,
    streamer_id: str | None = None,
) -> AppendResult:
    """Idempotent append: one row per (instance, dedup_key).

    A unique-constraint race rolls the whole session back, so callers must treat
    a ``duplicate`` result as the end of their unit of work.
    """
    key = (dedup_key or "").strip()[:160]
    if not key:
        return AppendResult(created=False, reason="missing_dedup_key")
    amt = int(amount or 0)
    if amt <= 0:
        return AppendResult(created=False, reason="invalid_amount")

    existing = find(instance_id, key)
    if existing:
        return AppendResult(created=False, contribution=existing, reason="duplicate")

    row = Contribution(
        instance_id=int(instance_id),
        streamer_id=str(streamer_id) if streamer_id is not None else None,
        contributor_id=str(contributor_id),
        contributor_name=(contributor_name or "")[:120] or None,
        amount=amt,
        dedup_key=key,
        refunded=False,
    )
    try:
        db.session.add(row)
        db.session.flush()
        return AppendResult(created=True, contribution=row)
    except IntegrityError:
        db.session.rollback()
        return AppendResult(created=False, contribution=find(instance_id, key), reason="duplicate")


def count_for(instance_id: int, contributor_id: str) -> int:
    return int(
        Contribution.query
        .filter_by(instance_id=int(instance_id), contributor_id=str(contributor_id), refunded=False)
        .count()
    )


def sum_active(instance_id: int) -> int:
    total = db.session.query(func.coalesce(func.sum(Contribution.amount), 0)).filter(
        Contribution.instance_id == int(instance_id),
        Contribution.refunded.is_(False),
    ).scalar()
    return int(total or 0)


def refund_all(instance_id: int, *, now: datetime | None = None) -> RefundResult:
    """Flip every non-refunded row of the instance. A second call finds nothing."""
    now = now or datetime.utcnow()
    rows = (
        Contribution.query
        .filter_by(instance_id=int(instance_id), refunded=False)
        .order_by(Contribution.id.asc())
        .all()
    )
    if not rows:
        return RefundResult()

    ids = [int(r.id) for r in rows]
    by_streamer: Dict[Optional[str], int] = defaultdict(int)
    for r in rows:
        by_streamer[r.streamer_id] += int(r.amount or 0)

    # Guarded on refunded=False so a concurrent refund cannot flip a row twice
    flipped = (
        Contribution.query
        .filter(Contribution.id.in_(ids), Contribution.refunded.is_(False))
        .update({"refunded": True, "refunded_at": now}, synchronize_session=False)
    )
    if flipped != len(ids):
        # Callers hold the instance lock; a partial flip means that lock was skipped.
        raise RuntimeError(f"Concurrent refund detected for instance {instance_id}")

    db.session.flush()
    return RefundResult(count=len(ids), amount=sum(by_streamer.values()), by_streamer=dict(by_streamer))


def provider_refunds_due(instance_id: int, *, max_attempts: int) -> List[Contribution]:
    """Refunded rows whose redemption has not been returned through the provider yet."""
    return (
        Contribution.query
        .filter(
            Contribution.instance_id == int(instance_id),
            Contribution.refunded.is_(True),
            or_(Contribution.provider_refund_status.is_(None), Contribution.provider_refund_status == "failed"),
            Contribution.provider_refund_attempts < int(max_attempts),
        )
        .order_by(Contribution.id.asc())
        .all()
    )


def mark_provider_refund(contribution_id: int, status: str, *, now: datetime | None = None) -> None:
    values = {
        "provider_refund_status": status,
        "provider_refund_attempts": Contribution.provider_refund_attempts + 1,
    }
    if status == "refunded":
        values["provider_refunded_at"] = now or datetime.utcnow()
    Contribution.query.filter(Contribution.id == int(contribution_id)).update(values, synchronize_session=False)


def top_contributors(instance_id: int, limit: int = 10) -> List[dict]:
    rows = (
        db.session.query(
            Contribution.contributor_id,
            func.max(Contribution.contributor_name),
            func.sum(Contribution.amount).label("total"),
            func.count(Contribution.id),
        )
        .filter(Contribution.instance_id == int(instance_id), Contribution.refunded.is_(False))
        .group_by(Contribution.contributor_id)
        .order_by(func.sum(Contribution.amount).desc(), Contribution.contributor_id.asc())
        .limit(int(limit))
        .all()
    )
    return [
        {
            "contributor_id": cid,
            "contributor_name": name or "",
            "amount": int(total or 0),
            "contributions": int(count or 0),
        }
        for cid, name, total, count in rows
    ]


def by_scope(instance_id: int) -> Dict[Optional[str], int]:
    """Active amount per streamer for group breakdowns."""
    rows = (
        db.session.query(Contribution.streamer_id, func.sum(Contribution.amount))
        .filter(Contribution.instance_id == int(instance_id), Contribution.refunded.is_(False))
        .group_by(Contribution.streamer_id)
        .all()
    )
    return {sid: int(total or 0) for sid, total in rows}


def totals(instance_id: int) -> dict:
    base = Contribution.query.filter_by(instance_id=int(instance_id))
    active = base.filter_by(refunded=False)
    return {
        "contributions": int(base.count()),
        "active_contributions": int(active.count()),
        "contributors": int(active.with_entities(func.count(func.distinct(Contribution.contributor_id))).scalar() or 0),
        "active_amount": sum_active(instance_id),
        "refunded_amount": int(
            db.session.query(func.coalesce(func.sum(Contribution.amount), 0))
            .filter(Contribution.instance_id == int(instance_id), Contribution.refunded.is_(True))
            .scalar() or 0
        ),
    }
