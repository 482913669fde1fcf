from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_

from tumulte.extensions import db
from tumulte.models import StreamerOverride
from tumulte.utils.audit import audit


TARGET = "streamer_gamification_config"
MAX_BACKOFF_HOURS = 24


def _now():
    return datetime.utcnow()


def deletion_backoff(retry_count: int) -> timedelta:
    """1h, 2h, 4h ... capped at a day."""
    return timedelta(hours=min(2 ** max(0, int(retry_count) - 1), MAX_BACKOFF_HOURS))


def _linked_pages(page_size: int, now: datetime):
    """Yield linked overrides page by page, keyed on id so every row is visited once."""
    last_id = 0
    while True:
        page = (
            StreamerOverride.query
            .filter(
                StreamerOverride.id > last_id,
                StreamerOverride.reward_id.isnot(None),
                or_(StreamerOverride.next_deletion_retry_at.is_(None), StreamerOverride.next_deletion_retry_at <= now),
            )
            .order_by(StreamerOverride.id.asc())
            .limit(int(page_size))
            .all()
        )
        if not page:
            return
        last_id = int(page[-1].id)
        yield [(int(o.id), o.streamer_id, o.reward_id, o.reward_state, int(o.deletion_retry_count or 0)) for o in page]


def _clean_orphan(override_id: int, streamer_id: str, reward_id: str, local_state: str, now: datetime, summary: dict):
    summary["orphans"] += 1
    meta = {"reward_id": reward_id, "streamer_id": streamer_id, "local_state": local_state}
    try:
        audit("orphan_detected", target_type=TARGET, target_id=override_id, meta=meta, level="warning")
        row = db.session.get(StreamerOverride, override_id)
        if row is not None and row.reward_id == reward_id:
            row.clear_reward()
            row.last_reconciled_at = now
        audit("orphan_cleaned", target_type=TARGET, target_id=override_id, meta=meta)
        db.session.commit()
        summary["cleaned"] += 1
    except Exception as e:
        db.session.rollback()
        summary["cleanup_failed"] += 1
        try:
            audit("orphan_cleanup_failed", target_type=TARGET, target_id=override_id,
                  meta=dict(meta, error=str(e)), level="error", commit=True)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("could not audit orphan cleanup failure for %s", override_id)


def _delete_leftover(provider, override_id: int, streamer_id: str, reward_id: str, local_state: str,
                     retry_count: int, now: datetime, summary: dict):
    """Delete a reward that still exists remotely after it was retired locally."""
    summary["leftovers"] += 1
    meta = {"reward_id": reward_id, "streamer_id": streamer_id, "local_state": local_state}
    try:
        provider.set_state(streamer_id, reward_id, "deleted")
    except Exception as e:
        db.session.rollback()
        summary["leftovers_failed"] += 1
        attempts = retry_count + 1
        retry_at = now + deletion_backoff(attempts)
        StreamerOverride.query.filter_by(id=override_id).update(
            {"deletion_retry_count": attempts, "next_deletion_retry_at": retry_at}, synchronize_session=False,
        )
        audit("remote_reward_delete_failed", target_type=TARGET, target_id=override_id,
              meta=dict(meta, error=str(e), attempts=attempts, next_retry_at=retry_at.isoformat()), level="warning")
        db.session.commit()
        return

    row = db.session.get(StreamerOverride, override_id)
    if row is not None and row.reward_id == reward_id:
        row.clear_reward("deleted")
        row.last_reconciled_at = now
    audit("remote_reward_deleted", target_type=TARGET, target_id=override_id, meta=meta)
    db.session.commit()
    summary["leftovers_deleted"] += 1


def reconcile_rewards(provider, *, limit: int = 500, now: datetime | None = None) -> dict:
    """Compare every linked reward with the provider.

    Two divergences are repaired. A reward the provider no longer knows while
    we think it is active is an orphan and its linkage is cleared. A reward the
    provider still holds after it was retired locally is deleted remotely,
    with exponential backoff between failed attempts. Anything else is only
    recorded. ``limit`` is the page size; all pages are visited.
    """
    now = now or _now()
    summary = {
        "checked": 0,
        "orphans": 0,
        "cleaned": 0,
        "cleanup_failed": 0,
        "leftovers": 0,
        "leftovers_deleted": 0,
        "leftovers_failed": 0,
        "stale_cleared": 0,
        "mismatches": 0,
        "check_failed": 0,
    }
    audit("reconciliation_started", target_type="sweep", target_id="reward_reconciler",
          meta={"page_size": int(limit), "at": now.isoformat()}, commit=True)

    for page in _linked_pages(limit, now):
        for override_id, streamer_id, reward_id, local_state, retry_count in page:
            summary["checked"] += 1
            try:
                remote_state = provider.get_state(streamer_id, reward_id)
            except Exception as e:
                summary["check_failed"] += 1
                db.session.rollback()
                audit("reward_check_failed", target_type=TARGET, target_id=override_id,
                      meta={"reward_id": reward_id, "streamer_id": streamer_id, "error": str(e)},
                      level="warning", commit=True)
                continue

            if remote_state is None and local_state == "active":
                _clean_orphan(override_id, streamer_id, reward_id, local_state, now, summary)
                continue

            if local_state in ("deleted", "not_created"):
                if remote_state is None:
                    # Already gone remotely; drop the stale id
                    row = db.session.get(StreamerOverride, override_id)
                    if row is not None and row.reward_id == reward_id:
                        row.clear_reward(local_state)
                        row.last_reconciled_at = now
                    db.session.commit()
                    summary["stale_cleared"] += 1
                    continue
                try:
                    _delete_leftover(provider, override_id, streamer_id, reward_id, local_state, retry_count, now, summary)
                except Exception:
                    db.session.rollback()
                    current_app.logger.exception("leftover reward cleanup failed for %s", override_id)
                continue

            if remote_state != local_state:
                summary["mismatches"] += 1
                audit("reward_state_mismatch", target_type=TARGET, target_id=override_id,
                      meta={"reward_id": reward_id, "streamer_id": streamer_id, "local_state": local_state,
                            "remote_state": remote_state}, level="warning", commit=True)
                continue

            try:
                StreamerOverride.query.filter_by(id=override_id).update({"last_reconciled_at": now}, synchronize_session=False)
                db.session.commit()
            except Exception:
                db.session.rollback()
                current_app.logger.exception("could not stamp reconciliation for %s", override_id)

    audit("reconciliation_completed", target_type="sweep", target_id="reward_reconciler", meta=summary, commit=True)
    return summary
