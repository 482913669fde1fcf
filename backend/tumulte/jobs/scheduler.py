from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tumulte.jobs.instance_expiry import run_instance_expiry
from tumulte.jobs.reward_reconciler import reconcile_rewards


# =====================================================
# SCHEDULER
# =====================================================

# Single process only: a second replica would run the same sweeps concurrently.
scheduler = BackgroundScheduler()


def _in_context(app, fn, *args, **kwargs):
    def run():
        with app.app_context():
            try:
                summary = fn(*args, **kwargs)
                app.logger.info("%s: %s", fn.__name__, summary)
            except Exception:
                app.logger.exception("%s failed", fn.__name__)
    run.__name__ = fn.__name__
    return run


# =====================================================
# STARTER
# =====================================================

def start_scheduler(app, reward_provider=None) -> BackgroundScheduler:
    if scheduler.running:
        app.logger.warning("gamification scheduler already running")
        return scheduler

    limit = int(app.config.get("GAMIFICATION_SWEEP_LIMIT", 500))
    provider = reward_provider or app.config.get("GAMIFICATION_REWARD_PROVIDER")

    scheduler.add_job(
        _in_context(app, run_instance_expiry, reward_provider=provider, limit=limit),
        IntervalTrigger(seconds=int(app.config.get("GAMIFICATION_EXPIRY_INTERVAL_SECONDS", 60))),
        id="gamification_instance_expiry",
        name="Expire overdue gamification instances",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    if provider is not None:
        scheduler.add_job(
            _in_context(app, reconcile_rewards, provider, limit=limit),
            IntervalTrigger(seconds=int(app.config.get("GAMIFICATION_RECONCILE_INTERVAL_SECONDS", 300))),
            id="gamification_reward_reconciliation",
            name="Reconcile channel point rewards",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
    else:
        app.logger.info("no reward provider configured; reward reconciliation disabled")

    scheduler.start()
    app.logger.info("gamification scheduler started")
    return scheduler


def stop_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
