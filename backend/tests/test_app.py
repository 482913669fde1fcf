"""Tests for the application factory and scheduler wiring."""

from tumulte.jobs.scheduler import scheduler, start_scheduler, stop_scheduler


def test_health(app):
    res = app.test_client().get("/api/health")
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    assert body["db"] == "ok"


def test_scheduler_registers_sweeps(app, provider):
    try:
        start_scheduler(app, reward_provider=provider)
        assert scheduler.get_job("gamification_instance_expiry") is not None
        assert scheduler.get_job("gamification_reward_reconciliation") is not None
    finally:
        scheduler.remove_all_jobs()
        stop_scheduler()
