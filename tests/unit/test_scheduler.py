import pytest

from app.core.config import settings
from app.jobs import scheduler as scheduler_module
from app.jobs.export_jobs import register_all_jobs


@pytest.fixture
def fresh_scheduler():
    sched = scheduler_module.init_scheduler()
    yield sched
    scheduler_module.shutdown_scheduler(wait=False)


@pytest.mark.parametrize("expr", ["", "* * *", "0 0 * * * *"])
def test_cron_trigger_requires_five_fields(expr):
    with pytest.raises(ValueError):
        scheduler_module.cron_trigger(expr)


def test_interval_trigger_rejects_non_positive():
    with pytest.raises(ValueError):
        scheduler_module.interval_trigger(0)


def test_get_scheduler_before_init():
    scheduler_module.shutdown_scheduler()
    with pytest.raises(RuntimeError):
        scheduler_module.get_scheduler()


def test_register_all_jobs(fresh_scheduler):
    register_all_jobs(fresh_scheduler)
    ids = {job.id for job in fresh_scheduler.get_jobs()}
    assert ids == {"export_worker_tick", "prune_export_performance", "validate_daily_equity"}


def test_disabled_worker_and_perf_are_not_registered(fresh_scheduler, monkeypatch):
    monkeypatch.setattr(settings, "EXPORT_WORKER_ENABLED", False)
    monkeypatch.setattr(settings, "EXPORT_PERF_ENABLED", False)
    register_all_jobs(fresh_scheduler)
    assert [job.id for job in fresh_scheduler.get_jobs()] == ["validate_daily_equity"]
