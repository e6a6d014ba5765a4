"""
APScheduler 调度器

进程内单例；只承载轻量的轮询/维护任务，任务本体在 app.jobs.export_jobs
"""

import logging
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None

# 错过的触发合并为一次；同一任务不并发
JOB_DEFAULTS = {"coalesce": True, "max_instances": 1, "misfire_grace_time": 60}


def _timezone() -> ZoneInfo:
    return ZoneInfo(settings.SCHEDULER_TIMEZONE)


def get_scheduler() -> AsyncIOScheduler:
    if _scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")
    return _scheduler


def init_scheduler() -> AsyncIOScheduler:
    """创建调度器（重复调用返回已有实例）"""
    global _scheduler
    if _scheduler is not None:
        logger.warning("Scheduler already initialized")
        return _scheduler

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults=dict(JOB_DEFAULTS),
        timezone=_timezone(),
    )
    logger.info(f"Scheduler initialized (timezone={settings.SCHEDULER_TIMEZONE})")
    return _scheduler


def start_scheduler() -> None:
    scheduler = get_scheduler()
    if scheduler.running:
        logger.warning("Scheduler already running")
        return
    scheduler.start()
    logger.info("Scheduler started")


def shutdown_scheduler(wait: bool = True) -> None:
    """停止并丢弃调度器实例；下次启动需重新 init"""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=wait)
        logger.info("Scheduler shut down")
    _scheduler = None


def cron_trigger(cron_expr: str) -> CronTrigger:
    """Linux crontab 5 段表达式：minute hour day month day_of_week"""
    if not cron_expr or len(cron_expr.split()) != 5:
        raise ValueError(f"cron expression must have 5 fields (min hour day month dow): {cron_expr!r}")
    return CronTrigger.from_crontab(cron_expr.strip(), timezone=_timezone())


def interval_trigger(interval_ms: int) -> IntervalTrigger:
    if interval_ms <= 0:
        raise ValueError(f"interval must be positive: {interval_ms}ms")
    return IntervalTrigger(seconds=interval_ms / 1000.0, timezone=_timezone())


def add_job(func, trigger, job_id: str, name: str) -> None:
    """注册任务；同 id 的任务会被替换"""
    get_scheduler().add_job(func, trigger=trigger, id=job_id, name=name, replace_existing=True)
    logger.info(f"Job added: {name} (ID: {job_id}, trigger: {trigger})")

