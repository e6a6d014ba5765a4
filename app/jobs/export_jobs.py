"""
定时任务

3个定时任务:
1. 导出 Worker 轮询 - 每 EXPORT_WORKER_INTERVAL_MS 毫秒
2. 导出性能数据清理 - EXPORT_PERF_PRUNE_CRON
3. 日权益一致性校验 - EQUITY_VALIDATION_CRON
"""

import logging
from datetime import datetime

from app.core.config import settings
from app.models.db import session_factory
from app.services.daily_equity_service import validate_all_daily_equity
from app.services.export_job_service import ExportJobService, ExportWorker

logger = logging.getLogger(__name__)

export_worker = ExportWorker()


async def export_worker_tick_job():
    """任务1: 导出 Worker 轮询（max_instances=1，同一时刻只有一个 tick）"""
    try:
        processed = await export_worker.tick()
        if processed:
            logger.debug(f"Export worker tick processed {processed} jobs")
    except Exception as e:
        logger.error(f"Export worker tick failed: {str(e)}", exc_info=True)


async def prune_export_performance_job():
    """任务2: 清理超过保留期的导出性能数据"""
    try:
        async with session_factory()() as session:
            removed = await ExportJobService(session).prune_performance()
        logger.info(f"Export perf prune completed: removed={removed}")
    except Exception as e:
        logger.error(f"Export perf prune job failed: {str(e)}", exc_info=True)


async def validate_daily_equity_job():
    """任务3: 全量校验日权益序列，只报告不修复"""
    try:
        start_time = datetime.now()
        reports = await validate_all_daily_equity()
        mismatched = [r for r in reports if not r["ok"]]
        for report in mismatched:
            logger.warning(
                f"Daily equity mismatch: user={report['user_id']} "
                f"discrepancies={len(report['discrepancies'])} "
                f"missing={len(report['missing_days'])} extra={len(report['extra_days'])}"
            )
        elapsed = (datetime.now() - start_time).total_seconds()
        logger.info(f"Daily equity validation job completed: users={len(reports)}, took {elapsed:.2f}s")
    except Exception as e:
        logger.error(f"Daily equity validation job failed: {str(e)}", exc_info=True)


def register_all_jobs(scheduler):
    """注册所有定时任务到调度器

    Args:
        scheduler: APScheduler实例
    """
    from app.jobs.scheduler import add_job, cron_trigger, interval_trigger

    if settings.EXPORT_WORKER_ENABLED:
        add_job(
            export_worker_tick_job,
            interval_trigger(settings.EXPORT_WORKER_INTERVAL_MS),
            job_id="export_worker_tick",
            name="导出任务轮询",
        )
    else:
        logger.info("Export worker disabled (EXPORT_WORKER_ENABLED=false)")

    if settings.EXPORT_PERF_ENABLED:
        add_job(
            prune_export_performance_job,
            cron_trigger(settings.EXPORT_PERF_PRUNE_CRON),
            job_id="prune_export_performance",
            name="清理导出性能数据",
        )

    add_job(
        validate_daily_equity_job,
        cron_trigger(settings.EQUITY_VALIDATION_CRON),
        job_id="validate_daily_equity",
        name="校验日权益",
    )

    logger.info(f"Registered {len(scheduler.get_jobs())} scheduled jobs")
