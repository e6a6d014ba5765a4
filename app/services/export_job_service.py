"""导出任务队列与 Worker

状态: queued -> running -> completed | failed
- 非内存超限的构建异常在重试预算内回到 queued（attempt_count + 1，指数退避写入 next_attempt_at）
- 内存软上限超限直接终态失败，不重试
- 每个 tick 先回收超时的 running 任务，再按创建时间处理一批可执行的 queued 任务
"""
from __future__ import annotations

import base64
import json
import logging
import resource
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    DownloadTokenConsumedError,
    ExportNotReadyError,
    ExportRateLimitError,
    MemorySoftLimitError,
    NotFoundError,
)
from app.core.observability import capture_exception, run_in_span
from app.core.timeutil import utcnow
from app.models.db import session_factory
from app.models.export_job import ExportJob, ExportJobPerformance, ExportJobStatus
from app.services.download_token import new_token_expiry, verify_download_token
from app.services.export_builders import ExportBuilder, ExportPayload, validate_export_request

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (ExportJobStatus.QUEUED.value, ExportJobStatus.RUNNING.value)


def compute_backoff_ms(attempt: int) -> int:
    """min(上限, base * 2^attempt)"""
    return min(settings.EXPORT_BACKOFF_MAX_MS, settings.EXPORT_BACKOFF_BASE_MS * (2 ** attempt))


def memory_soft_limit_bytes() -> int:
    return int(settings.EXPORT_MEMORY_SOFT_LIMIT_MB * 1024 * 1024)


def _rss_kb() -> int:
    return int(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)


class WorkerMetrics:
    """进程内 Worker 指标"""

    def __init__(self, window: int = 20):
        self.processed = 0
        self.failed = 0
        self.retried = 0
        self.running = 0
        self._durations = deque(maxlen=window)

    def record_duration(self, duration_ms: float) -> None:
        self._durations.append(duration_ms)

    def snapshot(self) -> dict:
        avg = sum(self._durations) / len(self._durations) if self._durations else 0.0
        return {
            "processed": self.processed,
            "failed": self.failed,
            "retried": self.retried,
            "running": self.running,
            "avg_duration_ms": round(avg, 1),
            "samples": len(self._durations),
        }

    def reset(self) -> None:
        self.__init__(self._durations.maxlen)


worker_metrics = WorkerMetrics()


@dataclass
class StreamStats:
    streamed: bool = False
    chunks: int = 0
    bytes: int = 0
    avg_chunk_ms: Optional[int] = None
    avg_chunk_bytes: Optional[int] = None


async def consume_payload(payload: ExportPayload, limit_bytes: int) -> Tuple[bytes, StreamStats]:
    """把构建结果变成字节；流式结果逐块累加并在每块检查内存软上限"""
    if not payload.streamed:
        data = payload.data
        if isinstance(data, str):
            data = data.encode("utf-8")
        return data, StreamStats()

    stream: AsyncIterator[str] = payload.data
    parts: List[bytes] = []
    stats = StreamStats(streamed=True)
    chunk_started = time.perf_counter()
    chunk_ms_total = 0.0
    try:
        async for chunk in stream:
            chunk_ms_total += (time.perf_counter() - chunk_started) * 1000
            encoded = chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)
            stats.chunks += 1
            stats.bytes += len(encoded)
            if stats.bytes > limit_bytes:
                raise MemorySoftLimitError(
                    f"Export exceeded memory soft limit ({stats.bytes} bytes > {limit_bytes} bytes)"
                )
            parts.append(encoded)
            chunk_started = time.perf_counter()
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()
    if stats.chunks:
        stats.avg_chunk_ms = int(chunk_ms_total / stats.chunks)
        stats.avg_chunk_bytes = int(stats.bytes / stats.chunks)
    return b"".join(parts), stats


class ExportJobService:
    """面向 HTTP 层的任务操作（所有查询都按 job_id + user_id 限定）"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def count_active(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count(ExportJob.id)).where(
                ExportJob.user_id == user_id, ExportJob.status.in_(ACTIVE_STATUSES)
            )
        )
        return int(result.scalar() or 0)

    async def create_job(
        self,
        user_id: str,
        export_type: str,
        export_format: str,
        params: Optional[dict] = None,
        request_id: Optional[str] = None,
    ) -> ExportJob:
        normalized = validate_export_request(export_type, export_format, params)
        active = await self.count_active(user_id)
        if active >= settings.EXPORT_MAX_ACTIVE_JOBS:
            raise ExportRateLimitError(
                f"Too many active export jobs ({active}/{settings.EXPORT_MAX_ACTIVE_JOBS})"
            )
        now = utcnow()
        job = ExportJob(
            user_id=user_id,
            type=export_type,
            format=export_format,
            params_json=json.dumps(normalized) if normalized else None,
            status=ExportJobStatus.QUEUED.value,
            attempt_count=0,
            request_id=request_id,
            created_at=now,
            download_token_expires_at=new_token_expiry(now),
        )
        self.session.add(job)
        await self.session.commit()
        await self.session.refresh(job)
        logger.info(
            f"Export job queued: id={job.id} user={user_id} type={export_type} format={export_format} request={request_id}"
        )
        return job

    async def get_job(self, user_id: str, job_id: str) -> ExportJob:
        result = await self.session.execute(
            select(ExportJob).where(ExportJob.id == job_id, ExportJob.user_id == user_id)
        )
        job = result.scalars().first()
        if job is None:
            raise NotFoundError("Export job not found")
        return job

    async def list_jobs(self, user_id: str, request_id: Optional[str] = None, limit: int = 50) -> List[ExportJob]:
        stmt = select(ExportJob).where(ExportJob.user_id == user_id)
        if request_id:
            stmt = stmt.where(ExportJob.request_id == request_id)
        stmt = stmt.order_by(ExportJob.created_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def refresh_token(self, user_id: str, job_id: str) -> ExportJob:
        """为已完成任务重新签发令牌（新的过期时间，清除已使用标记）"""
        job = await self.get_job(user_id, job_id)
        if job.status != ExportJobStatus.COMPLETED.value:
            raise ExportNotReadyError(f"Export job is {job.status}")
        job.download_token_expires_at = new_token_expiry()
        job.download_token_consumed_at = None
        await self.session.commit()
        await self.session.refresh(job)
        return job

    async def redeem_download(self, user_id: str, job_id: str, token: Optional[str]) -> Tuple[ExportJob, bytes]:
        """校验令牌并标记已使用，返回任务与原始字节"""
        job = await self.get_job(user_id, job_id)
        now = utcnow()
        verify_download_token(job, token, now)
        # 条件更新保证令牌只能兑换一次
        result = await self.session.execute(
            update(ExportJob)
            .where(ExportJob.id == job.id, ExportJob.download_token_consumed_at.is_(None))
            .values(download_token_consumed_at=now)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise DownloadTokenConsumedError("Download token already used")
        await self.session.commit()
        await self.session.refresh(job)
        logger.info(f"Export downloaded: id={job.id} user={user_id}")
        return job, base64.b64decode(job.payload_base64 or "")

    async def list_performance(self, limit: int = 100, job_id: Optional[str] = None) -> List[ExportJobPerformance]:
        stmt = select(ExportJobPerformance)
        if job_id:
            stmt = stmt.where(ExportJobPerformance.job_id == job_id)
        stmt = stmt.order_by(ExportJobPerformance.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def prune_performance(self, retention_days: Optional[int] = None) -> int:
        days = settings.EXPORT_PERF_RETENTION_DAYS if retention_days is None else retention_days
        cutoff = utcnow() - timedelta(days=days)
        result = await self.session.execute(
            delete(ExportJobPerformance).where(ExportJobPerformance.created_at < cutoff)
        )
        await self.session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info(f"Pruned {removed} export perf rows older than {days} days")
        return removed


class ExportWorker:
    """轮询式 Worker：由调度器周期触发 tick()"""

    def __init__(
        self,
        factory: Optional[Callable] = None,
        builder_factory: Callable[[AsyncSession], ExportBuilder] = ExportBuilder,
        metrics: WorkerMetrics = worker_metrics,
    ):
        self._factory = factory
        self.builder_factory = builder_factory
        self.metrics = metrics

    @property
    def factory(self):
        return self._factory or session_factory()

    async def tick(self, now: Optional[datetime] = None) -> int:
        """一次轮询：回收超时任务，再处理一批到期的 queued 任务，返回处理数"""
        now = now or utcnow()
        await self.recover_stale(now)
        async with self.factory() as session:
            result = await session.execute(
                select(ExportJob.id)
                .where(
                    ExportJob.status == ExportJobStatus.QUEUED.value,
                    or_(ExportJob.next_attempt_at.is_(None), ExportJob.next_attempt_at <= now),
                )
                .order_by(ExportJob.created_at.asc())
                .limit(settings.EXPORT_WORKER_BATCH_SIZE)
            )
            job_ids = list(result.scalars().all())

        processed = 0
        for job_id in job_ids:
            if await self.process_job(job_id, now=now) is not None:
                processed += 1
        return processed

    async def recover_stale(self, now: Optional[datetime] = None) -> int:
        """running 超过阈值的任务重新入队（attempt + 1）；预算耗尽则失败"""
        now = now or utcnow()
        threshold = now - timedelta(milliseconds=settings.EXPORT_STALE_RUNNING_MS)
        async with self.factory() as session:
            result = await session.execute(
                select(ExportJob).where(
                    ExportJob.status == ExportJobStatus.RUNNING.value,
                    ExportJob.started_at < threshold,
                )
            )
            stale = list(result.scalars().all())
            for job in stale:
                if job.attempt_count < settings.EXPORT_MAX_ATTEMPTS - 1:
                    job.attempt_count += 1
                    job.status = ExportJobStatus.QUEUED.value
                    job.next_attempt_at = now + timedelta(milliseconds=compute_backoff_ms(job.attempt_count))
                    job.error = "Recovered from stale running state"
                    self.metrics.retried += 1
                    logger.warning(f"Stale export job requeued: id={job.id} attempt={job.attempt_count}")
                else:
                    job.status = ExportJobStatus.FAILED.value
                    job.error = "Export job stalled while running and exhausted its retries"
                    job.completed_at = now
                    self.metrics.failed += 1
                    logger.error(f"Stale export job failed: id={job.id} attempt={job.attempt_count}")
            if stale:
                await session.commit()
            return len(stale)

    async def _claim(self, session: AsyncSession, job_id: str, now: datetime, ignore_schedule: bool) -> bool:
        stmt = (
            update(ExportJob)
            .where(ExportJob.id == job_id, ExportJob.status == ExportJobStatus.QUEUED.value)
            .values(status=ExportJobStatus.RUNNING.value, started_at=now)
        )
        if not ignore_schedule:
            stmt = stmt.where(or_(ExportJob.next_attempt_at.is_(None), ExportJob.next_attempt_at <= now))
        result = await session.execute(stmt)
        await session.commit()
        return result.rowcount == 1

    async def process_job(
        self, job_id: str, ignore_schedule: bool = False, now: Optional[datetime] = None
    ) -> Optional[ExportJob]:
        """处理单个任务；任务已被其它 Worker 领取或不可执行时返回 None"""
        now = now or utcnow()
        async with self.factory() as session:
            if not await self._claim(session, job_id, now, ignore_schedule):
                return None
            job = await session.get(ExportJob, job_id)
            await session.refresh(job)

            self.metrics.running += 1
            started = time.perf_counter()
            rss_before = _rss_kb()
            try:
                params = json.loads(job.params_json) if job.params_json else {}
                async with run_in_span(
                    "export.build", job=job.id, type=job.type, format=job.format, attempt=job.attempt_count
                ):
                    payload = await self.builder_factory(session).build_export(
                        job.user_id, job.type, job.format, params
                    )
                    data, stats = await consume_payload(payload, memory_soft_limit_bytes())

                job.status = ExportJobStatus.COMPLETED.value
                job.filename = payload.filename
                job.content_type = payload.content_type
                job.payload_base64 = base64.b64encode(data).decode("ascii")
                job.error = None
                job.completed_at = utcnow()
                await session.commit()

                duration_ms = (time.perf_counter() - started) * 1000
                self.metrics.processed += 1
                self.metrics.record_duration(duration_ms)
                logger.info(
                    f"Export job completed: id={job.id} type={job.type} format={job.format} "
                    f"bytes={len(data)} streamed={stats.streamed} duration={duration_ms:.0f}ms"
                )
                await self._record_performance(session, job, duration_ms, len(data), stats, rss_before)
            except Exception as e:
                await session.rollback()
                await self._handle_failure(session, job_id, e)
            finally:
                self.metrics.running -= 1

        return await self._ensure_not_running(job_id)

    async def process_immediate(self, job_id: str) -> Optional[ExportJob]:
        """同步处理指定的 queued 任务（忽略 next_attempt_at），便于确定性测试"""
        return await self.process_job(job_id, ignore_schedule=True)

    async def _handle_failure(self, session: AsyncSession, job_id: str, exc: Exception) -> None:
        job = await session.get(ExportJob, job_id)
        if job is None:
            return
        await session.refresh(job)
        message = str(exc) or type(exc).__name__
        now = utcnow()
        if isinstance(exc, MemorySoftLimitError):
            job.status = ExportJobStatus.FAILED.value
            job.completed_at = now
            self.metrics.failed += 1
            logger.error(f"Export job failed (memory soft limit, not retried): id={job_id} {message}")
        elif job.attempt_count < settings.EXPORT_MAX_ATTEMPTS - 1:
            job.attempt_count += 1
            delay_ms = compute_backoff_ms(job.attempt_count)
            job.status = ExportJobStatus.QUEUED.value
            job.next_attempt_at = now + timedelta(milliseconds=delay_ms)
            self.metrics.retried += 1
            logger.warning(
                f"Export job retry scheduled: id={job_id} attempt={job.attempt_count} in {delay_ms}ms: {message}"
            )
        else:
            job.status = ExportJobStatus.FAILED.value
            job.completed_at = now
            self.metrics.failed += 1
            logger.error(f"Export job failed after {job.attempt_count + 1} attempts: id={job_id} {message}")
        job.error = message[:2000]
        await session.commit()

    async def _ensure_not_running(self, job_id: str) -> Optional[ExportJob]:
        """兜底：处理结束后仍是 running 的任务强制失败"""
        async with self.factory() as session:
            job = await session.get(ExportJob, job_id)
            if job is not None and job.status == ExportJobStatus.RUNNING.value:
                job.status = ExportJobStatus.FAILED.value
                job.error = job.error or "Export job left running after processing"
                job.completed_at = utcnow()
                await session.commit()
                self.metrics.failed += 1
                logger.error(f"Export job force-failed after processing: id={job_id}")
            return job

    async def _record_performance(
        self,
        session: AsyncSession,
        job: ExportJob,
        duration_ms: float,
        size_bytes: int,
        stats: StreamStats,
        rss_before: int,
    ) -> None:
        """性能采样写入失败只记录日志"""
        if not settings.EXPORT_PERF_ENABLED:
            return
        try:
            wait_ms = None
            if job.started_at and job.created_at:
                wait_ms = int((job.started_at - job.created_at).total_seconds() * 1000)
            session.add(ExportJobPerformance(
                job_id=job.id,
                wait_ms=wait_ms,
                dur_ms=int(duration_ms),
                size_bytes=size_bytes,
                streamed=stats.streamed,
                streamed_chunks=stats.chunks if stats.streamed else None,
                streamed_bytes=stats.bytes if stats.streamed else None,
                avg_chunk_ms=stats.avg_chunk_ms,
                avg_chunk_bytes=stats.avg_chunk_bytes,
                rss_before_kb=rss_before,
                rss_after_kb=_rss_kb(),
                attempt=job.attempt_count,
            ))
            await session.commit()
        except Exception as e:
            await session.rollback()
            capture_exception(e, op="export.perf", job=job.id)
