from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.config import settings
from app.core.errors import (
    DownloadTokenConsumedError,
    ExportNotReadyError,
    ExportRateLimitError,
    ExportValidationError,
)
from app.core.timeutil import utcnow
from app.models import db
from app.models.export_job import ExportJob, ExportJobPerformance
from app.services.export_builders import ExportPayload
from app.services.export_job_service import (
    ExportJobService,
    ExportWorker,
    WorkerMetrics,
    compute_backoff_ms,
)
from app.services.download_token import token_view

from conftest import USER, add_closed_trade


class FlakyBuilder:
    """前 failures 次构建抛错，之后返回固定 CSV"""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self, session):
        return self

    async def build_export(self, user_id, export_type, export_format, params):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return ExportPayload(filename="trades-export.csv", content_type="text/csv", data="id\n1\n")


async def _reload(job_id):
    async with db.SessionLocal() as s:
        return await s.get(ExportJob, job_id)


@pytest.mark.parametrize("attempt,expected", [(0, 500), (1, 1000), (3, 4000), (6, 30000), (10, 30000)])
def test_backoff(attempt, expected):
    assert compute_backoff_ms(attempt) == expected


@pytest.mark.asyncio
async def test_retries_twice_then_completes(session):
    job = await ExportJobService(session).create_job(USER, "trades", "csv", {})
    builder = FlakyBuilder(failures=2)
    worker = ExportWorker(builder_factory=builder, metrics=WorkerMetrics())

    await worker.process_immediate(job.id)
    first = await _reload(job.id)
    assert first.status == "queued"
    assert first.attempt_count == 1
    assert first.next_attempt_at is not None
    assert "transient failure 1" in first.error

    await worker.process_immediate(job.id)
    await worker.process_immediate(job.id)
    final = await _reload(job.id)

    assert builder.calls == 3
    assert final.status == "completed"
    assert final.attempt_count == 2
    assert final.payload_base64 is not None
    assert worker.metrics.retried == 2
    assert worker.metrics.processed == 1


@pytest.mark.asyncio
async def test_exhausted_retries_fail(session):
    job = await ExportJobService(session).create_job(USER, "trades", "csv", {})
    worker = ExportWorker(builder_factory=FlakyBuilder(failures=10), metrics=WorkerMetrics())
    for _ in range(settings.EXPORT_MAX_ATTEMPTS):
        await worker.process_immediate(job.id)
    final = await _reload(job.id)
    assert final.status == "failed"
    assert final.attempt_count == settings.EXPORT_MAX_ATTEMPTS - 1
    assert "transient failure 3" in final.error
    # 终态任务不会再被处理
    assert await worker.process_immediate(job.id) is None


@pytest.mark.asyncio
async def test_memory_soft_limit_fails_without_retry(session, monkeypatch):
    monkeypatch.setattr(settings, "FORCE_STREAM_EXPORT", True)
    monkeypatch.setattr(settings, "EXPORT_MEMORY_SOFT_LIMIT_MB", 0)
    await add_closed_trade(session, utcnow() - timedelta(days=1))
    job = await ExportJobService(session).create_job(USER, "trades", "csv", {})

    await ExportWorker().process_immediate(job.id)
    final = await _reload(job.id)

    assert final.status == "failed"
    assert "memory soft limit" in final.error
    assert final.attempt_count == 0


@pytest.mark.asyncio
async def test_tick_respects_next_attempt_at(session):
    job = await ExportJobService(session).create_job(USER, "trades", "csv", {})
    builder = FlakyBuilder(failures=1)
    worker = ExportWorker(builder_factory=builder, metrics=WorkerMetrics())

    assert await worker.tick() == 1
    # 退避期内不处理
    assert await worker.tick() == 0
    assert (await _reload(job.id)).status == "queued"

    assert await worker.tick(now=utcnow() + timedelta(seconds=5)) == 1
    assert (await _reload(job.id)).status == "completed"


@pytest.mark.asyncio
async def test_stale_running_job_is_requeued(session):
    job = await ExportJobService(session).create_job(USER, "trades", "csv", {})
    job.status = "running"
    job.started_at = utcnow() - timedelta(minutes=5)
    await session.commit()

    worker = ExportWorker(builder_factory=FlakyBuilder(failures=0), metrics=WorkerMetrics())
    assert await worker.recover_stale() == 1
    recovered = await _reload(job.id)
    assert recovered.status == "queued"
    assert recovered.attempt_count == 1


@pytest.mark.asyncio
async def test_success_records_performance(session):
    await add_closed_trade(session, utcnow() - timedelta(days=1))
    job = await ExportJobService(session).create_job(USER, "trades", "json", {})
    await ExportWorker(metrics=WorkerMetrics()).process_immediate(job.id)

    rows = (await session.execute(select(ExportJobPerformance))).scalars().all()
    assert len(rows) == 1
    assert rows[0].job_id == job.id
    assert rows[0].streamed is False
    assert rows[0].size_bytes > 0


@pytest.mark.asyncio
async def test_invalid_request_creates_no_job(session):
    with pytest.raises(ExportValidationError):
        await ExportJobService(session).create_job(USER, "bogus", "csv", {})
    with pytest.raises(ExportValidationError):
        await ExportJobService(session).create_job(USER, "trades", "png", {})
    assert (await session.execute(select(ExportJob))).scalars().all() == []


@pytest.mark.asyncio
async def test_active_job_cap(session, monkeypatch):
    monkeypatch.setattr(settings, "EXPORT_MAX_ACTIVE_JOBS", 2)
    svc = ExportJobService(session)
    await svc.create_job(USER, "goals", "csv", {})
    await svc.create_job(USER, "goals", "json", {})
    with pytest.raises(ExportRateLimitError):
        await svc.create_job(USER, "goals", "xlsx", {})
    # 其它用户不受影响
    await svc.create_job("someone-else", "goals", "csv", {})


@pytest.mark.asyncio
async def test_download_is_single_use(session):
    svc = ExportJobService(session)
    job = await svc.create_job(USER, "goals", "csv", {})
    with pytest.raises(ExportNotReadyError):
        await svc.redeem_download(USER, job.id, "whatever")

    await ExportWorker(metrics=WorkerMetrics()).process_immediate(job.id)
    job = await svc.get_job(USER, job.id)
    await session.refresh(job)
    token = token_view(job)["download_token"]

    _, data = await svc.redeem_download(USER, job.id, token)
    assert data.startswith(b"id,type,period")
    with pytest.raises(DownloadTokenConsumedError):
        await svc.redeem_download(USER, job.id, token)

    refreshed = await svc.refresh_token(USER, job.id)
    new_token = token_view(refreshed)["download_token"]
    assert new_token != token
    _, again = await svc.redeem_download(USER, job.id, new_token)
    assert again == data


@pytest.mark.asyncio
async def test_prune_performance(session):
    session.add(ExportJobPerformance(job_id="old", attempt=0, created_at=utcnow() - timedelta(days=40)))
    session.add(ExportJobPerformance(job_id="new", attempt=0, created_at=utcnow()))
    await session.commit()
    removed = await ExportJobService(session).prune_performance(retention_days=30)
    assert removed == 1
    remaining = await ExportJobService(session).list_performance()
    assert [r.job_id for r in remaining] == ["new"]


@pytest.mark.asyncio
async def test_tick_takes_oldest_batch_first(session, monkeypatch):
    monkeypatch.setattr(settings, "EXPORT_MAX_ACTIVE_JOBS", 10)
    svc = ExportJobService(session)
    base = utcnow() - timedelta(hours=1)
    jobs = []
    for i in range(7):
        job = await svc.create_job(USER, "goals", "csv", {})
        # 创建顺序与时间倒置，确认按 created_at 而不是插入顺序取批
        job.created_at = base - timedelta(minutes=i)
        jobs.append(job)
    await session.commit()

    worker = ExportWorker(builder_factory=FlakyBuilder(failures=0), metrics=WorkerMetrics())
    assert await worker.tick() == settings.EXPORT_WORKER_BATCH_SIZE == 5

    oldest_first = list(reversed(jobs))
    statuses = [(await _reload(j.id)).status for j in oldest_first]
    assert statuses == ["completed"] * 5 + ["queued"] * 2


@pytest.mark.asyncio
async def test_stale_running_job_on_last_attempt_fails(session):
    job = await ExportJobService(session).create_job(USER, "trades", "csv", {})
    job.status = "running"
    job.attempt_count = settings.EXPORT_MAX_ATTEMPTS - 1
    job.started_at = utcnow() - timedelta(minutes=5)
    await session.commit()

    metrics = WorkerMetrics()
    worker = ExportWorker(builder_factory=FlakyBuilder(failures=0), metrics=metrics)
    assert await worker.recover_stale() == 1

    failed = await _reload(job.id)
    assert failed.status == "failed"
    assert failed.attempt_count == settings.EXPORT_MAX_ATTEMPTS - 1
    assert failed.error == "Export job stalled while running and exhausted its retries"
    assert failed.completed_at is not None
    assert metrics.failed == 1
    assert metrics.retried == 0


@pytest.mark.asyncio
async def test_job_left_running_is_force_failed(session, monkeypatch):
    job = await ExportJobService(session).create_job(USER, "trades", "csv", {})
    metrics = WorkerMetrics()
    worker = ExportWorker(builder_factory=FlakyBuilder(failures=10), metrics=metrics)

    async def lost_failure(session, job_id, exc):
        return None

    # 失败处理未落库时，任务仍停留在 running
    monkeypatch.setattr(worker, "_handle_failure", lost_failure)
    final = await worker.process_immediate(job.id)

    assert final.status == "failed"
    assert final.error == "Export job left running after processing"
    assert (await _reload(job.id)).status == "failed"
    assert metrics.failed == 1
    assert metrics.running == 0
