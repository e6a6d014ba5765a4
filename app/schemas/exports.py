"""导出任务 schemas"""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExportJobCreateRequest(BaseModel):
    type: str
    format: str
    params: Optional[dict[str, Any]] = None


class ExportJobView(BaseModel):
    id: str
    type: str
    format: str
    status: str
    attempt_count: int = 0
    next_attempt_at: Optional[datetime] = None
    request_id: Optional[str] = None
    filename: Optional[str] = None
    content_type: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    download_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    token_expired: bool = False
    token_consumed: bool = False


class ExportJobListResponse(BaseModel):
    status: str = "ok"
    total: int = 0
    items: list[ExportJobView] = []


class ExportMetricsView(BaseModel):
    processed: int
    failed: int
    retried: int
    running: int
    avg_duration_ms: float
    samples: int
    queued: int = 0


class ExportPerfView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    job_id: str
    wait_ms: Optional[int] = None
    dur_ms: Optional[int] = None
    size_bytes: Optional[int] = None
    streamed: bool = False
    streamed_chunks: Optional[int] = None
    streamed_bytes: Optional[int] = None
    avg_chunk_ms: Optional[int] = None
    avg_chunk_bytes: Optional[int] = None
    rss_before_kb: Optional[int] = None
    rss_after_kb: Optional[int] = None
    attempt: int = 0
    created_at: Optional[datetime] = None


class ExportPerfListResponse(BaseModel):
    status: str = "ok"
    total: int = 0
    items: list[ExportPerfView] = Field(default_factory=list)


def export_job_view(job) -> ExportJobView:
    """每次返回都按存储的过期时间派生令牌；未完成的任务兑换时由令牌校验拒绝"""
    from app.services.download_token import token_view

    extra = token_view(job)
    return ExportJobView(
        id=job.id,
        type=job.type,
        format=job.format,
        status=job.status,
        attempt_count=job.attempt_count or 0,
        next_attempt_at=job.next_attempt_at,
        request_id=job.request_id,
        filename=job.filename,
        content_type=job.content_type,
        error=job.error,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        **extra,
    )
