from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user
from app.core.errors import JournalError, to_http
from app.core.observability import REQUEST_ID_HEADER, request_id_from
from app.models.db import get_session
from app.models.export_job import ExportJob, ExportJobStatus
from app.schemas.exports import (
    ExportJobCreateRequest,
    ExportJobListResponse,
    ExportJobView,
    ExportMetricsView,
    ExportPerfListResponse,
    ExportPerfView,
    export_job_view,
)
from app.services.export_job_service import ExportJobService, worker_metrics

router = APIRouter(tags=["数据导出"])


@router.post("/exports/jobs", response_model=ExportJobView, status_code=201)
async def create_export_job(
    payload: ExportJobCreateRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    """创建导出任务；类型/格式非法返回 400，活跃任务过多返回 429"""
    request_id = request_id_from(request.headers)
    try:
        job = await ExportJobService(session).create_job(
            current_user, payload.type, payload.format, payload.params, request_id=request_id
        )
    except JournalError as e:
        raise to_http(e)
    response.headers[REQUEST_ID_HEADER] = request_id
    return export_job_view(job)


@router.get("/exports/jobs", response_model=ExportJobListResponse)
async def list_export_jobs(
    request_id: Optional[str] = Query(None, description="按请求关联 ID 过滤"),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    jobs = await ExportJobService(session).list_jobs(current_user, request_id=request_id, limit=limit)
    items = [export_job_view(j) for j in jobs]
    return ExportJobListResponse(total=len(items), items=items)


@router.get("/exports/metrics", response_model=ExportMetricsView)
async def export_metrics(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    result = await session.execute(
        select(func.count(ExportJob.id)).where(ExportJob.status == ExportJobStatus.QUEUED.value)
    )
    return ExportMetricsView(**worker_metrics.snapshot(), queued=int(result.scalar() or 0))


@router.get("/exports/perf", response_model=ExportPerfListResponse)
async def list_export_perf(
    limit: int = Query(100, ge=1, le=1000),
    job_id: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    rows = await ExportJobService(session).list_performance(limit=limit, job_id=job_id)
    items = [ExportPerfView.model_validate(r) for r in rows]
    return ExportPerfListResponse(total=len(items), items=items)


@router.get("/exports/jobs/{job_id}", response_model=ExportJobView)
async def get_export_job(
    job_id: str,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    try:
        job = await ExportJobService(session).get_job(current_user, job_id)
    except JournalError as e:
        raise to_http(e)
    return export_job_view(job)


@router.post("/exports/jobs/{job_id}/token", response_model=ExportJobView)
async def refresh_export_token(
    job_id: str,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    try:
        job = await ExportJobService(session).refresh_token(current_user, job_id)
    except JournalError as e:
        raise to_http(e)
    return export_job_view(job)


@router.get("/exports/jobs/{job_id}/download")
async def download_export(
    job_id: str,
    token: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    """单次下载：令牌校验通过后立即标记已使用"""
    try:
        job, data = await ExportJobService(session).redeem_download(current_user, job_id, token)
    except JournalError as e:
        raise to_http(e)
    return Response(
        content=data,
        media_type=job.content_type or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{job.filename}"'},
    )
