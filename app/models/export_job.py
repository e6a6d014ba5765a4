import uuid
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, text, Index
from app.models.db import Base


class ExportJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportJob(Base):
    __tablename__ = "export_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False)
    type = Column(String(32), nullable=False)
    format = Column(String(8), nullable=False)
    params_json = Column(Text, nullable=True)

    status = Column(String(16), nullable=False, default=ExportJobStatus.QUEUED.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)
    request_id = Column(String(64), nullable=True)

    filename = Column(String(128), nullable=True)
    content_type = Column(String(128), nullable=True)
    payload_base64 = Column(Text, nullable=True)
    error = Column(Text, nullable=True)

    download_token_expires_at = Column(DateTime, nullable=True)
    download_token_consumed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_export_status_next", "status", "next_attempt_at", "created_at"),
        Index("idx_export_user_status", "user_id", "status"),
        Index("idx_export_request", "request_id"),
    )


class ExportJobPerformance(Base):
    """导出任务耗时/内存采样（按保留期清理）"""
    __tablename__ = "export_job_performance"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), nullable=False)
    wait_ms = Column(Integer, nullable=True)
    dur_ms = Column(Integer, nullable=True)
    size_bytes = Column(Integer, nullable=True)
    streamed = Column(Boolean, nullable=False, default=False)
    streamed_chunks = Column(Integer, nullable=True)
    streamed_bytes = Column(Integer, nullable=True)
    avg_chunk_ms = Column(Integer, nullable=True)
    avg_chunk_bytes = Column(Integer, nullable=True)
    rss_before_kb = Column(Integer, nullable=True)
    rss_after_kb = Column(Integer, nullable=True)
    attempt = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"))

    __table_args__ = (
        Index("idx_export_perf_created", "created_at"),
        Index("idx_export_perf_job", "job_id"),
    )
