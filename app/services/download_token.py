"""导出下载令牌

token = HMAC-SHA256(secret, f"{job_id}|{expiry_epoch_ms}") 的前 32 位十六进制。
令牌与任务存储的过期时间绑定，过期或已使用后失效；单次使用由 download_token_consumed_at 记录。
"""
import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import settings
from app.core.errors import (
    DownloadTokenConsumedError,
    DownloadTokenError,
    DownloadTokenExpiredError,
    ExportNotReadyError,
)
from app.core.timeutil import epoch_ms, utcnow
from app.models.export_job import ExportJob, ExportJobStatus

TOKEN_LENGTH = 32


def sign_download_token(job_id: str, expires_at: Optional[datetime], secret: Optional[str] = None) -> str:
    expiry_part = str(epoch_ms(expires_at)) if expires_at is not None else "none"
    message = f"{job_id}|{expiry_part}".encode("utf-8")
    key = (secret or settings.EXPORT_TOKEN_SECRET).encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()[:TOKEN_LENGTH]


def new_token_expiry(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    # 截断到毫秒，与签名中的 epoch 毫秒一致
    expiry = now + timedelta(minutes=settings.EXPORT_TOKEN_TTL_MINUTES)
    return expiry.replace(microsecond=(expiry.microsecond // 1000) * 1000)


def verify_download_token(job: ExportJob, token: Optional[str], now: Optional[datetime] = None) -> None:
    """校验失败抛出对应的 DownloadTokenError 子类"""
    if job.status != ExportJobStatus.COMPLETED.value:
        raise ExportNotReadyError(f"Export job is {job.status}")
    if not token:
        raise DownloadTokenError("Download token is required")
    expected = sign_download_token(job.id, job.download_token_expires_at)
    if not hmac.compare_digest(expected, token):
        raise DownloadTokenError("Download token mismatch")
    if job.download_token_consumed_at is not None:
        raise DownloadTokenConsumedError("Download token already used")
    now = now or utcnow()
    if job.download_token_expires_at is not None and now > job.download_token_expires_at:
        raise DownloadTokenExpiredError("Download token expired")


def token_view(job: ExportJob, now: Optional[datetime] = None) -> dict:
    """DTO 中的令牌字段：只暴露令牌本身与状态，不暴露密钥"""
    now = now or utcnow()
    expires_at = job.download_token_expires_at
    return {
        "download_token": sign_download_token(job.id, expires_at),
        "token_expires_at": expires_at,
        "token_expired": bool(expires_at is not None and now > expires_at),
        "token_consumed": job.download_token_consumed_at is not None,
    }
