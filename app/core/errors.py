"""业务异常定义

每个异常携带 code（返回给前端的稳定错误码）与 status_code（路由层映射的 HTTP 状态）。
"""
from typing import Optional

from fastapi import HTTPException


class JournalError(Exception):
    code = "BAD_REQUEST"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NotFoundError(JournalError):
    code = "NOT_FOUND"
    status_code = 404


class ExportValidationError(JournalError):
    code = "VALIDATION"
    status_code = 400


class ExportRateLimitError(JournalError):
    code = "RATE_LIMIT"
    status_code = 429


class MemorySoftLimitError(JournalError):
    """流式导出累计字节超过软上限；属于终态失败，不重试"""

    code = "MEMORY_SOFT_LIMIT"
    status_code = 500


class RiskBlockError(JournalError):
    """今日已触发硬性日亏损熔断，禁止新开仓"""

    code = "RISK_BLOCK"
    status_code = 403


class PerTradeRiskError(JournalError):
    code = "RISK_PER_TRADE_BLOCK"
    status_code = 403


class DownloadTokenError(JournalError):
    code = "TOKEN_INVALID"
    status_code = 403


class DownloadTokenExpiredError(DownloadTokenError):
    code = "TOKEN_EXPIRED"
    status_code = 410


class DownloadTokenConsumedError(DownloadTokenError):
    code = "TOKEN_CONSUMED"
    status_code = 410


class ExportNotReadyError(JournalError):
    code = "NOT_READY"
    status_code = 409


def to_http(exc: JournalError) -> HTTPException:
    """路由层统一转换"""
    return HTTPException(
        status_code=exc.status_code,
        detail={"code": exc.code, "message": exc.message},
    )
