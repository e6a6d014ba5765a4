"""可观测性工具：轻量 span 计时、后台异常收集、请求关联 ID"""
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"


def _format_attrs(attrs: Mapping[str, Any]) -> str:
    return " ".join(f"{k}={v}" for k, v in attrs.items() if v is not None)


@asynccontextmanager
async def run_in_span(name: str, **attrs: Any):
    """记录一段异步操作的耗时；异常原样抛出"""
    started = time.perf_counter()
    logger.debug(f"span start {name} {_format_attrs(attrs)}")
    try:
        yield
    except Exception as e:
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.warning(f"span error {name} after {elapsed_ms:.1f}ms {_format_attrs(attrs)}: {e}")
        raise
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.debug(f"span end {name} {elapsed_ms:.1f}ms {_format_attrs(attrs)}")


def capture_exception(exc: BaseException, **context: Any) -> None:
    """后台任务失败的统一出口：带上下文与堆栈写日志，不向调用方传播"""
    logger.error(
        f"background failure: {type(exc).__name__}: {exc} {_format_attrs(context)}",
        exc_info=(type(exc), exc, exc.__traceback__),
    )


def request_id_from(headers: Optional[Mapping[str, str]]) -> str:
    if headers:
        value = headers.get(REQUEST_ID_HEADER)
        if value:
            return value[:64]
    return uuid.uuid4().hex
