from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import ORJSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from contextlib import asynccontextmanager
import logging

from app.core.config import settings
from app.core.logging_config import setup_logging
from app.core.auth import get_current_user, login_for_access_token
from app.core.task_registry import drain_background
from app.models import db
from app.models.db import init_models, session_factory
from app.services.goal_service import goal_debouncer
from app.services.instrument_service import InstrumentService
from app.routers import trades, equity, goals, risk, prop, exports
from app.jobs.scheduler import init_scheduler, start_scheduler, shutdown_scheduler
from app.jobs.export_jobs import register_all_jobs

# 初始化系统日志
setup_logging(settings.LOG_LEVEL)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：启动时建表、初始化品种与调度器，关闭时清理"""
    await init_models()
    async with session_factory()() as session:
        await InstrumentService(session).ensure_defaults()

    if settings.ENABLE_SCHEDULER:
        scheduler = init_scheduler()
        register_all_jobs(scheduler)
        start_scheduler()
        logger.info("Scheduler started with periodic tasks")
    else:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")

    yield

    # 关闭时执行：先停掉防抖定时器与调度器，再等待已发出的后台任务
    goal_debouncer.cancel_all()
    if settings.ENABLE_SCHEDULER:
        shutdown_scheduler(wait=False)
    await drain_background()

    try:
        await db.engine.dispose()
        logger.info("Database engine disposed")
    except Exception as e:
        logger.warning(f"Failed to dispose engine gracefully: {e}")


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan, default_response_class=ORJSONResponse)

# 配置CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "x-request-id"],
)

# 启用GZip压缩（大响应显著减小体积）
app.add_middleware(GZipMiddleware, minimum_size=1024)

# 注册路由（默认受保护，需认证）
app.include_router(trades.router, prefix="/api/v1", dependencies=[Depends(get_current_user)])
app.include_router(equity.router, prefix="/api/v1", dependencies=[Depends(get_current_user)])
app.include_router(goals.router, prefix="/api/v1", dependencies=[Depends(get_current_user)])
app.include_router(risk.router, prefix="/api/v1", dependencies=[Depends(get_current_user)])
app.include_router(prop.router, prefix="/api/v1", dependencies=[Depends(get_current_user)])
app.include_router(exports.router, prefix="/api/v1", dependencies=[Depends(get_current_user)])


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.APP_NAME}


@app.post("/api/v1/login")
async def login(form_data: OAuth2PasswordRequestForm = Depends()):
    """管理员通过用户名/密码换取 Bearer token（JWT）。"""
    return await login_for_access_token(form_data)
