from sqlalchemy.orm import declarative_base
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from typing import AsyncGenerator
from app.core.config import settings

Base = declarative_base()

# 创建异步数据库引擎
# SQLite 不需要连接池参数；其它数据库建议开启 pool_pre_ping
engine_kwargs = {
    "echo": settings.DB_ECHO,
    "future": True,
}

if not settings.DATABASE_URL.startswith("sqlite"):
    engine_kwargs.update({
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "pool_size": 10,
        "max_overflow": 20,
    })

engine = create_async_engine(settings.DATABASE_URL, **engine_kwargs)

# 创建异步会话工厂
SessionLocal = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库异步会话的依赖项"""
    async with SessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def session_factory() -> async_sessionmaker:
    """后台任务获取会话工厂；每次读取模块属性，便于测试替换"""
    from app.models import db

    return db.SessionLocal


def import_all_models() -> None:
    # 注册全部表到 Base.metadata
    from app.models import (  # noqa: F401
        instrument,
        trade,
        journal_settings,
        daily_equity,
        goal,
        risk_breach_log,
        prop_evaluation,
        export_job,
    )


async def init_models(bind=None) -> None:
    """启动时建表（不负责迁移）"""
    import_all_models()
    from app.models import db

    target = bind or db.engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
