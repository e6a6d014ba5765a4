from pathlib import Path
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# 从当前文件所在目录向上查找最近的 .env
def find_env_file() -> Path | None:
    current = Path(__file__).resolve()
    for parent in current.parents:
        env_file = parent / ".env"
        if env_file.exists():
            return env_file
    return None


ENV_FILE = find_env_file()
BASE_DIR = ENV_FILE.parent if ENV_FILE else Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    APP_NAME: str = "Trade Journal Core"
    LOG_LEVEL: str = "INFO"

    # 数据库（默认本地 SQLite，可切换为任意 SQLAlchemy 异步 URL）
    DATABASE_URL: str = "sqlite+aiosqlite:///./trade_journal.db"
    DB_ECHO: bool = False

    # 认证：关闭时所有请求归属 ANONYMOUS_USER_ID
    AUTH_ENABLED: bool = False
    JWT_SECRET_KEY: str = "change-me"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = "admin"
    ANONYMOUS_USER_ID: str = "local"

    # 调度器
    ENABLE_SCHEDULER: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"

    # 账户基线：用户尚未创建 JournalSettings 时使用
    DEFAULT_INITIAL_EQUITY: float = 100000.0

    # 目标重算
    GOAL_RECALC_DEBOUNCE_MS: int = 500
    GOAL_ROLLING_DEFAULT_DAYS: int = 30
    GOAL_STREAK_LOOKBACK_DAYS: int = 180

    # 风控
    RISK_SUPPRESSION_MINUTES: int = 30
    RISK_DEFAULT_MAX_CONSECUTIVE_LOSSES: int = 5

    # 日权益校验
    EQUITY_VALIDATION_TOLERANCE: float = 0.009
    EQUITY_VALIDATION_CRON: str = "30 2 * * *"

    # 导出任务队列 / Worker
    EXPORT_WORKER_ENABLED: bool = True
    EXPORT_WORKER_INTERVAL_MS: int = 200
    EXPORT_WORKER_BATCH_SIZE: int = 5
    EXPORT_STALE_RUNNING_MS: int = 15000
    EXPORT_MAX_ATTEMPTS: int = 3
    EXPORT_BACKOFF_BASE_MS: int = 500
    EXPORT_BACKOFF_MAX_MS: int = 30000
    EXPORT_MAX_ACTIVE_JOBS: int = 5

    # 流式导出：行数超过阈值时按块生成 CSV
    EXPORT_STREAM_THRESHOLD: int = 5000
    EXPORT_STREAM_CHUNK_SIZE: int = 500
    FORCE_STREAM_EXPORT: bool = False
    # 0 表示任何非空块都会超限
    EXPORT_MEMORY_SOFT_LIMIT_MB: float = 50.0

    # 下载令牌
    EXPORT_TOKEN_SECRET: str = "dev-export-secret"
    EXPORT_TOKEN_TTL_MINUTES: int = 10

    # 导出性能记录
    EXPORT_PERF_ENABLED: bool = True
    EXPORT_PERF_RETENTION_DAYS: int = 30
    EXPORT_PERF_PRUNE_CRON: str = "15 3 * * *"

    EXPORT_TRADES_DEFAULT_LIMIT: int = 5000

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE) if ENV_FILE else ".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _resolve_sqlite_path(cls, value: str) -> str:
        """相对路径的 SQLite 文件统一落在项目根目录下"""
        prefix = "sqlite+aiosqlite:///"
        if not value or not value.startswith(prefix):
            return value
        raw_path = value[len(prefix):]
        if not raw_path or raw_path.startswith("/") or raw_path == ":memory:":
            return value
        return prefix + str(BASE_DIR / raw_path)


settings = Settings()
