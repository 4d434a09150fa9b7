"""
引擎配置加载
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
ENV_PREFIX = "DECISION_WORKFLOW_"


@dataclass(frozen=True)
class EngineSettings:
    """引擎运行配置"""
    max_concurrency: int = 5
    default_timeout_ms: int = 30000
    default_max_retries: int = 0
    default_retry_backoff_ms: int = 1000
    max_executions_per_workflow: int = 10
    database_url: str = "sqlite+aiosqlite:///./decision_workflow.db"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    reference_catalog: Optional[str] = None


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def load_settings(env_file: str = None) -> EngineSettings:
    """从环境变量（及 .env 文件）加载配置"""
    load_dotenv(env_file)
    defaults = EngineSettings()

    return EngineSettings(
        max_concurrency=int(_env("MAX_CONCURRENCY", str(defaults.max_concurrency))),
        default_timeout_ms=int(_env("DEFAULT_TIMEOUT_MS", str(defaults.default_timeout_ms))),
        default_max_retries=int(_env("DEFAULT_MAX_RETRIES", str(defaults.default_max_retries))),
        default_retry_backoff_ms=int(
            _env("DEFAULT_RETRY_BACKOFF_MS", str(defaults.default_retry_backoff_ms))
        ),
        max_executions_per_workflow=int(
            _env("MAX_EXECUTIONS_PER_WORKFLOW", str(defaults.max_executions_per_workflow))
        ),
        database_url=_env("DATABASE_URL", defaults.database_url),
        log_level=_env("LOG_LEVEL", defaults.log_level).upper(),
        api_host=_env("API_HOST", defaults.api_host),
        api_port=int(_env("API_PORT", str(defaults.api_port))),
        reference_catalog=_env("REFERENCE_CATALOG", "") or None,
    )


def configure_logging(level: str = "INFO"):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
