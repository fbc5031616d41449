from functools import lru_cache
from pathlib import Path
from typing import Optional
import sys

from pydantic import AliasChoices, AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL, make_url


class Settings(BaseSettings):
    """应用全局配置，所有可调参数集中于此，统一加载自环境变量。"""

    # -------------------- 基础应用配置 --------------------
    app_name: str = Field(default="Lorekeeper Knowledge API", description="FastAPI 文档标题")
    environment: str = Field(default="development", description="当前环境标识")
    debug: bool = Field(default=False, description="是否开启调试模式")
    logging_level: str = Field(default="INFO", description="应用日志级别")

    # -------------------- 数据库配置 --------------------
    database_url: Optional[str] = Field(
        default=None,
        description="完整的数据库连接串，填入后覆盖下方数据库配置",
    )
    db_provider: str = Field(default="sqlite", description="数据库类型，仅支持 mysql 或 sqlite")
    mysql_host: str = Field(default="localhost", description="MySQL 主机名")
    mysql_port: int = Field(default=3306, description="MySQL 端口")
    mysql_user: str = Field(default="root", description="MySQL 用户名")
    mysql_password: str = Field(default="", description="MySQL 密码")
    mysql_database: str = Field(default="lorekeeper", description="MySQL 数据库名称")

    # -------------------- 文本补全服务 --------------------
    llm_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("LLM_API_KEY", "OPENAI_API_KEY"),
        description="文本补全服务 API Key",
    )
    llm_base_url: Optional[AnyUrl] = Field(
        default=None,
        validation_alias=AliasChoices("LLM_BASE_URL", "OPENAI_API_BASE_URL", "OPENAI_BASE_URL"),
        description="文本补全服务 Base URL",
    )
    llm_model: str = Field(default="gpt-4o-mini", description="抽取、合并裁决、合成使用的模型")
    llm_timeout: float = Field(default=120.0, ge=1.0, description="单次补全请求超时（秒）")
    llm_max_retries: int = Field(default=2, ge=0, le=10, description="补全请求最大重试次数")
    llm_extraction_temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="知识抽取温度")
    llm_merge_temperature: float = Field(default=0.1, ge=0.0, le=2.0, description="合并裁决温度（越低越稳定）")
    llm_synthesis_temperature: float = Field(default=0.2, ge=0.0, le=2.0, description="知识合成温度")

    # -------------------- 嵌入服务 --------------------
    embedding_api_key: Optional[str] = Field(default=None, description="嵌入模型专用 API Key")
    embedding_base_url: Optional[AnyUrl] = Field(default=None, description="嵌入模型使用的 Base URL")
    embedding_model: str = Field(default="text-embedding-3-small", description="嵌入模型名称")
    embedding_dimension: int = Field(default=768, ge=8, description="嵌入向量维度（同时用于模拟向量）")
    embedding_max_retries: int = Field(default=3, ge=0, le=10, description="嵌入请求最大重试次数")
    embedding_min_interval_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="两次嵌入请求之间的最小间隔（秒），用于遵守外部配额",
    )

    # -------------------- 抽取流水线 --------------------
    extraction_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="两次抽取调用之间的固定间隔（秒）",
    )
    extraction_batch_tokens: int = Field(
        default=6000,
        ge=500,
        description="单次抽取请求合并的最大估算 token 数",
    )
    chunk_min_tokens: int = Field(default=100, ge=1, description="分块最小估算 token 数")
    chunk_max_tokens: int = Field(default=2000, ge=10, description="分块最大估算 token 数")
    chunk_overlap_sentences: int = Field(default=2, ge=0, description="相邻分块重叠句子数")
    job_stale_minutes: int = Field(default=5, ge=1, description="任务无心跳多少分钟后视为卡死")

    model_config = SettingsConfigDict(
        env_file=(".env", "backend/.env"),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: Optional[str]) -> Optional[str]:
        """当环境变量中提供 DATABASE_URL 时，原样返回，便于自定义。"""
        return value.strip() if isinstance(value, str) and value.strip() else None

    @field_validator("db_provider", mode="before")
    @classmethod
    def _normalize_db_provider(cls, value: Optional[str]) -> str:
        """统一数据库类型大小写，并限制为受支持的驱动。"""
        candidate = (value or "sqlite").strip().lower()
        if candidate not in {"mysql", "sqlite"}:
            raise ValueError("DB_PROVIDER 仅支持 mysql 或 sqlite")
        return candidate

    @field_validator("logging_level", mode="before")
    @classmethod
    def _normalize_logging_level(cls, value: Optional[str]) -> str:
        """规范日志级别配置。"""
        candidate = (value or "INFO").strip().upper()
        valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"}
        if candidate not in valid_levels:
            raise ValueError("LOGGING_LEVEL 仅支持 CRITICAL/ERROR/WARNING/INFO/DEBUG/NOTSET")
        return candidate

    @property
    def sqlalchemy_database_uri(self) -> str:
        """生成 SQLAlchemy 兼容的异步连接串，数据库类型由 DB_PROVIDER 控制。"""
        if self.database_url:
            url = make_url(self.database_url)
            database = (url.database or "").strip("/") if url.get_backend_name() != "sqlite" else url.database
            normalized = URL.create(
                drivername=url.drivername,
                username=url.username,
                password=url.password,
                host=url.host,
                port=url.port,
                database=database or None,
                query=url.query,
            )
            return normalized.render_as_string(hide_password=False)

        if self.db_provider == "sqlite":
            db_path = (self.storage_dir / "lorekeeper.db").resolve()
            return f"sqlite+aiosqlite:///{db_path}"

        # MySQL 分支：统一对密码进行 URL 编码，避免特殊字符破坏连接串
        from urllib.parse import quote_plus

        encoded_password = quote_plus(self.mysql_password)
        database = (self.mysql_database or "").strip("/")
        return (
            f"mysql+asyncmy://{self.mysql_user}:{encoded_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{database}"
        )

    @property
    def is_sqlite_backend(self) -> bool:
        """辅助属性：判断当前连接串是否指向 SQLite，用于差异化初始化流程。"""
        return make_url(self.sqlalchemy_database_uri).get_backend_name() == "sqlite"

    @property
    def storage_dir(self) -> Path:
        """存储目录根路径"""
        if getattr(sys, 'frozen', False):
            return Path(sys.executable).parent / "storage"
        return Path(__file__).resolve().parents[2] / "storage"


@lru_cache
def get_settings() -> Settings:
    """使用 LRU 缓存确保配置只初始化一次，减少 IO 与解析开销。"""
    return Settings()


settings = get_settings()


def reload_settings() -> Settings:
    """清除缓存并重新加载配置（环境变量变化后调用）。"""
    global settings
    get_settings.cache_clear()
    settings = get_settings()
    return settings
