"""
配置文件 - 项目配置管理
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from typing import Optional


class RedisSettings(BaseModel):
    # Celery broker / result backend
    url: Optional[str] = None


class DatabaseSettings(BaseModel):
    url: str = "sqlite+aiosqlite:///./payments.db"
    echo: bool = False


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="Admissions Payments", validation_alias="PROJECT_NAME")
    VERSION: str = Field(default="1.0.0", validation_alias="VERSION")
    DEBUG: bool = Field(default=True, validation_alias="DEBUG")
    ENVIRONMENT: str = Field(default="development", validation_alias="ENVIRONMENT")

    # 分组配置：Redis/Database 采用嵌套模型
    redis: RedisSettings = Field(default_factory=RedisSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)

    # 管理端操作（退款、手动巡检）共享令牌；为空时不校验
    ADMIN_API_TOKEN: Optional[str] = Field(default=None, validation_alias="ADMIN_API_TOKEN")

    # CORS配置
    CORS_ORIGINS: list = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
        validation_alias="CORS_ORIGINS"
    )

    # 日志配置
    LOG_LEVEL: Optional[str] = Field(default=None, validation_alias="LOG_LEVEL")
    LOG_JSON: Optional[bool] = Field(default=None, validation_alias="LOG_JSON")
    LOG_REQUEST_BODY_ENABLE_BY_DEFAULT: bool = Field(default=True, validation_alias="LOG_REQUEST_BODY_ENABLE_BY_DEFAULT")
    LOG_REQUEST_BODY_MAX_BYTES: int = Field(default=2048, validation_alias="LOG_REQUEST_BODY_MAX_BYTES")

    # pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
        populate_by_name=True,
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                import json
                try:
                    arr = json.loads(s)
                    if isinstance(arr, list):
                        return arr
                except ValueError:
                    pass
            if "," in s:
                return [item.strip() for item in s.split(",") if item.strip()]
            return [s]
        return v

    @property
    def DATABASE_URL(self) -> str:
        return self.database.url


settings = Settings()
