"""配置管理 — Pydantic Settings 从 TOML 加载。"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

_DEFAULT_TOML = Path(__file__).resolve().parent.parent / "config" / "default.toml"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    cors_origins: list[str] = ["*"]


class AnalysisConfig(BaseModel):
    max_payload_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    low_confidence_threshold: float = Field(default=0.80, ge=0.0, le=1.0)


class QuotaConfig(BaseModel):
    daily_limit: int = Field(default=60, ge=0)


class CacheConfig(BaseModel):
    capacity: int = Field(default=500, gt=0)


class ProviderConfig(BaseModel):
    kind: Literal["replicate", "openai"] = "replicate"
    api_key: str = ""
    base_url: str = ""
    model: str = ""
    model_version: str = ""
    prompt: str = ""
    max_tokens: int = Field(default=300, gt=0)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    poll_interval: float = Field(default=1.5, ge=0.0)
    poll_attempts: int = Field(default=40, gt=0)
    deadline: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _fill_kind_defaults(self) -> ProviderConfig:
        """按 provider 类型补全 base_url / model / deadline 默认值。"""
        if self.kind == "replicate":
            self.base_url = self.base_url or "https://api.replicate.com/v1"
            if self.deadline is None:
                self.deadline = 60.0
        else:
            self.base_url = self.base_url or "https://api.openai.com/v1"
            self.model = self.model or "gpt-4o-mini"
            if self.deadline is None:
                self.deadline = 25.0
        return self

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)


class TrainingLogConfig(BaseModel):
    capacity: int = Field(default=100, gt=0)
    path: Path | None = None
    flush_interval_seconds: int = Field(default=300, gt=0)


class Settings(BaseSettings):
    server: ServerConfig = ServerConfig()
    analysis: AnalysisConfig = AnalysisConfig()
    quota: QuotaConfig = QuotaConfig()
    cache: CacheConfig = CacheConfig()
    provider: ProviderConfig = ProviderConfig()
    training_log: TrainingLogConfig = TrainingLogConfig()

    model_config = {"env_prefix": "TOOLSIGHT_", "env_nested_delimiter": "__"}

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # 环境变量优先于 TOML 中的值
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def load_settings(toml_path: Path = _DEFAULT_TOML) -> Settings:
    """从 TOML 文件加载配置，环境变量可覆盖。"""
    import sys

    if sys.version_info >= (3, 11):
        import tomllib
    else:
        import tomli as tomllib

    if toml_path.exists():
        with open(toml_path, "rb") as f:
            data = tomllib.load(f)
        return Settings(**data)
    return Settings()
