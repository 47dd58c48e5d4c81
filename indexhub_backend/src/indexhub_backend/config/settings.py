from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("indexhub.config")


class StorageConfig(BaseModel):
    db_path: str = Field(default="./data/indexhub.db")


class SchedulerConfig(BaseModel):
    timezone: str = Field(default="UTC")
    # 调度检查周期（秒）
    tick_interval_seconds: float = Field(default=30.0, gt=0)
    # 全局在途任务上限
    max_in_flight: int = Field(default=2, ge=1)
    # 成功索引后多久视为过期（秒），0 表示只索引一次
    refresh_interval_seconds: int = Field(default=3600, ge=0)
    # 周期性对账间隔（秒），0 表示关闭
    reconcile_interval_seconds: int = Field(default=600, ge=0)


class PipelineConfig(BaseModel):
    # 为空时任务将以“无法调用”失败结束
    command: list[str] = Field(default_factory=list)
    working_dir: Optional[str] = Field(default=None)
    # stdout/stderr 各自保留的最大字节数
    log_limit_bytes: int = Field(default=64 * 1024, ge=1024)

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, value):
        # 环境变量只能提供字符串
        if isinstance(value, str):
            return shlex.split(value)
        return value


class ProviderHttpConfig(BaseModel):
    timeout_seconds: float = Field(default=30.0, gt=0)
    per_page: int = Field(default=100, ge=1, le=100)
    github_api_base: str = Field(default="https://api.github.com")
    gitlab_api_base: str = Field(default="https://gitlab.com/api/v4")


class PaginationConfig(BaseModel):
    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)


class RetentionConfig(BaseModel):
    # 孤立资源保留天数，0 表示永久保留
    orphan_retention_days: int = Field(default=0, ge=0)


class PresetDocumentConfig(BaseModel):
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"preset url must be http(s): {value!r}")
        return value


class Settings(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    providers: ProviderHttpConfig = Field(default_factory=ProviderHttpConfig)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    # 启动时自动创建的内置文档 Provider
    presets: list[PresetDocumentConfig] = Field(default_factory=list)

    @staticmethod
    def from_yaml(path: Optional[Path | str] = None) -> "Settings":
        """从 YAML 文件加载配置（环境变量仍可覆盖）"""
        from .loaders import ConfigParser, create_default_config_loader

        return ConfigParser.parse(create_default_config_loader(path).load())


_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = Settings.from_yaml()
    return _settings


def reset_settings() -> None:
    """清空缓存的配置（主要用于测试）"""
    global _settings
    _settings = None
