"""配置加载器模块

分离 YAML、环境变量、默认值等不同配置源的加载逻辑，
按优先级合并后统一交给 pydantic 模型校验。
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from .settings import Settings

logger = logging.getLogger("indexhub.config.loaders")

CONFIG_FILE_NAME = "indexhub.yaml"


class ConfigLoader(ABC):
    """配置加载器抽象基类"""

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        """加载配置数据

        Returns:
            配置数据字典
        """
        raise NotImplementedError

    @abstractmethod
    def is_available(self) -> bool:
        """检查配置源是否可用"""
        raise NotImplementedError


class YamlConfigLoader(ConfigLoader):
    """YAML 配置文件加载器"""

    def __init__(self, file_path: Path | str | None = None):
        """初始化 YAML 配置加载器

        Args:
            file_path: YAML 文件路径，如果为 None 则自动发现
        """
        self.file_path = Path(file_path) if file_path else self._discover_config_path()
        logger.debug("YAML 配置文件路径: %s", self.file_path)

    def _discover_config_path(self) -> Path:
        """从当前工作目录和包目录向上查找 indexhub.yaml"""
        starts = [Path.cwd(), Path(__file__).resolve()]
        for start in starts:
            for parent in [start, *start.parents]:
                candidate = parent / CONFIG_FILE_NAME
                if candidate.exists():
                    logger.info("发现配置文件: %s", candidate)
                    return candidate

        fallback_path = Path.cwd() / CONFIG_FILE_NAME
        logger.debug("未找到配置文件，使用默认路径: %s", fallback_path)
        return fallback_path

    def is_available(self) -> bool:
        return self.file_path.exists()

    def load(self) -> Dict[str, Any]:
        if not self.is_available():
            logger.warning("配置文件不存在: %s", self.file_path)
            return {}

        try:
            data = yaml.safe_load(self.file_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            logger.error("加载配置文件失败: %s error=%s", self.file_path, e)
            return {}

        if not isinstance(data, dict):
            logger.error("配置文件顶层必须是映射: %s", self.file_path)
            return {}

        logger.info("成功加载配置文件: %s", self.file_path)
        return data


class EnvironmentConfigLoader(ConfigLoader):
    """环境变量配置加载器

    - `INDEXHUB_DB_PATH` 覆盖 storage.db_path
    - `INDEXHUB_<SECTION>__<KEY>` 覆盖嵌套配置，如 `INDEXHUB_SCHEDULER__MAX_IN_FLIGHT=4`
    """

    def __init__(self, prefix: str = "INDEXHUB_"):
        self.prefix = prefix

    def is_available(self) -> bool:
        return any(key.startswith(self.prefix) for key in os.environ)

    def load(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(self.prefix):
                continue

            config_key = key[len(self.prefix):].lower()
            if config_key == "db_path":
                config.setdefault("storage", {})["db_path"] = value
                continue

            parts = [part for part in config_key.split("__") if part]
            if len(parts) < 2:
                logger.debug("忽略无法识别的环境变量: %s", key)
                continue

            node = config
            for part in parts[:-1]:
                node = node.setdefault(part, {})
            node[parts[-1]] = value

        if config:
            logger.info("从环境变量加载了 %d 个配置段", len(config))

        return config


class CompositeConfigLoader(ConfigLoader):
    """组合配置加载器，按优先级顺序深度合并多个配置源"""

    def __init__(self, loaders: List[ConfigLoader]):
        """初始化组合加载器

        Args:
            loaders: 配置加载器列表，按优先级从低到高排序
        """
        self.loaders = loaders

    def is_available(self) -> bool:
        return any(loader.is_available() for loader in self.loaders)

    def load(self) -> Dict[str, Any]:
        merged_config: Dict[str, Any] = {}

        for loader in self.loaders:
            if loader.is_available():
                merged_config = self._deep_merge(merged_config, loader.load())
                logger.debug("合并配置: %s", type(loader).__name__)

        return merged_config

    def _deep_merge(
        self, base: Dict[str, Any], override: Dict[str, Any]
    ) -> Dict[str, Any]:
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result


class ConfigParser:
    """负责将原始配置数据转换为 Settings 对象"""

    @staticmethod
    def parse(config_data: Dict[str, Any]) -> Settings:
        """解析配置数据为 Settings 对象

        非法配置会被记录并回退到默认值，避免因配置问题导致服务无法启动。
        """
        try:
            settings = Settings.model_validate(config_data)
        except ValidationError as e:
            logger.error("配置校验失败，使用默认配置: %s", e)
            return Settings()

        logger.info(
            "配置解析完成 db_path=%s max_in_flight=%d",
            settings.storage.db_path,
            settings.scheduler.max_in_flight,
        )
        return settings


def create_default_config_loader(
    yaml_path: Path | str | None = None,
) -> CompositeConfigLoader:
    """创建默认的配置加载器

    按优先级顺序：YAML 文件 < 环境变量（默认值由 pydantic 模型提供）
    """
    return CompositeConfigLoader(
        [
            YamlConfigLoader(yaml_path),
            EnvironmentConfigLoader(),
        ]
    )
