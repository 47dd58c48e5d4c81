"""Provider 适配器包

提供 build_default_registry():
 - 为 git / github / gitlab / document 各注册一个适配器
 - HTTP 相关参数（超时、分页大小、默认 API 地址）取自配置
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config.settings import ProviderHttpConfig
from .base import (
    BaseProvider,
    HttpProvider,
    ProviderRegistry,
    ProviderSpec,
    VendorCandidate,
)
from .document import DocumentProvider
from .git import GitProvider
from .github import GitHubProvider
from .gitlab import GitLabProvider

logger = logging.getLogger("indexhub.providers")


def build_default_registry(
    config: Optional[ProviderHttpConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderRegistry:
    """创建包含全部内置适配器的注册表"""
    config = config or ProviderHttpConfig()
    http_kwargs = {
        "timeout": config.timeout_seconds,
        "per_page": config.per_page,
        "transport": transport,
    }

    registry = ProviderRegistry()
    registry.register(GitProvider())
    registry.register(GitHubProvider(config.github_api_base, **http_kwargs))
    registry.register(GitLabProvider(config.gitlab_api_base, **http_kwargs))
    registry.register(DocumentProvider(**http_kwargs))

    logger.info(
        "provider registry ready: kinds=%s",
        [provider.kind for provider in registry.all()],
    )
    return registry


__all__ = [
    "BaseProvider",
    "HttpProvider",
    "ProviderRegistry",
    "ProviderSpec",
    "VendorCandidate",
    "GitProvider",
    "GitHubProvider",
    "GitLabProvider",
    "DocumentProvider",
    "build_default_registry",
]
