from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..errors import InvalidArgument, ProviderProtocolError, ProviderUnavailable

logger = logging.getLogger("indexhub.providers")


@dataclass(slots=True)
class VendorCandidate:

    # 厂商侧的稳定标识；纯 Git 仓库为 None
    vendor_id: Optional[str]

    # 在同一 Provider 内唯一的展示名称
    name: str

    # clone URL 或文档 URL
    locator: str

    # 文档站点没有 manifest 时为 True，由索引流水线负责爬取
    needs_crawl: bool = False


@dataclass(slots=True)
class ProviderSpec:
    """适配器所需的 Provider 配置快照（与 ORM 会话解耦）"""

    kind: str
    display_name: str
    endpoint: Optional[str] = None
    access_token: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_config(cls, config: Any) -> "ProviderSpec":
        return cls(
            kind=config.kind,
            display_name=config.display_name,
            endpoint=config.endpoint,
            access_token=config.access_token,
            id=config.id,
        )


class BaseProvider(ABC):
    """Provider 适配器基类

    每种资源类型一个实现，只负责列出厂商侧的候选资源。
    失败时抛出 ProviderUnavailable / ProviderProtocolError，内部不做重试。
    """

    kind: str

    @abstractmethod
    async def list_candidates(self, spec: ProviderSpec) -> List[VendorCandidate]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind='{self.kind}')"


class HttpProvider(BaseProvider):
    """基于 httpx 的厂商适配器公共逻辑"""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        per_page: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.per_page = per_page
        # 测试时注入 httpx.MockTransport
        self._transport = transport

    def _client(self, headers: Optional[Dict[str, str]] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers=headers,
            transport=self._transport,
            follow_redirects=True,
        )

    async def _get(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        missing_ok: bool = False,
    ) -> Optional[httpx.Response]:
        try:
            response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"{self.kind}: request to {url} failed: {e}") from e

        if missing_ok and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ProviderUnavailable(
                f"{self.kind}: {url} responded with HTTP {response.status_code}"
            )
        return response

    def _json_list(self, response: httpx.Response) -> List[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderProtocolError(
                f"{self.kind}: invalid JSON from {response.request.url}"
            ) from e

        if not isinstance(data, list) or not all(isinstance(i, dict) for i in data):
            raise ProviderProtocolError(
                f"{self.kind}: expected a JSON array of objects from {response.request.url}"
            )
        return data

    def _require(self, item: Dict[str, Any], *keys: str) -> List[Any]:
        missing = [key for key in keys if item.get(key) in (None, "")]
        if missing:
            raise ProviderProtocolError(
                f"{self.kind}: repository entry missing fields {missing}"
            )
        return [item[key] for key in keys]


class ProviderRegistry:
    """注册中心: 按资源类型管理 Provider 适配器"""

    def __init__(self):
        self._providers: dict[str, BaseProvider] = {}

    def register(self, provider: BaseProvider, replace: bool = False):
        if provider.kind in self._providers and not replace:
            raise ValueError(f"provider already registered: {provider.kind}")
        self._providers[provider.kind] = provider

    def get(self, kind: str) -> BaseProvider:
        try:
            return self._providers[kind]
        except KeyError:
            raise InvalidArgument(f"No provider registered for kind: {kind}") from None

    def all(self) -> list[BaseProvider]:
        return list(self._providers.values())

    def __contains__(self, kind: str) -> bool:
        return kind in self._providers
