"""文档站点适配器

优先读取站点的 sitemap.xml 作为 manifest；站点没有 manifest 时只返回种子 URL，
并标记 needs_crawl，由索引流水线调用外部爬虫。适配器本身不做爬取。
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import List
from urllib.parse import urlparse

from ..errors import InvalidArgument, ProviderProtocolError
from .base import HttpProvider, ProviderSpec, VendorCandidate

logger = logging.getLogger("indexhub.providers.document")

MANIFEST_PATH = "sitemap.xml"
_SITEMAP_NS = "{http://www.sitemaps.org/schemas/sitemap/0.9}"


class DocumentProvider(HttpProvider):

    kind = "document"

    async def list_candidates(self, spec: ProviderSpec) -> List[VendorCandidate]:
        seed = (spec.endpoint or "").strip()
        parsed = urlparse(seed)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidArgument(f"Invalid document seed url: {seed!r}")

        manifest_url = f"{seed.rstrip('/')}/{MANIFEST_PATH}"
        async with self._client() as client:
            response = await self._get(client, manifest_url, missing_ok=True)

        if response is None:
            logger.info("站点未提供 manifest，交由爬虫处理 seed=%s", seed)
            return [self._seed_candidate(spec, seed)]

        locators = _parse_sitemap(response.content, manifest_url)
        if not locators:
            logger.info("manifest 为空，交由爬虫处理 seed=%s", seed)
            return [self._seed_candidate(spec, seed)]

        candidates = [
            VendorCandidate(vendor_id=url, name=_display_name(url), locator=url)
            for url in locators
        ]
        logger.info(
            "文档 manifest 解析完成 provider=%s count=%d", spec.display_name, len(candidates)
        )
        return candidates

    @staticmethod
    def _seed_candidate(spec: ProviderSpec, seed: str) -> VendorCandidate:
        return VendorCandidate(
            vendor_id=seed,
            name=spec.display_name,
            locator=seed,
            needs_crawl=True,
        )


def _parse_sitemap(content: bytes, source: str) -> List[str]:
    """提取 <url><loc> 列表（按出现顺序去重）"""
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise ProviderProtocolError(f"document: malformed sitemap at {source}: {e}") from e

    seen: dict[str, None] = {}
    for url_node in root.iter(f"{_SITEMAP_NS}url"):
        loc = url_node.find(f"{_SITEMAP_NS}loc")
        if loc is None or not (loc.text or "").strip():
            raise ProviderProtocolError(f"document: <url> without <loc> in {source}")
        seen.setdefault(loc.text.strip(), None)
    return list(seen)


def _display_name(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path.rstrip("/")
    return f"{parsed.netloc}{path}" if path else parsed.netloc
