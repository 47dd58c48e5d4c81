from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from .base import HttpProvider, ProviderSpec, VendorCandidate

logger = logging.getLogger("indexhub.providers.github")


class GitHubProvider(HttpProvider):
    """列出 GitHub 账号可访问的全部仓库

    按 Link 头的 rel="next" 逐页拉取。
    """

    kind = "github"

    def __init__(
        self,
        default_api_base: str = "https://api.github.com",
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.default_api_base = default_api_base

    async def list_candidates(self, spec: ProviderSpec) -> List[VendorCandidate]:
        api_base = (spec.endpoint or self.default_api_base).rstrip("/")
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if spec.access_token:
            headers["Authorization"] = f"Bearer {spec.access_token}"

        candidates: List[VendorCandidate] = []
        url: Optional[str] = f"{api_base}/user/repos"
        params: Optional[dict] = {"per_page": self.per_page}

        async with self._client(headers) as client:
            while url:
                response = await self._get(client, url, params)
                for item in self._json_list(response):
                    repo_id, full_name, clone_url = self._require(
                        item, "id", "full_name", "clone_url"
                    )
                    candidates.append(
                        VendorCandidate(
                            vendor_id=str(repo_id),
                            name=full_name,
                            locator=clone_url,
                        )
                    )
                url = _next_link(response)
                # next 链接已包含查询参数
                params = None

        logger.info(
            "GitHub 仓库列表获取完成 provider=%s count=%d",
            spec.display_name,
            len(candidates),
        )
        return candidates


def _next_link(response: httpx.Response) -> Optional[str]:
    return response.links.get("next", {}).get("url")
