from __future__ import annotations

import logging
from typing import List

from .base import HttpProvider, ProviderSpec, VendorCandidate

logger = logging.getLogger("indexhub.providers.gitlab")


class GitLabProvider(HttpProvider):
    """列出 GitLab 账号有成员关系的全部项目

    按 X-Next-Page 头逐页拉取，最后一页该头为空。
    """

    kind = "gitlab"

    def __init__(
        self,
        default_api_base: str = "https://gitlab.com/api/v4",
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.default_api_base = default_api_base

    async def list_candidates(self, spec: ProviderSpec) -> List[VendorCandidate]:
        api_base = (spec.endpoint or self.default_api_base).rstrip("/")
        headers = {}
        if spec.access_token:
            headers["PRIVATE-TOKEN"] = spec.access_token

        candidates: List[VendorCandidate] = []
        page = "1"

        async with self._client(headers) as client:
            while page:
                response = await self._get(
                    client,
                    f"{api_base}/projects",
                    {"membership": "true", "per_page": self.per_page, "page": page},
                )
                for item in self._json_list(response):
                    project_id, path, clone_url = self._require(
                        item, "id", "path_with_namespace", "http_url_to_repo"
                    )
                    candidates.append(
                        VendorCandidate(
                            vendor_id=str(project_id),
                            name=path,
                            locator=clone_url,
                        )
                    )
                page = response.headers.get("x-next-page", "").strip()

        logger.info(
            "GitLab 项目列表获取完成 provider=%s count=%d",
            spec.display_name,
            len(candidates),
        )
        return candidates
