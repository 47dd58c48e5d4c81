from __future__ import annotations

from typing import List
from urllib.parse import urlparse

from ..errors import InvalidArgument
from .base import BaseProvider, ProviderSpec, VendorCandidate

_ALLOWED_SCHEMES = {"http", "https", "ssh", "git", "file"}


class GitProvider(BaseProvider):
    """纯 Git 仓库：没有厂商列表，候选即运维录入的单个地址"""

    kind = "git"

    async def list_candidates(self, spec: ProviderSpec) -> List[VendorCandidate]:
        locator = (spec.endpoint or "").strip()
        name = spec.display_name.strip()
        if not name:
            raise InvalidArgument("Git repository name must not be empty")
        if not _is_git_locator(locator):
            raise InvalidArgument(f"Invalid git url: {locator!r}")
        return [VendorCandidate(vendor_id=None, name=name, locator=locator)]


def _is_git_locator(locator: str) -> bool:
    if not locator:
        return False
    # scp 风格：git@github.com:org/repo.git
    if "://" not in locator:
        return "@" in locator and ":" in locator
    parsed = urlparse(locator)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        return False
    return bool(parsed.netloc or parsed.scheme == "file")
