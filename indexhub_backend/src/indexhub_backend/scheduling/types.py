from __future__ import annotations

from enum import Enum
from typing import Union

from ..models.entities import ResourceKind


class JobKind(str, Enum):
    """索引任务类型枚举

    - scheduler_git: 纯 Git 仓库
    - scheduler_github_gitlab: GitHub / GitLab 仓库
    - web_crawler: 文档站点
    """

    Git = "scheduler_git"
    ThirdParty = "scheduler_github_gitlab"
    WebCrawler = "web_crawler"


_KIND_TO_JOB = {
    ResourceKind.Git.value: JobKind.Git,
    ResourceKind.GitHub.value: JobKind.ThirdParty,
    ResourceKind.GitLab.value: JobKind.ThirdParty,
    ResourceKind.Document.value: JobKind.WebCrawler,
}


def job_kind_for(resource_kind: Union[str, ResourceKind]) -> JobKind:
    """根据资源类型推导任务类型

    Raises:
        ValueError: 未知的资源类型
    """
    key = resource_kind.value if isinstance(resource_kind, ResourceKind) else resource_kind
    try:
        return _KIND_TO_JOB[key]
    except KeyError:
        raise ValueError(f"unknown resource kind: {resource_kind}") from None


def make_job_id(name: str, *, suffix: str | None = None) -> str:
    """生成统一格式的 APScheduler job id: "indexhub:<name>[:<suffix>]" """
    parts: list[str] = ["indexhub", name]
    if suffix:
        parts.append(suffix)
    return ":".join(parts)
