"""索引流水线抽象

调度器只依赖 `BaseIndexPipeline.index(resource, on_output)`：
解析、建索引等工作由外部流水线完成，这里只约定输入输出。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, runtime_checkable

from ..errors import IndexHubError

# 增量输出回调：(stdout 片段, stderr 片段)
OutputCallback = Callable[[str, str], None]


@dataclass(slots=True)
class IndexResult:
    """一次索引执行的结果"""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class PipelineInvocationError(IndexHubError):
    """流水线无法被调用（未配置、可执行文件不存在等）"""

    error = "pipeline_invocation_error"


class BaseIndexPipeline(ABC):
    """索引流水线基类

    实现必须可被取消：任务被取消时应终止外部进程并重新抛出 CancelledError。
    """

    name: str = "pipeline"

    @abstractmethod
    async def index(
        self, resource: Any, on_output: Optional[OutputCallback] = None
    ) -> IndexResult:
        """对一个追踪资源执行索引

        Args:
            resource: TrackedResource（或具有 id/kind/locator/name/needs_crawl 属性的对象）
            on_output: 提供时输出边产生边回调，返回结果中只保留未回调的部分

        Raises:
            PipelineInvocationError: 流水线无法启动
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"


@runtime_checkable
class Crawler(Protocol):
    """文档站点爬虫：从种子 URL 发现待索引的页面"""

    async def discover(self, seed_url: str) -> List[str]: ...


class SeedOnlyCrawler:
    """默认爬虫：不做发现，只返回种子本身"""

    async def discover(self, seed_url: str) -> List[str]:
        return [seed_url]
