"""基于外部命令的索引流水线

通过子进程调用配置中的索引命令，资源信息以环境变量传入：
- INDEXHUB_RESOURCE_ID / INDEXHUB_KIND / INDEXHUB_NAME / INDEXHUB_LOCATOR
- 需要爬取的文档站点，爬虫发现的 URL 逐行写入 stdin
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
from typing import Any, Callable, List, Optional, Sequence

from .base import (
    BaseIndexPipeline,
    Crawler,
    IndexResult,
    OutputCallback,
    PipelineInvocationError,
    SeedOnlyCrawler,
)

logger = logging.getLogger("indexhub.pipeline.command")

_READ_CHUNK_BYTES = 4096


class CommandIndexPipeline(BaseIndexPipeline):
    """子进程索引流水线

    Attributes:
        command: 命令及参数
        working_dir: 子进程工作目录
        crawler: needs_crawl 资源使用的爬虫
    """

    name = "command"

    def __init__(
        self,
        command: Sequence[str],
        working_dir: Optional[str] = None,
        crawler: Optional[Crawler] = None,
    ):
        self.command = list(command)
        self.working_dir = working_dir
        self.crawler = crawler or SeedOnlyCrawler()

    def _build_env(self, resource: Any) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "INDEXHUB_RESOURCE_ID": str(resource.id),
                "INDEXHUB_KIND": str(resource.kind),
                "INDEXHUB_NAME": str(resource.name),
                "INDEXHUB_LOCATOR": str(resource.locator),
            }
        )
        return env

    async def _stdin_payload(self, resource: Any) -> Optional[bytes]:
        if not getattr(resource, "needs_crawl", False):
            return None
        urls: List[str] = await self.crawler.discover(resource.locator)
        logger.info("爬虫发现页面 resource=%s count=%d", resource.id, len(urls))
        return ("\n".join(urls) + "\n").encode()

    async def index(
        self, resource: Any, on_output: Optional[OutputCallback] = None
    ) -> IndexResult:
        if not self.command:
            raise PipelineInvocationError("No index command configured")

        payload = await self._stdin_payload(resource)
        logger.debug("执行命令: %s resource=%s", " ".join(self.command), resource.id)

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=(
                    asyncio.subprocess.PIPE
                    if payload is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.working_dir,
                env=self._build_env(resource),
            )
        except OSError as e:
            raise PipelineInvocationError(
                f"Failed to start index command {self.command[0]!r}: {e}"
            ) from e

        emit_stdout = emit_stderr = None
        if on_output is not None:

            def emit_stdout(text: str) -> None:
                on_output(text, "")

            def emit_stderr(text: str) -> None:
                on_output("", text)

        try:
            if payload is not None:
                await self._feed_stdin(proc, payload)
            stdout, stderr, _ = await asyncio.gather(
                self._pump(proc.stdout, emit_stdout),
                self._pump(proc.stderr, emit_stderr),
                proc.wait(),
            )
        except asyncio.CancelledError:
            # 取消时终止子进程，避免遗留孤儿进程
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            logger.info("索引进程已终止 resource=%s pid=%s", resource.id, proc.pid)
            raise

        if proc.returncode != 0:
            logger.warning(
                "索引命令执行失败: rc=%s resource=%s", proc.returncode, resource.id
            )

        return IndexResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout,
            stderr=stderr,
        )

    @staticmethod
    async def _feed_stdin(proc, payload: bytes) -> None:
        try:
            proc.stdin.write(payload)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("索引进程未读取 stdin pid=%s", proc.pid)
        finally:
            proc.stdin.close()

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader, emit: Optional[Callable[[str], None]]
    ) -> str:
        """读取子进程输出；提供 emit 时逐块回调，否则累积返回"""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        collected: List[str] = []
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                if emit is not None:
                    emit(text)
                else:
                    collected.append(text)
            if not chunk:
                break
        return "".join(collected)
