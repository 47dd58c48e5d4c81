from __future__ import annotations

import asyncio
import sys
from types import SimpleNamespace

import pytest

from indexhub_backend.pipelines import (
    CommandIndexPipeline,
    PipelineInvocationError,
    SeedOnlyCrawler,
)


def _resource(**overrides):
    fields = dict(
        id=7,
        kind="git",
        name="acme/repo",
        locator="https://example.com/acme/repo.git",
        needs_crawl=False,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_empty_command_cannot_be_invoked():
    with pytest.raises(PipelineInvocationError):
        asyncio.run(CommandIndexPipeline([]).index(_resource()))


def test_missing_executable_cannot_be_invoked(tmp_path):
    pipeline = CommandIndexPipeline([str(tmp_path / "no-such-indexer")])

    with pytest.raises(PipelineInvocationError):
        asyncio.run(pipeline.index(_resource()))


def test_command_receives_resource_environment():
    script = (
        "import os, sys\n"
        "print(os.environ['INDEXHUB_RESOURCE_ID'], os.environ['INDEXHUB_LOCATOR'])\n"
        "print('warn', file=sys.stderr)\n"
        "sys.exit(3)\n"
    )
    pipeline = CommandIndexPipeline([sys.executable, "-c", script])

    result = asyncio.run(pipeline.index(_resource()))

    assert result.exit_code == 3
    assert not result.succeeded
    assert result.stdout.strip() == "7 https://example.com/acme/repo.git"
    assert result.stderr.strip() == "warn"


def test_crawled_urls_are_written_to_stdin():
    class TwoPageCrawler:
        async def discover(self, seed_url):
            return [seed_url, seed_url + "about"]

    script = "import sys\nsys.stdout.write(sys.stdin.read())\n"
    pipeline = CommandIndexPipeline(
        [sys.executable, "-c", script], crawler=TwoPageCrawler()
    )
    resource = _resource(kind="document", locator="https://docs.test/", needs_crawl=True)

    result = asyncio.run(pipeline.index(resource))

    assert result.succeeded
    assert result.stdout.splitlines() == ["https://docs.test/", "https://docs.test/about"]


def test_cancelling_index_kills_the_process():
    pipeline = CommandIndexPipeline([sys.executable, "-c", "import time; time.sleep(60)"])

    async def scenario():
        task = asyncio.create_task(pipeline.index(_resource()))
        await asyncio.sleep(0.5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(asyncio.wait_for(scenario(), timeout=30))


def test_seed_only_crawler_returns_seed():
    assert asyncio.run(SeedOnlyCrawler().discover("https://docs.test")) == [
        "https://docs.test"
    ]


def test_output_is_streamed_to_callback():
    script = (
        "import sys\n"
        "print('one', flush=True)\n"
        "print('oops', file=sys.stderr, flush=True)\n"
        "print('two')\n"
    )
    pipeline = CommandIndexPipeline([sys.executable, "-c", script])
    chunks = []

    result = asyncio.run(
        pipeline.index(_resource(), on_output=lambda out, err: chunks.append((out, err)))
    )

    assert result.succeeded
    assert result.stdout == ""
    assert result.stderr == ""
    assert "".join(out for out, _ in chunks).splitlines() == ["one", "two"]
    assert "".join(err for _, err in chunks).strip() == "oops"
