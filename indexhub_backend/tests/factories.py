"""Test data helpers shared across test modules."""

from __future__ import annotations

import asyncio

from indexhub_backend.models.entities import JobRun, ProviderConfig, TrackedResource
from indexhub_backend.pipelines.base import BaseIndexPipeline, IndexResult


def add_provider(db_manager, kind="github", display_name="acme", endpoint=None, token=None):
    with db_manager.get_session() as session:
        config = ProviderConfig(
            kind=kind, display_name=display_name, endpoint=endpoint, access_token=token
        )
        session.add(config)
        session.commit()
        return config.id


def add_resource(db_manager, name, active=True, kind="github", provider_id=None, **extra):
    with db_manager.get_session() as session:
        resource = TrackedResource(
            kind=kind,
            name=name,
            locator=extra.pop("locator", f"https://example.com/{name}.git"),
            vendor_id=extra.pop("vendor_id", name if kind != "git" else None),
            provider_id=provider_id,
            active=active,
            **extra,
        )
        session.add(resource)
        session.commit()
        return resource.id


def load_resource(db_manager, resource_id):
    with db_manager.get_session() as session:
        return session.get(TrackedResource, resource_id)


def load_runs(db_manager, resource_id):
    with db_manager.get_session() as session:
        return (
            session.query(JobRun)
            .filter(JobRun.resource_id == resource_id)
            .order_by(JobRun.id)
            .all()
        )


class RecordingPipeline(BaseIndexPipeline):
    """Fake pipeline that returns a fixed exit code, optionally blocking until released."""

    name = "recording"

    def __init__(self, exit_code=0, block=False):
        self.exit_code = exit_code
        self.block = block
        self.release = asyncio.Event() if block else None
        self.calls = []

    async def index(self, resource, on_output=None):
        self.calls.append(resource.id)
        if on_output is not None:
            on_output(f"indexing {resource.name}\n", "")
        if self.release is not None:
            await self.release.wait()
        return IndexResult(exit_code=self.exit_code, stdout=f"indexed {resource.name}\n")
