"""业务逻辑服务层

本模块实现了 Provider、追踪资源、Git 仓库与任务记录相关的业务逻辑，
作为路由和数据访问层之间的中间层。业务异常统一使用 IndexHubError 体系抛出。
"""

from __future__ import annotations

from typing import Any, Callable, List, Optional, Sequence
from urllib.parse import urlparse

from ..errors import InvalidArgument
from ..models.entities import ProviderConfig, ProviderKind, ResourceKind, TrackedResource
from ..providers.base import ProviderRegistry, ProviderSpec
from ..reconciliation.engine import ReconciliationEngine
from ..scheduling.ledger import JobRunLedger
from ..scheduling.scheduler import JobScheduler
from ..scheduling.types import JobKind
from .pagination import Connection, PageRequest
from .repositories import JobRunRepository, ProviderRepository, ResourceRepository
from .schemas import (
    ConnectionModel,
    DeleteResponse,
    EdgeModel,
    GitRepositoryCreateRequest,
    GitRepositoryUpdateRequest,
    JobRunResponse,
    JobsResponse,
    JobStatsResponse,
    PageInfoModel,
    ProviderCreateRequest,
    ProviderResponse,
    ProviderUpdateRequest,
    ReconcileResultResponse,
    ResourceResponse,
    TriggerResponse,
)


def to_connection_model(
    connection: Connection, converter: Callable[[Any], Any]
) -> ConnectionModel:
    """把分页内核的 Connection 转换为响应模型"""
    converted = connection.map(converter)
    return ConnectionModel(
        edges=[EdgeModel(node=edge.node, cursor=edge.cursor) for edge in converted.edges],
        page_info=PageInfoModel(
            has_previous_page=converted.page_info.has_previous_page,
            has_next_page=converted.page_info.has_next_page,
            start_cursor=converted.page_info.start_cursor,
            end_cursor=converted.page_info.end_cursor,
        ),
    )


def provider_response(config: ProviderConfig) -> ProviderResponse:
    return ProviderResponse(
        id=config.id,
        kind=config.kind,
        display_name=config.display_name,
        endpoint=config.endpoint,
        has_access_token=bool(config.access_token),
        last_reconciled_at=config.last_reconciled_at,
        last_error=config.last_error,
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


class ProviderService:
    """Provider 配置业务逻辑"""

    def __init__(
        self,
        engine: ReconciliationEngine,
        repository: Optional[ProviderRepository] = None,
    ):
        self.engine = engine
        self.repository = repository or ProviderRepository(engine.db_manager)

    def list_providers(
        self, page: PageRequest, kind: Optional[str] = None
    ) -> ConnectionModel:
        return to_connection_model(self.repository.list(page, kind), provider_response)

    @staticmethod
    def _check_endpoint(kind: str, endpoint: Optional[str]) -> None:
        if kind != ProviderKind.Document.value:
            return
        parsed = urlparse(endpoint or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidArgument("Document provider requires an http(s) seed url")

    def create_provider(self, request: ProviderCreateRequest) -> ProviderResponse:
        endpoint = (request.endpoint or "").strip() or None
        self._check_endpoint(request.kind.value, endpoint)

        config = self.repository.create(
            kind=request.kind.value,
            display_name=request.display_name,
            access_token=request.access_token,
            endpoint=endpoint,
        )
        return provider_response(config)

    def update_provider(
        self, provider_id: int, request: ProviderUpdateRequest
    ) -> ProviderResponse:
        changes = request.model_dump(exclude_unset=True)
        if not changes:
            return provider_response(self.repository.get(provider_id))
        if "endpoint" in changes:
            changes["endpoint"] = (changes["endpoint"] or "").strip() or None
            current = self.repository.get(provider_id)
            self._check_endpoint(current.kind, changes["endpoint"])
        return provider_response(self.repository.update(provider_id, changes))

    def delete_provider(self, provider_id: int) -> DeleteResponse:
        orphaned = self.engine.delete_provider(provider_id)
        return DeleteResponse(id=provider_id, orphaned_resources=orphaned)

    async def reconcile(self, provider_id: int) -> ReconcileResultResponse:
        result = await self.engine.reconcile(provider_id)
        return ReconcileResultResponse(**result.to_dict())


class ResourceService:
    """追踪资源业务逻辑"""

    def __init__(
        self,
        scheduler: JobScheduler,
        repository: Optional[ResourceRepository] = None,
    ):
        self.scheduler = scheduler
        self.repository = repository or ResourceRepository(scheduler.db_manager)

    def list_resources(
        self,
        page: PageRequest,
        provider_id: Optional[int] = None,
        kind: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> ConnectionModel:
        connection = self.repository.list(page, provider_id, kind, active)
        return to_connection_model(connection, ResourceResponse.model_validate)

    def set_active(self, resource_id: int, active: bool) -> ResourceResponse:
        """切换资源是否参与调度

        Raises:
            InvalidArgument: 纯 Git 仓库始终 active；孤立资源不能被激活
        """
        resource = self.repository.get(resource_id)
        if resource.kind == ResourceKind.Git.value:
            raise InvalidArgument("Plain git repositories are always active")
        if active and resource.orphaned:
            raise InvalidArgument(
                f"Resource {resource_id} is no longer reported by its provider"
            )
        updated = self.repository.update(resource_id, {"active": active})
        return ResourceResponse.model_validate(updated)

    def set_pinned(self, resource_id: int, pinned: bool) -> ResourceResponse:
        updated = self.repository.update(resource_id, {"pinned": pinned})
        return ResourceResponse.model_validate(updated)

    async def run_now(self, resource_id: int) -> JobRunResponse:
        run = await self.scheduler.run_now(resource_id)
        return JobRunResponse.model_validate(run)


class GitRepositoryService:
    """纯 Git 仓库业务逻辑

    纯 Git 仓库由运维直接录入，不经过对账，录入后即为 active。
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        repository: Optional[ResourceRepository] = None,
    ):
        self.provider = registry.get(ResourceKind.Git.value)
        self.repository = repository or ResourceRepository()

    async def _validate(self, name: str, locator: str) -> tuple[str, str]:
        candidates = await self.provider.list_candidates(
            ProviderSpec(kind=ResourceKind.Git.value, display_name=name, endpoint=locator)
        )
        candidate = candidates[0]
        return candidate.name, candidate.locator

    def _get_git(self, resource_id: int) -> TrackedResource:
        resource = self.repository.get(resource_id)
        if resource.kind != ResourceKind.Git.value:
            raise InvalidArgument(f"Resource {resource_id} is not a plain git repository")
        return resource

    async def create_repository(
        self, request: GitRepositoryCreateRequest
    ) -> ResourceResponse:
        name, locator = await self._validate(request.name, request.locator)
        resource = self.repository.create_git(name, locator)
        return ResourceResponse.model_validate(resource)

    async def update_repository(
        self, resource_id: int, request: GitRepositoryUpdateRequest
    ) -> ResourceResponse:
        resource = self._get_git(resource_id)
        name, locator = await self._validate(
            request.name or resource.name, request.locator or resource.locator
        )
        updated = self.repository.update(resource_id, {"name": name, "locator": locator})
        return ResourceResponse.model_validate(updated)

    def delete_repository(self, resource_id: int) -> DeleteResponse:
        """删除纯 Git 仓库（任务历史保留）"""
        self._get_git(resource_id)
        self.repository.delete(resource_id)
        return DeleteResponse(id=resource_id)


class JobRunService:
    """任务记录业务逻辑"""

    def __init__(
        self,
        scheduler: JobScheduler,
        repository: Optional[JobRunRepository] = None,
    ):
        self.scheduler = scheduler
        self.ledger: JobRunLedger = scheduler.ledger
        self.repository = repository or JobRunRepository(scheduler.db_manager)

    def list_job_runs(
        self,
        page: PageRequest,
        ids: Optional[Sequence[int]] = None,
        resource_id: Optional[int] = None,
        job_kinds: Optional[List[str]] = None,
    ) -> ConnectionModel:
        connection = self.repository.list(page, ids, resource_id, job_kinds)
        return to_connection_model(connection, JobRunResponse.model_validate)

    def stats(self, job_kinds: Optional[List[str]] = None) -> JobStatsResponse:
        return JobStatsResponse(**self.ledger.stats(job_kinds))

    async def cancel(self, run_id: int) -> JobRunResponse:
        run = await self.scheduler.cancel(run_id)
        return JobRunResponse.model_validate(run)

    async def trigger(self) -> TriggerResponse:
        runs = await self.scheduler.trigger()
        return TriggerResponse(
            dispatched=[JobRunResponse.model_validate(run) for run in runs]
        )

    @staticmethod
    def list_jobs() -> JobsResponse:
        return JobsResponse(jobs=[kind.value for kind in JobKind])
