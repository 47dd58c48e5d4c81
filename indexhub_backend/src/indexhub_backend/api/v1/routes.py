"""API v1 路由定义。

此模块包含 IndexHub API v1 版本提供的所有 FastAPI 路由端点。
业务异常（IndexHubError）交给应用级异常处理器转换为 {error, message} 响应，
其余未预期的异常统一转换为 500。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...config.settings import get_settings
from ...errors import IndexHubError
from ...models.entities import DatabaseManager
from ... import state
from ..pagination import PageRequest
from ..repositories import JobRunRepository, ProviderRepository, ResourceRepository
from ..schemas import (
    ActiveRequest,
    ConnectionModel,
    DeleteResponse,
    ErrorResponse,
    GitRepositoryCreateRequest,
    GitRepositoryUpdateRequest,
    HealthResponse,
    JobRunResponse,
    JobsResponse,
    JobStatsResponse,
    PinnedRequest,
    ProviderCreateRequest,
    ProviderResponse,
    ProviderUpdateRequest,
    ReconcileResultResponse,
    ResourceResponse,
    TriggerResponse,
)
from ..services import GitRepositoryService, JobRunService, ProviderService, ResourceService

router = APIRouter(
    prefix="/api/v1",
    tags=["indexhub"],
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)


def _repository_kwargs(db_manager: DatabaseManager) -> dict:
    pagination = get_settings().pagination
    return {
        "db_manager": db_manager,
        "default_page_size": pagination.default_page_size,
        "max_page_size": pagination.max_page_size,
    }


def _unavailable(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{component} 尚未启动",
    )


def get_provider_service() -> ProviderService:
    """依赖注入：获取 Provider 服务实例"""

    engine = state.get_engine()
    if engine is None:
        raise _unavailable("reconciliation engine")
    return ProviderService(engine, ProviderRepository(**_repository_kwargs(engine.db_manager)))


def get_resource_service() -> ResourceService:
    """依赖注入：获取资源服务实例"""

    scheduler = state.get_scheduler()
    if scheduler is None:
        raise _unavailable("scheduler")
    return ResourceService(
        scheduler, ResourceRepository(**_repository_kwargs(scheduler.db_manager))
    )


def get_git_repository_service() -> GitRepositoryService:
    """依赖注入：获取 Git 仓库服务实例"""

    registry = state.get_registry()
    scheduler = state.get_scheduler()
    if registry is None or scheduler is None:
        raise _unavailable("provider registry")
    return GitRepositoryService(
        registry, ResourceRepository(**_repository_kwargs(scheduler.db_manager))
    )


def get_job_run_service() -> JobRunService:
    """依赖注入：获取任务记录服务实例"""

    scheduler = state.get_scheduler()
    if scheduler is None:
        raise _unavailable("scheduler")
    return JobRunService(
        scheduler, JobRunRepository(**_repository_kwargs(scheduler.db_manager))
    )


def page_request(
    after: Optional[str] = Query(None, description="返回该游标之后的记录"),
    before: Optional[str] = Query(None, description="返回该游标之前的记录"),
    first: Optional[int] = Query(None, description="从前往后取的条数"),
    last: Optional[int] = Query(None, description="从后往前取的条数"),
) -> PageRequest:
    return PageRequest(after=after, before=before, first=first, last=last)


def _internal_error(action: str, exc: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{action}失败: {exc}",
    )


# ----------------------------------------------------------------------
# Providers
# ----------------------------------------------------------------------


@router.get(
    "/providers",
    response_model=ConnectionModel[ProviderResponse],
    summary="获取 Provider 列表",
)
async def list_providers(
    kind: Optional[str] = Query(None, description="类型筛选"),
    page: PageRequest = Depends(page_request),
    service: ProviderService = Depends(get_provider_service),
):
    try:
        return service.list_providers(page, kind)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("获取 Provider 列表", exc) from exc


@router.post(
    "/providers",
    response_model=ProviderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="创建 Provider",
)
async def create_provider(
    request: ProviderCreateRequest,
    service: ProviderService = Depends(get_provider_service),
):
    try:
        return service.create_provider(request)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("创建 Provider", exc) from exc


@router.put(
    "/providers/{provider_id}",
    response_model=ProviderResponse,
    summary="更新 Provider",
)
async def update_provider(
    provider_id: int,
    request: ProviderUpdateRequest,
    service: ProviderService = Depends(get_provider_service),
):
    try:
        return service.update_provider(provider_id, request)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("更新 Provider", exc) from exc


@router.delete(
    "/providers/{provider_id}",
    response_model=DeleteResponse,
    summary="删除 Provider",
    description="删除 Provider，其下资源转为孤立资源并保留",
)
async def delete_provider(
    provider_id: int,
    service: ProviderService = Depends(get_provider_service),
):
    try:
        return service.delete_provider(provider_id)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("删除 Provider", exc) from exc


@router.post(
    "/providers/{provider_id}/reconcile",
    response_model=ReconcileResultResponse,
    summary="立即对账",
)
async def reconcile_provider(
    provider_id: int,
    service: ProviderService = Depends(get_provider_service),
):
    try:
        return await service.reconcile(provider_id)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("对账", exc) from exc


# ----------------------------------------------------------------------
# Resources
# ----------------------------------------------------------------------


@router.get(
    "/resources",
    response_model=ConnectionModel[ResourceResponse],
    summary="获取追踪资源列表",
)
async def list_resources(
    provider_id: Optional[int] = Query(None, description="Provider 筛选"),
    kind: Optional[str] = Query(None, description="类型筛选"),
    active: Optional[bool] = Query(None, description="active 筛选"),
    page: PageRequest = Depends(page_request),
    service: ResourceService = Depends(get_resource_service),
):
    try:
        return service.list_resources(page, provider_id, kind, active)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("获取资源列表", exc) from exc


@router.put(
    "/resources/{resource_id}/active",
    response_model=ResourceResponse,
    summary="切换资源 active",
)
async def set_resource_active(
    resource_id: int,
    request: ActiveRequest,
    service: ResourceService = Depends(get_resource_service),
):
    try:
        return service.set_active(resource_id, request.active)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("更新 active", exc) from exc


@router.put(
    "/resources/{resource_id}/pinned",
    response_model=ResourceResponse,
    summary="切换资源 pinned",
)
async def set_resource_pinned(
    resource_id: int,
    request: PinnedRequest,
    service: ResourceService = Depends(get_resource_service),
):
    try:
        return service.set_pinned(resource_id, request.pinned)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("更新 pinned", exc) from exc


@router.post(
    "/resources/{resource_id}/runs",
    response_model=JobRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="立即索引资源",
)
async def run_resource_now(
    resource_id: int,
    service: ResourceService = Depends(get_resource_service),
):
    try:
        return await service.run_now(resource_id)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("派发任务", exc) from exc


# ----------------------------------------------------------------------
# Git repositories
# ----------------------------------------------------------------------


@router.post(
    "/git-repositories",
    response_model=ResourceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="录入纯 Git 仓库",
)
async def create_git_repository(
    request: GitRepositoryCreateRequest,
    service: GitRepositoryService = Depends(get_git_repository_service),
):
    try:
        return await service.create_repository(request)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("录入 Git 仓库", exc) from exc


@router.put(
    "/git-repositories/{resource_id}",
    response_model=ResourceResponse,
    summary="更新纯 Git 仓库",
)
async def update_git_repository(
    resource_id: int,
    request: GitRepositoryUpdateRequest,
    service: GitRepositoryService = Depends(get_git_repository_service),
):
    try:
        return await service.update_repository(resource_id, request)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("更新 Git 仓库", exc) from exc


@router.delete(
    "/git-repositories/{resource_id}",
    response_model=DeleteResponse,
    summary="删除纯 Git 仓库",
)
async def delete_git_repository(
    resource_id: int,
    service: GitRepositoryService = Depends(get_git_repository_service),
):
    try:
        return service.delete_repository(resource_id)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("删除 Git 仓库", exc) from exc


# ----------------------------------------------------------------------
# Job runs
# ----------------------------------------------------------------------


@router.get(
    "/job-runs",
    response_model=ConnectionModel[JobRunResponse],
    summary="获取任务记录列表",
)
async def list_job_runs(
    ids: Optional[List[int]] = Query(None, description="记录 id 筛选"),
    resource_id: Optional[int] = Query(None, description="资源筛选"),
    job_kind: Optional[List[str]] = Query(None, description="任务类型筛选，可重复"),
    page: PageRequest = Depends(page_request),
    service: JobRunService = Depends(get_job_run_service),
):
    try:
        return service.list_job_runs(page, ids, resource_id, job_kind)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("获取任务记录", exc) from exc


@router.get(
    "/job-runs/stats",
    response_model=JobStatsResponse,
    summary="任务状态统计",
)
async def job_run_stats(
    job_kind: Optional[List[str]] = Query(None, description="任务类型筛选，可重复"),
    service: JobRunService = Depends(get_job_run_service),
):
    try:
        return service.stats(job_kind)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("统计任务", exc) from exc


@router.post(
    "/job-runs/{run_id}/cancel",
    response_model=JobRunResponse,
    summary="取消任务",
)
async def cancel_job_run(
    run_id: int,
    service: JobRunService = Depends(get_job_run_service),
):
    try:
        return await service.cancel(run_id)
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("取消任务", exc) from exc


@router.get("/jobs", response_model=JobsResponse, summary="全部任务类型")
async def list_jobs():
    return JobRunService.list_jobs()


@router.post(
    "/scheduler/trigger",
    response_model=TriggerResponse,
    summary="手动触发一次调度",
)
async def trigger_scheduler(service: JobRunService = Depends(get_job_run_service)):
    try:
        return await service.trigger()
    except (HTTPException, IndexHubError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("触发调度", exc) from exc


@router.get("/health", response_model=HealthResponse, summary="健康检查")
async def health():
    scheduler = state.get_scheduler()
    if scheduler is None:
        raise _unavailable("scheduler")
    scheduler.db_manager.health_check()
    return HealthResponse(
        status="ok",
        scheduler_running=scheduler.is_running(),
        in_flight=scheduler.in_flight_count,
        timestamp=datetime.now(timezone.utc),
    )
