"""API 请求与响应模型定义

本模块定义了 IndexHub API 的请求和响应模型，使用 Pydantic 实现数据验证和序列化。
列表接口统一返回 Connection 结构（edges + page_info）。
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.entities import ProviderKind

T = TypeVar("T")


class PageInfoModel(BaseModel):
    """分页信息模型"""

    has_previous_page: bool = Field(..., description="是否有上一页")
    has_next_page: bool = Field(..., description="是否有下一页")
    start_cursor: Optional[str] = Field(None, description="本页第一条记录的游标")
    end_cursor: Optional[str] = Field(None, description="本页最后一条记录的游标")


class EdgeModel(BaseModel, Generic[T]):
    node: T
    cursor: str


class ConnectionModel(BaseModel, Generic[T]):
    """Connection 响应模型"""

    edges: List[EdgeModel[T]] = Field(..., description="记录列表")
    page_info: PageInfoModel = Field(..., description="分页信息")


class ProviderResponse(BaseModel):
    """Provider 响应模型（不返回访问令牌）"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    display_name: str
    endpoint: Optional[str] = None
    has_access_token: bool = Field(False, description="是否已配置访问令牌")
    last_reconciled_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ProviderCreateRequest(BaseModel):
    kind: ProviderKind = Field(..., description="github / gitlab / document")
    display_name: str = Field(..., min_length=1, description="展示名称")
    access_token: Optional[str] = Field(None, description="访问令牌")
    endpoint: Optional[str] = Field(
        None, description="API 根地址（GitHub/GitLab）或种子 URL（document）"
    )

    @field_validator("display_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("display_name must not be blank")
        return value


class ProviderUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(None, min_length=1)
    access_token: Optional[str] = None
    endpoint: Optional[str] = None

    @field_validator("display_name")
    @classmethod
    def _strip_name(cls, value: Optional[str]) -> str:
        # 省略表示不修改，显式 null 不合法
        if value is None or not value.strip():
            raise ValueError("display_name must not be null or blank")
        return value.strip()



class ResourceResponse(BaseModel):
    """追踪资源响应模型"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    vendor_id: Optional[str] = None
    provider_id: Optional[int] = None
    locator: str
    name: str
    active: bool
    orphaned: bool
    pinned: bool
    needs_crawl: bool
    last_synced_at: Optional[datetime] = None
    created_at: datetime


class ActiveRequest(BaseModel):
    active: bool = Field(..., description="是否参与调度")


class PinnedRequest(BaseModel):
    pinned: bool = Field(..., description="厂商不再上报时是否保留 active")


class GitRepositoryCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, description="仓库名称")
    locator: str = Field(..., min_length=1, description="clone URL")


class GitRepositoryUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    locator: Optional[str] = Field(None, min_length=1)


class JobRunResponse(BaseModel):
    """任务执行记录响应模型"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    resource_id: int
    job_kind: str
    state: str
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""


class JobStatsResponse(BaseModel):
    success: int = Field(..., description="成功次数")
    failed: int = Field(..., description="失败次数")
    pending: int = Field(..., description="排队与运行中数量")


class JobsResponse(BaseModel):
    jobs: List[str] = Field(..., description="全部任务类型")


class TriggerResponse(BaseModel):
    dispatched: List[JobRunResponse] = Field(..., description="本次派发的任务")


class ReconcileResultResponse(BaseModel):
    provider_id: int
    created: int
    retired: int
    updated: int
    unchanged: int


class DeleteResponse(BaseModel):
    id: int
    orphaned_resources: int = 0


class HealthResponse(BaseModel):
    status: str
    scheduler_running: bool
    in_flight: int
    timestamp: datetime


class ErrorResponse(BaseModel):
    """错误响应模型"""

    error: str = Field(..., description="错误类型")
    message: str = Field(..., description="错误信息")
