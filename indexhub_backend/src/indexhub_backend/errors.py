"""IndexHub 异常体系

所有业务异常均继承自 `IndexHubError`，并携带稳定的错误码与对应的 HTTP 状态码，
API 层据此统一转换为错误响应。
"""

from __future__ import annotations

from typing import Optional


class IndexHubError(Exception):
    """IndexHub 基础异常类"""

    error = "internal_error"
    status_code = 500

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ProviderError(IndexHubError):
    """Provider 适配器异常基类"""

    error = "provider_error"
    status_code = 502


class ProviderUnavailable(ProviderError):
    """厂商接口暂时不可用（网络、认证、5xx 等）

    适配器内部不做重试，由调度器在下一次触发时重新尝试。
    """

    error = "provider_unavailable"


class ProviderProtocolError(ProviderError):
    """厂商返回内容格式异常"""

    error = "provider_protocol_error"


class ReconciliationInProgress(IndexHubError):
    """同一 Provider 的对账正在进行中"""

    error = "reconciliation_in_progress"
    status_code = 409

    def __init__(self, provider_id: int):
        super().__init__(f"Reconciliation already running for provider {provider_id}")
        self.provider_id = provider_id


class DuplicateInFlightJob(IndexHubError):
    """同一资源同一类型已有 pending/running 的任务"""

    error = "duplicate_in_flight_job"
    status_code = 409

    def __init__(self, resource_id: int, job_kind: str):
        super().__init__(
            f"Job {job_kind} for resource {resource_id} is already pending or running"
        )
        self.resource_id = resource_id
        self.job_kind = job_kind


class InvalidStateTransition(IndexHubError):
    """非法的任务状态迁移"""

    error = "invalid_state_transition"
    status_code = 409


class InvalidArgument(IndexHubError):
    """调用参数非法"""

    error = "invalid_argument"
    status_code = 400


class InvalidCursor(InvalidArgument):
    """无法解析或越界的分页游标"""

    error = "invalid_cursor"


class NotFound(IndexHubError):
    """目标记录不存在"""

    error = "not_found"
    status_code = 404


class Conflict(IndexHubError):
    """违反唯一性约束等冲突"""

    error = "conflict"
    status_code = 409


class StorageUnavailable(IndexHubError):
    """存储不可用，启动阶段视为致命错误"""

    error = "storage_unavailable"
    status_code = 503
