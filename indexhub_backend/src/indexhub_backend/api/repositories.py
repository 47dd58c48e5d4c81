"""数据访问层实现

本模块实现了 Provider、追踪资源与任务记录的数据库访问层，使用 Repository 模式封装数据操作。
所有列表查询都通过游标分页内核返回 Connection。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError

from ..errors import Conflict, NotFound
from ..models.entities import (
    DatabaseManager,
    JobRun,
    ProviderConfig,
    ResourceKind,
    TrackedResource,
)
from .pagination import Connection, PageRequest, paginate


class BaseRepository:
    """公共逻辑：数据库管理器与分页参数"""

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        default_page_size: int = 20,
        max_page_size: int = 100,
    ):
        """初始化数据访问层

        Args:
            db_manager: 数据库管理器实例，如果为None则使用默认实例
            default_page_size: 未指定 first/last 时的页大小
            max_page_size: 允许的最大页大小
        """
        self.db_manager = db_manager or DatabaseManager.get_instance()
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def _paginate(self, query, sort_column, collection: str, page: PageRequest) -> Connection:
        return paginate(
            query,
            sort_column,
            collection,
            page,
            default_page_size=self.default_page_size,
            max_page_size=self.max_page_size,
        )


class ProviderRepository(BaseRepository):
    """Provider 配置数据访问层"""

    def list(self, page: PageRequest, kind: Optional[str] = None) -> Connection:
        with self.db_manager.get_session() as session:
            query = session.query(ProviderConfig)
            if kind:
                query = query.filter(ProviderConfig.kind == kind)
            return self._paginate(query, ProviderConfig.id, "ProviderConfig", page)

    def get(self, provider_id: int) -> ProviderConfig:
        with self.db_manager.get_session() as session:
            config = session.get(ProviderConfig, provider_id)
            if config is None:
                raise NotFound(f"Provider {provider_id} not found")
            return config

    def create(self, **fields: Any) -> ProviderConfig:
        with self.db_manager.get_session() as session:
            config = ProviderConfig(**fields)
            session.add(config)
            session.commit()
            return config

    def update(self, provider_id: int, changes: Dict[str, Any]) -> ProviderConfig:
        with self.db_manager.get_session() as session:
            config = session.get(ProviderConfig, provider_id)
            if config is None:
                raise NotFound(f"Provider {provider_id} not found")
            for key, value in changes.items():
                setattr(config, key, value)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise Conflict(f"Provider {provider_id} update violates a constraint") from e
            return config


class ResourceRepository(BaseRepository):
    """追踪资源数据访问层"""

    def list(
        self,
        page: PageRequest,
        provider_id: Optional[int] = None,
        kind: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> Connection:
        with self.db_manager.get_session() as session:
            query = session.query(TrackedResource)
            if provider_id is not None:
                query = query.filter(TrackedResource.provider_id == provider_id)
            if kind:
                query = query.filter(TrackedResource.kind == kind)
            if active is not None:
                query = query.filter(TrackedResource.active.is_(active))
            return self._paginate(query, TrackedResource.id, "TrackedResource", page)

    def get(self, resource_id: int) -> TrackedResource:
        with self.db_manager.get_session() as session:
            resource = session.get(TrackedResource, resource_id)
            if resource is None:
                raise NotFound(f"Resource {resource_id} not found")
            return resource

    def update(self, resource_id: int, changes: Dict[str, Any]) -> TrackedResource:
        with self.db_manager.get_session() as session:
            resource = session.get(TrackedResource, resource_id)
            if resource is None:
                raise NotFound(f"Resource {resource_id} not found")
            for key, value in changes.items():
                setattr(resource, key, value)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise Conflict(f"Resource {resource_id} conflicts with an existing record") from e
            return resource

    def create_git(self, name: str, locator: str) -> TrackedResource:
        """录入纯 Git 仓库（直接 active，不经过对账）"""
        with self.db_manager.get_session() as session:
            resource = TrackedResource(
                kind=ResourceKind.Git.value,
                vendor_id=None,
                provider_id=None,
                name=name,
                locator=locator,
                active=True,
            )
            session.add(resource)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise Conflict(f"Git repository {locator!r} is already tracked") from e
            return resource

    def delete(self, resource_id: int) -> None:
        with self.db_manager.get_session() as session:
            resource = session.get(TrackedResource, resource_id)
            if resource is None:
                raise NotFound(f"Resource {resource_id} not found")
            session.delete(resource)
            session.commit()


class JobRunRepository(BaseRepository):
    """任务执行记录数据访问层"""

    def list(
        self,
        page: PageRequest,
        ids: Optional[Sequence[int]] = None,
        resource_id: Optional[int] = None,
        job_kinds: Optional[List[str]] = None,
    ) -> Connection:
        with self.db_manager.get_session() as session:
            query = session.query(JobRun)
            if ids:
                query = query.filter(JobRun.id.in_(list(ids)))
            if resource_id is not None:
                query = query.filter(JobRun.resource_id == resource_id)
            if job_kinds:
                query = query.filter(JobRun.job_kind.in_(job_kinds))
            return self._paginate(query, JobRun.id, "JobRun", page)
