"""Provider 对账引擎

负责把厂商上报的资源列表同步到本地追踪表：
- 新资源以 active=False 创建，激活必须由运维显式操作
- 厂商不再上报的资源标记 orphaned 并清除 active（pinned 除外），不删除
- 两侧都存在的资源只刷新 name/locator，不修改 active
- 同一 Provider 的对账互斥，并发请求直接拒绝而不是排队
- 整个差异在一个事务内提交，失败时不产生部分写入
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from ..errors import (
    Conflict,
    IndexHubError,
    NotFound,
    ProviderError,
    ReconciliationInProgress,
)
from ..models.entities import (
    DatabaseManager,
    ProviderConfig,
    ProviderKind,
    TrackedResource,
    utcnow,
)
from ..providers.base import ProviderRegistry, ProviderSpec, VendorCandidate
from .diff import ReconcilePlan, diff

logger = logging.getLogger("indexhub.reconciliation")

ReconcileListener = Callable[[int, "ReconcileResult"], Awaitable[None]]


@dataclass(slots=True)
class ReconcileResult:
    provider_id: int
    created: int = 0
    retired: int = 0
    updated: int = 0
    unchanged: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "provider_id": self.provider_id,
            "created": self.created,
            "retired": self.retired,
            "updated": self.updated,
            "unchanged": self.unchanged,
        }


class ReconciliationEngine:
    """对账引擎

    Attributes:
        registry: Provider 适配器注册表
        db_manager: 数据库管理器
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        db_manager: Optional[DatabaseManager] = None,
    ):
        self.registry = registry
        self.db_manager = db_manager or DatabaseManager.get_instance()
        self._in_flight: set[int] = set()
        self._guard = threading.Lock()
        self._listeners: List[ReconcileListener] = []

    def add_listener(self, listener: ReconcileListener) -> None:
        """注册对账完成回调（例如触发调度器）"""
        self._listeners.append(listener)

    def is_running(self, provider_id: int) -> bool:
        return provider_id in self._in_flight

    @contextmanager
    def _exclusive(self, provider_id: int) -> Iterator[None]:
        with self._guard:
            if provider_id in self._in_flight:
                raise ReconciliationInProgress(provider_id)
            self._in_flight.add(provider_id)
        try:
            yield
        finally:
            with self._guard:
                self._in_flight.discard(provider_id)

    async def reconcile(self, provider_id: int) -> ReconcileResult:
        """对指定 Provider 执行一次对账

        Raises:
            ReconciliationInProgress: 该 Provider 正在对账
            NotFound: Provider 不存在
            ProviderUnavailable / ProviderProtocolError: 厂商调用失败，未写入任何数据
        """
        with self._exclusive(provider_id):
            spec = self._load_spec(provider_id)
            adapter = self.registry.get(spec.kind)

            logger.info(
                "[reconcile] 开始对账 provider=%s kind=%s", provider_id, spec.kind
            )
            try:
                listing = await adapter.list_candidates(spec)
                result = self._apply(provider_id, spec.kind, listing)
            except ProviderError as e:
                logger.warning(
                    "[reconcile] 厂商调用失败，放弃本次对账 provider=%s error=%s",
                    provider_id,
                    e,
                )
                self._record_error(provider_id, str(e))
                raise

            logger.info(
                "[reconcile] 对账完成 provider=%s created=%d retired=%d updated=%d unchanged=%d",
                provider_id,
                result.created,
                result.retired,
                result.updated,
                result.unchanged,
            )

        for listener in self._listeners:
            try:
                await listener(provider_id, result)
            except Exception as e:
                logger.exception(
                    "[reconcile] 对账完成回调失败 provider=%s error=%s", provider_id, e
                )
        return result

    async def reconcile_all(self) -> Dict[int, ReconcileResult]:
        """并发对账全部 Provider，失败或正在对账的 Provider 记录日志后跳过"""
        provider_ids = self._list_provider_ids()
        outcomes = await asyncio.gather(
            *(self.reconcile(provider_id) for provider_id in provider_ids),
            return_exceptions=True,
        )

        results: Dict[int, ReconcileResult] = {}
        for provider_id, outcome in zip(provider_ids, outcomes):
            if isinstance(outcome, ReconcileResult):
                results[provider_id] = outcome
            elif isinstance(outcome, IndexHubError):
                logger.warning(
                    "[reconcile] 跳过 provider=%s reason=%s", provider_id, outcome
                )
            else:
                logger.error(
                    "[reconcile] 对账异常，跳过 provider=%s error=%r",
                    provider_id,
                    outcome,
                )
        return results

    def delete_provider(self, provider_id: int) -> int:
        """删除 Provider，并把它的资源转为无主的孤立资源

        与该 Provider 的对账互斥。

        Returns:
            被孤立的资源数量
        """
        with self._exclusive(provider_id):
            session = self.db_manager.get_session()
            try:
                config = session.get(ProviderConfig, provider_id)
                if config is None:
                    raise NotFound(f"Provider {provider_id} not found")

                resources = (
                    session.query(TrackedResource)
                    .filter(TrackedResource.provider_id == provider_id)
                    .all()
                )
                now = utcnow()
                for resource in resources:
                    resource.provider_id = None
                    resource.orphaned = True
                    resource.active = False
                    resource.last_synced_at = now
                session.delete(config)
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        logger.info(
            "删除 Provider provider=%s orphaned_resources=%d", provider_id, len(resources)
        )
        return len(resources)

    def purge_orphaned(self, retention_days: int) -> int:
        """清理超过保留期的孤立资源（任务历史保留）

        Args:
            retention_days: 保留天数，0 表示永久保留

        Returns:
            删除的资源数量
        """
        if retention_days <= 0:
            return 0

        cutoff = utcnow() - timedelta(days=retention_days)
        session = self.db_manager.get_session()
        try:
            deleted_count = (
                session.query(TrackedResource)
                .filter(
                    TrackedResource.orphaned.is_(True),
                    TrackedResource.pinned.is_(False),
                    TrackedResource.last_synced_at < cutoff,
                )
                .delete(synchronize_session=False)
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if deleted_count > 0:
            logger.info("清理了 %d 条过期孤立资源", deleted_count)
        return deleted_count

    def seed_document_providers(self, presets: Iterable[Tuple[str, str]]) -> int:
        """按 (名称, 种子 URL) 创建内置文档 Provider

        已存在相同种子 URL 的文档 Provider 时跳过，重复启动不会产生重复记录。
        生成的资源与其他对账结果一样默认 inactive。

        Returns:
            新建的 Provider 数量
        """
        session = self.db_manager.get_session()
        try:
            existing = {
                row.endpoint
                for row in session.query(ProviderConfig.endpoint).filter(
                    ProviderConfig.kind == ProviderKind.Document.value
                )
            }
            created = 0
            for name, url in presets:
                if url in existing:
                    continue
                session.add(
                    ProviderConfig(
                        kind=ProviderKind.Document.value, display_name=name, endpoint=url
                    )
                )
                existing.add(url)
                created += 1
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if created:
            logger.info("创建了 %d 个内置文档 Provider", created)
        return created

    def _load_spec(self, provider_id: int) -> ProviderSpec:
        session = self.db_manager.get_session()
        try:
            config = session.get(ProviderConfig, provider_id)
            if config is None:
                raise NotFound(f"Provider {provider_id} not found")
            return ProviderSpec.from_config(config)
        finally:
            session.close()

    def _list_provider_ids(self) -> List[int]:
        session = self.db_manager.get_session()
        try:
            rows = session.query(ProviderConfig.id).order_by(ProviderConfig.id).all()
            return [row.id for row in rows]
        finally:
            session.close()

    def _apply(
        self, provider_id: int, kind: str, listing: List[VendorCandidate]
    ) -> ReconcileResult:
        session = self.db_manager.get_session()
        try:
            config = session.get(ProviderConfig, provider_id)
            if config is None:
                raise NotFound(f"Provider {provider_id} was deleted during reconciliation")

            tracked = (
                session.query(TrackedResource)
                .filter(TrackedResource.provider_id == provider_id)
                .all()
            )
            plan = diff(tracked, listing)
            self._write_plan(session, provider_id, kind, tracked, plan)

            config.last_reconciled_at = utcnow()
            config.last_error = None
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise Conflict(f"Reconciliation for provider {provider_id} conflicted: {e.orig}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        return ReconcileResult(
            provider_id=provider_id,
            created=len(plan.creates),
            retired=len(plan.retires),
            updated=len(plan.refreshes),
            unchanged=len(plan.matched),
        )

    @staticmethod
    def _write_plan(
        session,
        provider_id: int,
        kind: str,
        tracked: List[TrackedResource],
        plan: ReconcilePlan,
    ) -> None:
        now = utcnow()
        by_id = {record.id: record for record in tracked}

        for candidate in plan.creates:
            session.add(
                TrackedResource(
                    kind=kind,
                    vendor_id=candidate.vendor_id,
                    provider_id=provider_id,
                    locator=candidate.locator,
                    name=candidate.name,
                    active=False,
                    needs_crawl=candidate.needs_crawl,
                    last_synced_at=now,
                )
            )

        for retire in plan.retires:
            record = by_id[retire.resource_id]
            record.orphaned = True
            if retire.deactivate:
                record.active = False
            record.last_synced_at = now

        for refresh in plan.refreshes:
            record = by_id[refresh.resource_id]
            record.name = refresh.name
            record.locator = refresh.locator
            record.needs_crawl = refresh.needs_crawl
            if refresh.restore:
                record.orphaned = False

        for resource_id in plan.matched:
            by_id[resource_id].last_synced_at = now

    def _record_error(self, provider_id: int, message: str) -> None:
        session = self.db_manager.get_session()
        try:
            config = session.get(ProviderConfig, provider_id)
            if config is not None:
                config.last_error = message
                session.commit()
        except Exception as e:
            session.rollback()
            logger.error("记录对账错误失败 provider=%s error=%s", provider_id, e)
        finally:
            session.close()
