from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import DuplicateInFlightJob, InvalidStateTransition, NotFound
from ..models.entities import (
    IN_FLIGHT_STATES,
    DatabaseManager,
    JobRun,
    JobState,
    TrackedResource,
    utcnow,
)
from ..pipelines.base import BaseIndexPipeline
from ..reconciliation.engine import ReconcileResult, ReconciliationEngine
from .ledger import JobRunLedger
from .types import job_kind_for, make_job_id

logger = logging.getLogger("indexhub.scheduler")

# 取消或进程崩溃时合成的退出码
EXIT_CANCELLED = -1
# 流水线无法调用时合成的退出码
EXIT_INVOCATION_FAILED = -2


class JobScheduler:
    """索引任务调度器

    - 周期 tick、对账完成、运维手动触发三种方式触发一次选择
    - 只选择 active、无在途任务、从未索引或已过期的资源，按创建顺序
    - 全局在途数不超过 max_in_flight
    - 失败不自动重试，下次触发时重新参与选择

    Attributes:
        scheduler: APScheduler 异步调度器实例（负责周期 tick 与周期对账）
        ledger: 任务执行流水
        pipeline: 索引流水线
    """

    def __init__(
        self,
        ledger: JobRunLedger,
        pipeline: BaseIndexPipeline,
        engine: Optional[ReconciliationEngine] = None,
        db_manager: Optional[DatabaseManager] = None,
        *,
        max_in_flight: int = 2,
        refresh_interval_seconds: int = 3600,
        tick_interval_seconds: float = 30.0,
        reconcile_interval_seconds: int = 600,
        orphan_retention_days: int = 0,
        timezone_name: str = "UTC",
    ):
        self.ledger = ledger
        self.pipeline = pipeline
        self.engine = engine
        self.db_manager = db_manager or ledger.db_manager

        self.max_in_flight = max(1, max_in_flight)
        self.refresh_interval_seconds = refresh_interval_seconds
        self.tick_interval_seconds = tick_interval_seconds
        self.reconcile_interval_seconds = reconcile_interval_seconds
        self.orphan_retention_days = orphan_retention_days

        self.scheduler = AsyncIOScheduler(
            timezone=timezone_name,
            job_defaults={
                "coalesce": True,  # 多个待执行实例合并
                "max_instances": 1,  # 同一任务最多并发1
                "misfire_grace_time": 60,
            },
        )

        # run_id -> 正在执行的 asyncio 任务
        self._dispatched: Dict[int, asyncio.Task] = {}
        self._select_lock = asyncio.Lock()
        self._recovered = False
        self._running = False

        if engine is not None:
            engine.add_listener(self._on_reconciled)

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def recover(self) -> int:
        """重启恢复：把遗留的 pending/running 记录标记为失败

        必须在第一次触发之前调用。
        """
        count = self.ledger.fail_orphaned_runs()
        self._recovered = True
        return count

    def start(self) -> None:
        """启动调度器（需在事件循环内调用）

        Raises:
            StorageUnavailable: 存储不可用时拒绝启动
        """
        if self._running:
            logger.warning("Scheduler already running")
            return

        self.db_manager.health_check()
        if not self._recovered:
            self.recover()

        now = datetime.now(timezone.utc)
        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.tick_interval_seconds),
            id=make_job_id("tick"),
            next_run_time=now,
            replace_existing=True,
        )
        if self.engine is not None and self.reconcile_interval_seconds > 0:
            self.scheduler.add_job(
                self._reconcile_tick,
                trigger=IntervalTrigger(seconds=self.reconcile_interval_seconds),
                id=make_job_id("reconcile"),
                next_run_time=now,
                replace_existing=True,
            )

        self.scheduler.start()
        self._running = True
        logger.info(
            "调度器已启动 max_in_flight=%d tick=%.1fs refresh=%ss",
            self.max_in_flight,
            self.tick_interval_seconds,
            self.refresh_interval_seconds,
        )

    async def stop(self) -> None:
        """停止调度器：取消在途任务并等待其流水记录写入终态"""
        if self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False

        tasks = list(self._dispatched.values())
        for task in tasks:
            task.cancel()
        await self.drain()
        logger.info("调度器已停止 cancelled=%d", len(tasks))

    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight_count(self) -> int:
        return len(self._dispatched)

    # ------------------------------------------------------------------
    # 触发与选择
    # ------------------------------------------------------------------

    async def trigger(self) -> List[JobRun]:
        """执行一次选择并派发

        Returns:
            本次新建的任务记录
        """
        async with self._select_lock:
            selected = self.select()
            dispatched: List[JobRun] = []
            for resource in selected:
                try:
                    dispatched.append(self._dispatch(resource))
                except DuplicateInFlightJob as e:
                    logger.info("跳过已有在途任务的资源 resource=%s: %s", resource.id, e)

        if dispatched:
            logger.info(
                "[trigger] 派发 %d 个任务 in_flight=%d", len(dispatched), self.in_flight_count
            )
        return dispatched

    async def run_now(self, resource_id: int) -> JobRun:
        """立即为指定资源派发一次任务（不检查 active 与过期时间）

        Raises:
            NotFound: 资源不存在
            DuplicateInFlightJob: 该资源已有在途任务
        """
        session = self.db_manager.get_session()
        try:
            resource = session.get(TrackedResource, resource_id)
        finally:
            session.close()
        if resource is None:
            raise NotFound(f"Resource {resource_id} not found")

        async with self._select_lock:
            return self._dispatch(resource)

    def select(self) -> List[TrackedResource]:
        """选择需要索引的资源（不派发）"""
        capacity = self.max_in_flight - len(self._dispatched)
        if capacity <= 0:
            return []

        session = self.db_manager.get_session()
        try:
            candidates = (
                session.query(TrackedResource)
                .filter(TrackedResource.active.is_(True))
                .order_by(TrackedResource.id)
                .all()
            )
        finally:
            session.close()
        if not candidates:
            return []

        in_flight = self.ledger.in_flight_resource_ids()
        latest = self.ledger.latest_runs([resource.id for resource in candidates])
        cutoff = utcnow() - timedelta(seconds=self.refresh_interval_seconds)

        selected: List[TrackedResource] = []
        for resource in candidates:
            if resource.id in in_flight:
                continue
            if not self._is_stale(latest.get(resource.id), cutoff):
                continue
            selected.append(resource)
            if len(selected) >= capacity:
                break
        return selected

    def _is_stale(self, last_run: Optional[JobRun], cutoff: datetime) -> bool:
        if last_run is None or last_run.state != JobState.Succeeded.value:
            return True
        if self.refresh_interval_seconds <= 0:
            return False
        return last_run.finished_at is None or last_run.finished_at < cutoff

    # ------------------------------------------------------------------
    # 派发与执行
    # ------------------------------------------------------------------

    def _dispatch(self, resource: TrackedResource) -> JobRun:
        job_kind = job_kind_for(resource.kind)
        run = self.ledger.create(resource.id, job_kind.value)
        run = self.ledger.start(run.id)

        task = asyncio.create_task(
            self._execute(run.id, resource), name=f"indexhub-run-{run.id}"
        )
        self._dispatched[run.id] = task
        task.add_done_callback(lambda t, run_id=run.id: self._on_done(run_id, t))

        logger.info(
            "[dispatch] run=%s resource=%s kind=%s", run.id, resource.id, job_kind.value
        )
        return run

    def _on_done(self, run_id: int, task: asyncio.Task) -> None:
        self._dispatched.pop(run_id, None)
        if not task.cancelled():
            return
        # 任务在开始执行前就被取消时 _execute 没有机会写入终态
        try:
            run = self.ledger.get(run_id)
        except NotFound:
            return
        if run.state in IN_FLIGHT_STATES:
            self._finish(run_id, EXIT_CANCELLED, stderr="cancelled: run was cancelled\n")

    async def _execute(self, run_id: int, resource: TrackedResource) -> None:
        def on_output(stdout: str, stderr: str) -> None:
            self._append(run_id, stdout, stderr)

        try:
            result = await self.pipeline.index(resource, on_output=on_output)
        except asyncio.CancelledError:
            self._finish(run_id, EXIT_CANCELLED, stderr="cancelled: run was cancelled\n")
            raise
        except Exception as e:
            logger.exception(
                "[execute] 流水线调用失败 run=%s resource=%s error=%s", run_id, resource.id, e
            )
            self._finish(
                run_id,
                EXIT_INVOCATION_FAILED,
                stderr=f"pipeline invocation failed: {e}\n",
            )
            return

        self._finish(run_id, result.exit_code, result.stdout, result.stderr)

    def _append(self, run_id: int, stdout: str, stderr: str) -> None:
        try:
            self.ledger.append_output(run_id, stdout, stderr)
        except InvalidStateTransition:
            # 已被取消或结束，丢弃迟到的输出
            logger.debug("丢弃已结束任务的输出 run=%s", run_id)
        except Exception as e:
            logger.exception("写入任务输出失败 run=%s error=%s", run_id, e)

    def _finish(
        self, run_id: int, exit_code: int, stdout: str = "", stderr: str = ""
    ) -> None:
        try:
            self.ledger.finish(run_id, exit_code, stdout, stderr)
        except InvalidStateTransition as e:
            logger.warning("任务已处于终态，忽略结束请求 run=%s: %s", run_id, e)
        except Exception as e:
            logger.exception("写入任务结果失败 run=%s error=%s", run_id, e)

    async def cancel(self, run_id: int) -> JobRun:
        """取消任务

        在本进程内执行的任务会被取消（子进程随之终止）；
        不属于本进程的在途记录直接标记为失败。

        Raises:
            NotFound: 记录不存在
            InvalidStateTransition: 记录已处于终态
        """
        task = self._dispatched.get(run_id)
        if task is None:
            run = self.ledger.get(run_id)
            if run.is_terminal:
                raise InvalidStateTransition(
                    f"Run {run_id} already finished with state {run.state}"
                )
            return self.ledger.finish(
                run_id, EXIT_CANCELLED, stderr="cancelled: run was cancelled\n"
            )

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("[cancel] run=%s 已取消", run_id)
        return self.ledger.get(run_id)

    async def drain(self) -> None:
        """等待当前所有在途任务结束（停止时在取消之后调用）"""
        while self._dispatched:
            await asyncio.gather(*list(self._dispatched.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # APScheduler 回调
    # ------------------------------------------------------------------

    async def _tick(self) -> None:
        if not self._running:
            return
        try:
            await self.trigger()
        except Exception as e:
            logger.exception("[tick] 调度失败: %s", e)

    async def _reconcile_tick(self) -> None:
        if self.engine is None:
            return
        try:
            await self.engine.reconcile_all()
            self.engine.purge_orphaned(self.orphan_retention_days)
        except Exception as e:
            logger.exception("[reconcile] 周期对账失败: %s", e)

    async def _on_reconciled(self, provider_id: int, result: ReconcileResult) -> None:
        if not self._running:
            return
        logger.debug("对账完成后触发调度 provider=%s", provider_id)
        await self._tick()
