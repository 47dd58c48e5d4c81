"""任务执行流水（Job Run Ledger）

本模块记录每一次索引任务的尝试：
- create: 新建 pending 记录，同一 (resource_id, job_kind) 最多一个在途记录
- start / finish: 推进生命周期，终态记录不可再修改
- stats: 按状态聚合统计
- fail_orphaned_runs: 进程重启后把遗留的在途记录标记为失败

在途唯一性由 job_runs 表上的部分唯一索引保证，插入路径额外用锁串行化，
确保并发创建时最多只有一个成功。
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ..errors import DuplicateInFlightJob, InvalidStateTransition, NotFound
from ..models.entities import (
    IN_FLIGHT_STATES,
    DatabaseManager,
    JobRun,
    JobState,
    utcnow,
)

logger = logging.getLogger("indexhub.ledger")

DEFAULT_LOG_LIMIT_BYTES = 64 * 1024

CRASH_DIAGNOSTIC = "cancelled: scheduler restarted while the run was in flight"


def cap_log(text: Optional[str], limit_bytes: int = DEFAULT_LOG_LIMIT_BYTES) -> str:
    """保留日志末尾 limit_bytes 字节，截断时在开头加入标记"""
    if not text:
        return ""
    data = text.encode("utf-8", errors="replace")
    if len(data) <= limit_bytes:
        return text
    dropped = len(data) - limit_bytes
    tail = data[-limit_bytes:].decode("utf-8", errors="ignore")
    return f"[... truncated {dropped} bytes ...]\n{tail}"


class JobRunLedger:
    """任务执行流水

    Attributes:
        db_manager: 数据库管理器
        log_limit_bytes: stdout/stderr 保留的最大字节数
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        log_limit_bytes: int = DEFAULT_LOG_LIMIT_BYTES,
    ):
        self.db_manager = db_manager or DatabaseManager.get_instance()
        self.log_limit_bytes = log_limit_bytes
        # 单写者：串行化插入路径
        self._write_lock = threading.Lock()

    def create(self, resource_id: int, job_kind: str) -> JobRun:
        """新建一条 pending 记录

        Raises:
            DuplicateInFlightJob: 该资源该类型已存在 pending/running 记录
        """
        job_kind = getattr(job_kind, "value", job_kind)
        with self._write_lock:
            session = self.db_manager.get_session()
            try:
                existing = (
                    session.query(JobRun.id)
                    .filter(
                        JobRun.resource_id == resource_id,
                        JobRun.job_kind == job_kind,
                        JobRun.state.in_(IN_FLIGHT_STATES),
                    )
                    .first()
                )
                if existing is not None:
                    raise DuplicateInFlightJob(resource_id, job_kind)

                run = JobRun(
                    resource_id=resource_id,
                    job_kind=job_kind,
                    state=JobState.Pending.value,
                    created_at=utcnow(),
                    stdout="",
                    stderr="",
                )
                session.add(run)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateInFlightJob(resource_id, job_kind) from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        logger.debug(
            "创建任务记录 run=%s resource=%s kind=%s", run.id, resource_id, job_kind
        )
        return run

    def start(self, run_id: int) -> JobRun:
        """pending -> running"""
        session = self.db_manager.get_session()
        try:
            run = self._get_for_update(session, run_id)
            if run.state != JobState.Pending.value:
                raise InvalidStateTransition(
                    f"Run {run_id} cannot start from state {run.state}"
                )
            run.state = JobState.Running.value
            run.started_at = utcnow()
            session.commit()
            return run
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def append_output(
        self, run_id: int, stdout: str = "", stderr: str = ""
    ) -> JobRun:
        """为运行中的任务追加输出（按上限截断）"""
        session = self.db_manager.get_session()
        try:
            run = self._get_for_update(session, run_id)
            if run.state != JobState.Running.value:
                raise InvalidStateTransition(
                    f"Run {run_id} is not running (state={run.state})"
                )
            run.stdout = cap_log((run.stdout or "") + stdout, self.log_limit_bytes)
            run.stderr = cap_log((run.stderr or "") + stderr, self.log_limit_bytes)
            session.commit()
            return run
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def finish(
        self,
        run_id: int,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
    ) -> JobRun:
        """结束任务：exit_code 为 0 记为 succeeded，否则 failed

        已追加的输出会与本次输出合并后再截断。

        Raises:
            NotFound: 记录不存在
            InvalidStateTransition: 记录已处于终态
        """
        session = self.db_manager.get_session()
        try:
            run = self._get_for_update(session, run_id)
            if run.is_terminal:
                raise InvalidStateTransition(
                    f"Run {run_id} already finished with state {run.state}"
                )
            run.state = (
                JobState.Succeeded.value if exit_code == 0 else JobState.Failed.value
            )
            run.exit_code = exit_code
            run.finished_at = utcnow()
            if run.started_at is None:
                run.started_at = run.finished_at
            run.stdout = cap_log((run.stdout or "") + (stdout or ""), self.log_limit_bytes)
            run.stderr = cap_log((run.stderr or "") + (stderr or ""), self.log_limit_bytes)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            "任务结束 run=%s resource=%s kind=%s state=%s exit_code=%s",
            run.id,
            run.resource_id,
            run.job_kind,
            run.state,
            exit_code,
        )
        return run

    def get(self, run_id: int) -> JobRun:
        session = self.db_manager.get_session()
        try:
            run = session.get(JobRun, run_id)
            if run is None:
                raise NotFound(f"Job run {run_id} not found")
            return run
        finally:
            session.close()

    def stats(self, job_kinds: Optional[Iterable[str]] = None) -> Dict[str, int]:
        """统计任务状态

        Returns:
            {"success": n, "failed": n, "pending": n}，pending 包含 running
        """
        session = self.db_manager.get_session()
        try:
            query = session.query(JobRun.state, func.count(JobRun.id))
            kinds = [getattr(k, "value", k) for k in job_kinds] if job_kinds else []
            if kinds:
                query = query.filter(JobRun.job_kind.in_(kinds))
            counts = dict(query.group_by(JobRun.state).all())
        finally:
            session.close()

        return {
            "success": counts.get(JobState.Succeeded.value, 0),
            "failed": counts.get(JobState.Failed.value, 0),
            "pending": counts.get(JobState.Pending.value, 0)
            + counts.get(JobState.Running.value, 0),
        }

    def fail_orphaned_runs(self, diagnostic: str = CRASH_DIAGNOSTIC) -> int:
        """把所有 pending/running 记录标记为失败（重启恢复）

        Returns:
            被标记的记录数
        """
        session = self.db_manager.get_session()
        try:
            runs = session.query(JobRun).filter(JobRun.state.in_(IN_FLIGHT_STATES)).all()
            now = utcnow()
            for run in runs:
                run.state = JobState.Failed.value
                run.exit_code = -1
                run.finished_at = now
                run.stderr = cap_log(
                    (run.stderr or "") + f"\n{diagnostic}\n", self.log_limit_bytes
                )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if runs:
            logger.warning("重启恢复：%d 条遗留在途任务已标记为失败", len(runs))
        return len(runs)

    def in_flight_resource_ids(self, job_kind: Optional[str] = None) -> set[int]:
        session = self.db_manager.get_session()
        try:
            query = session.query(JobRun.resource_id).filter(
                JobRun.state.in_(IN_FLIGHT_STATES)
            )
            if job_kind is not None:
                query = query.filter(JobRun.job_kind == getattr(job_kind, "value", job_kind))
            return {row.resource_id for row in query.all()}
        finally:
            session.close()

    def latest_runs(self, resource_ids: Sequence[int]) -> Dict[int, JobRun]:
        """每个资源最近一次终态记录（按 id 最大）"""
        if not resource_ids:
            return {}
        session = self.db_manager.get_session()
        try:
            latest_ids = (
                select(func.max(JobRun.id))
                .where(
                    JobRun.resource_id.in_(list(resource_ids)),
                    JobRun.state.notin_(IN_FLIGHT_STATES),
                )
                .group_by(JobRun.resource_id)
            )
            runs = session.query(JobRun).filter(JobRun.id.in_(latest_ids)).all()
            return {run.resource_id: run for run in runs}
        finally:
            session.close()

    def _get_for_update(self, session, run_id: int) -> JobRun:
        run = session.get(JobRun, run_id)
        if run is None:
            raise NotFound(f"Job run {run_id} not found")
        return run
