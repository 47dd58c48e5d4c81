"""持久化数据模型

本模块定义 IndexHub 的三张核心表，使用 SQLAlchemy ORM 实现：
- provider_configs: 厂商账号配置（GitHub / GitLab / 文档站点）
- tracked_resources: 本地追踪的仓库或文档源
- job_runs: 索引任务的执行记录（审计流水）

所有表均以自增整数 id 作为不可变的插入序号，分页游标基于该序号编码。
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from ..errors import StorageUnavailable


def utcnow() -> datetime:
    """返回不带时区信息的 UTC 时间（SQLite 不保存时区）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ResourceKind(str, Enum):
    """追踪资源类型"""

    Git = "git"
    GitHub = "github"
    GitLab = "gitlab"
    Document = "document"


class ProviderKind(str, Enum):
    """厂商配置类型（纯 Git 仓库没有 Provider）"""

    GitHub = "github"
    GitLab = "gitlab"
    Document = "document"


class JobState(str, Enum):
    """任务生命周期状态"""

    Pending = "pending"
    Running = "running"
    Succeeded = "succeeded"
    Failed = "failed"


IN_FLIGHT_STATES = (JobState.Pending.value, JobState.Running.value)
TERMINAL_STATES = (JobState.Succeeded.value, JobState.Failed.value)


# SQLAlchemy 基类（Typed Declarative）
class Base(DeclarativeBase):
    pass


class ProviderConfig(Base):
    """厂商配置表

    字段说明：
    - kind: github / gitlab / document
    - display_name: 展示名称
    - access_token: 访问令牌（API 只写不读）
    - endpoint: GitHub/GitLab 的 API 根地址，或文档站点的种子 URL
    - last_reconciled_at: 最近一次成功对账时间
    - last_error: 最近一次对账失败原因，成功后清空
    """

    __tablename__ = "provider_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    endpoint: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_reconciled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<ProviderConfig(id={self.id}, kind={self.kind}, "
            f"display_name={self.display_name})>"
        )


class TrackedResource(Base):
    """追踪资源表

    只能由对账流程（或运维手动录入纯 Git 仓库）创建，任务执行不会创建资源。
    厂商不再上报的资源不会被删除，而是标记 orphaned 并清除 active。

    唯一性：
    - (provider_id, vendor_id) 在两者都存在时唯一
    - 无 Provider 且未孤立的记录（纯 Git）按 (kind, locator) 唯一
    """

    __tablename__ = "tracked_resources"
    __table_args__ = (
        UniqueConstraint("provider_id", "vendor_id", name="uq_resource_vendor"),
        Index(
            "uq_resource_local_locator",
            "kind",
            "locator",
            unique=True,
            sqlite_where=text("provider_id IS NULL AND orphaned = 0"),
            postgresql_where=text("provider_id IS NULL AND NOT orphaned"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String, nullable=False, index=True)
    vendor_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    provider_id: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, index=True
    )
    locator: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    orphaned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_crawl: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<TrackedResource(id={self.id}, kind={self.kind}, name={self.name}, "
            f"active={self.active}, orphaned={self.orphaned})>"
        )

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式"""
        return {
            "id": self.id,
            "kind": self.kind,
            "vendor_id": self.vendor_id,
            "provider_id": self.provider_id,
            "locator": self.locator,
            "name": self.name,
            "active": self.active,
            "orphaned": self.orphaned,
            "pinned": self.pinned,
            "needs_crawl": self.needs_crawl,
            "last_synced_at": _iso(self.last_synced_at),
            "created_at": _iso(self.created_at),
        }


class JobRun(Base):
    """任务执行记录表

    resource_id 只是弱引用（无外键），资源删除后历史记录仍然保留。
    (resource_id, job_kind) 在 pending/running 状态下通过部分唯一索引保证唯一，
    这是“同一资源同时最多一个在途任务”的唯一权威约束。
    """

    __tablename__ = "job_runs"
    __table_args__ = (
        Index(
            "uq_job_runs_in_flight",
            "resource_id",
            "job_kind",
            unique=True,
            sqlite_where=text("state IN ('pending', 'running')"),
            postgresql_where=text("state IN ('pending', 'running')"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    resource_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    job_kind: Mapped[str] = mapped_column(String, nullable=False, index=True)
    state: Mapped[str] = mapped_column(
        String, nullable=False, default=JobState.Pending.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stdout: Mapped[str] = mapped_column(Text, nullable=False, default="")
    stderr: Mapped[str] = mapped_column(Text, nullable=False, default="")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def __repr__(self) -> str:
        return (
            f"<JobRun(id={self.id}, resource_id={self.resource_id}, "
            f"job_kind={self.job_kind}, state={self.state})>"
        )

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式"""
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "job_kind": self.job_kind,
            "state": self.state,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


class DatabaseManager:
    """数据库管理器（单例模式）

    提供数据库连接和会话管理功能，支持自动创建表结构。
    采用线程安全的单例模式，确保全局只有一个数据库管理器实例。
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls, db_path: str = "indexhub.db"):
        if cls._instance is None:
            with cls._lock:
                # 双重检查锁定
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, db_path: str = "indexhub.db"):
        """初始化数据库管理器

        Args:
            db_path: SQLite 数据库文件路径
        """
        # 确保只初始化一次
        if self._initialized:
            return

        self.db_path = db_path
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
            echo=False,  # 设为 True 可查看 SQL 语句
        )
        # 线程安全地创建表结构
        with self.__class__._lock:
            try:
                Base.metadata.create_all(self.engine, checkfirst=True)
            except Exception as e:
                self.engine.dispose()
                self.__class__._instance = None
                raise StorageUnavailable(
                    f"Storage unavailable at {db_path}: {e}"
                ) from e
        # expire_on_commit=False：提交后返回的对象仍可在会话外读取
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

        self._initialized = True

    def get_session(self):
        """获取数据库会话"""
        return self.Session()

    def health_check(self) -> None:
        """检查存储是否可用

        Raises:
            StorageUnavailable: 无法执行最简单的查询时抛出
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            raise StorageUnavailable(f"Storage unavailable at {self.db_path}: {e}") from e

    @classmethod
    def reset_instance(cls):
        """重置单例实例（主要用于测试）"""
        with cls._lock:
            if cls._instance is not None and getattr(cls._instance, "_initialized", False):
                cls._instance.engine.dispose()
            cls._instance = None

    @classmethod
    def get_instance(cls, db_path: str = "indexhub.db") -> "DatabaseManager":
        """获取单例实例的便捷方法

        Args:
            db_path: SQLite 数据库文件路径

        Returns:
            DatabaseManager: 单例实例
        """
        return cls(db_path)
