"""游标分页内核

所有列表接口共用的 Connection 分页实现：
- 按不可变的自增 id 升序排序
- after / before 为开区间边界，永远不包含游标指向的记录本身
- 多取一条记录来判断是否还有下一页（或上一页），不做 count 查询
- 游标为 "<collection>:<id>" 的 url-safe base64 编码，对调用方不透明
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, TypeVar

from ..errors import InvalidArgument, InvalidCursor

T = TypeVar("T")

# SQLite INTEGER 上限
_MAX_SEQ = 2**63 - 1


def encode_cursor(collection: str, seq: int) -> str:
    raw = f"{collection}:{seq}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(collection: str, cursor: str) -> int:
    """解析游标为排序键

    Raises:
        InvalidCursor: 无法解析、属于其他集合或越界时抛出（不做静默修正）
    """
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidCursor(f"Malformed cursor: {cursor!r}") from e

    prefix, sep, value = raw.partition(":")
    if not sep or prefix != collection:
        raise InvalidCursor(f"Cursor {cursor!r} does not belong to {collection}")

    try:
        seq = int(value)
    except ValueError as e:
        raise InvalidCursor(f"Malformed cursor: {cursor!r}") from e

    if not 1 <= seq <= _MAX_SEQ:
        raise InvalidCursor(f"Cursor out of range: {cursor!r}")
    return seq


@dataclass(slots=True)
class PageInfo:
    has_previous_page: bool
    has_next_page: bool
    start_cursor: Optional[str]
    end_cursor: Optional[str]


@dataclass(slots=True)
class Edge(Generic[T]):
    node: T
    cursor: str


@dataclass(slots=True)
class Connection(Generic[T]):
    edges: List[Edge[T]]
    page_info: PageInfo

    @property
    def nodes(self) -> List[T]:
        return [edge.node for edge in self.edges]

    def map(self, fn: Callable[[T], Any]) -> "Connection[Any]":
        """转换节点类型，游标与分页信息保持不变"""
        return Connection(
            edges=[Edge(node=fn(edge.node), cursor=edge.cursor) for edge in self.edges],
            page_info=self.page_info,
        )


@dataclass(slots=True)
class PageRequest:
    """一次分页请求的参数"""

    after: Optional[str] = None
    before: Optional[str] = None
    first: Optional[int] = None
    last: Optional[int] = None

    def validate(self, max_page_size: Optional[int] = None) -> None:
        if self.first is not None and self.last is not None:
            raise InvalidArgument("Passing both `first` and `last` is not supported")
        for name, size in (("first", self.first), ("last", self.last)):
            if size is None:
                continue
            if size < 0:
                raise InvalidArgument(f"`{name}` must be non-negative")
            if max_page_size is not None and size > max_page_size:
                raise InvalidArgument(f"`{name}` must not exceed {max_page_size}")

    @property
    def backward(self) -> bool:
        if self.last is not None:
            return True
        return self.first is None and self.after is None and self.before is not None


def paginate(
    query,
    sort_column,
    collection: str,
    page: PageRequest,
    *,
    default_page_size: int = 20,
    max_page_size: Optional[int] = None,
) -> Connection[Any]:
    """对 SQLAlchemy 查询执行游标分页

    Args:
        query: 已应用过滤条件的查询对象
        sort_column: 单调递增的排序列（通常是自增 id）
        collection: 游标所属集合名称
        page: 分页参数
        default_page_size: 未指定 first/last 时的页大小
        max_page_size: 允许的最大页大小

    Returns:
        Connection: 分页结果
    """
    page.validate(max_page_size)

    if page.after is not None:
        query = query.filter(sort_column > decode_cursor(collection, page.after))
    if page.before is not None:
        query = query.filter(sort_column < decode_cursor(collection, page.before))

    backward = page.backward
    limit = page.last if backward else page.first
    if limit is None:
        limit = default_page_size

    order = sort_column.desc() if backward else sort_column.asc()
    rows = query.order_by(order).limit(limit + 1).all()

    has_more = len(rows) > limit
    rows = rows[:limit]
    if backward:
        rows.reverse()

    edges = [Edge(node=row, cursor=encode_cursor(collection, row.id)) for row in rows]
    page_info = PageInfo(
        has_previous_page=has_more if backward else page.after is not None,
        has_next_page=page.before is not None if backward else has_more,
        start_cursor=edges[0].cursor if edges else None,
        end_cursor=edges[-1].cursor if edges else None,
    )
    return Connection(edges=edges, page_info=page_info)
