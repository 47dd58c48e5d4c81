"""对账差异计算

纯函数实现，不依赖数据库与网络，便于单独测试：
输入本地追踪记录与厂商列表，输出需要执行的创建/退役/刷新操作。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from ..errors import ProviderProtocolError
from ..providers.base import VendorCandidate


@dataclass(slots=True)
class Retire:
    resource_id: int
    # pinned 资源保持 active 不变
    deactivate: bool


@dataclass(slots=True)
class Refresh:
    resource_id: int
    name: str
    locator: str
    needs_crawl: bool
    # 曾被孤立、现在重新被厂商上报
    restore: bool


@dataclass(slots=True)
class ReconcilePlan:
    creates: List[VendorCandidate] = field(default_factory=list)
    retires: List[Retire] = field(default_factory=list)
    refreshes: List[Refresh] = field(default_factory=list)
    # 两侧都存在的记录数（含需要刷新的）
    matched: List[int] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not (self.creates or self.retires or self.refreshes)


def diff(tracked: Iterable[Any], listing: Iterable[VendorCandidate]) -> ReconcilePlan:
    """计算本地追踪集合与厂商列表之间的差异

    Args:
        tracked: 某个 Provider 下的追踪记录（需有 id/vendor_id/name/locator/
            needs_crawl/orphaned/pinned 属性）
        listing: 厂商当前上报的候选资源

    Returns:
        ReconcilePlan: 待执行的操作集合；active 字段永远不会出现在刷新操作中

    Raises:
        ProviderProtocolError: 厂商列表中出现重复或缺失的 vendor_id
    """
    vendor: dict[str, VendorCandidate] = {}
    for candidate in listing:
        if not candidate.vendor_id:
            raise ProviderProtocolError(f"Vendor entry without id: {candidate.name!r}")
        if candidate.vendor_id in vendor:
            raise ProviderProtocolError(
                f"Duplicate vendor id in listing: {candidate.vendor_id!r}"
            )
        vendor[candidate.vendor_id] = candidate

    local: dict[str, Any] = {
        record.vendor_id: record for record in tracked if record.vendor_id is not None
    }

    plan = ReconcilePlan()
    for vendor_id, candidate in vendor.items():
        record = local.get(vendor_id)
        if record is None:
            plan.creates.append(candidate)
            continue

        plan.matched.append(record.id)
        refresh = _refresh_for(record, candidate)
        if refresh is not None:
            plan.refreshes.append(refresh)

    for vendor_id, record in local.items():
        if vendor_id in vendor or record.orphaned:
            continue
        plan.retires.append(Retire(resource_id=record.id, deactivate=not record.pinned))

    return plan


def _refresh_for(record: Any, candidate: VendorCandidate) -> Optional[Refresh]:
    changed = (
        record.name != candidate.name
        or record.locator != candidate.locator
        or bool(record.needs_crawl) != candidate.needs_crawl
        or record.orphaned
    )
    if not changed:
        return None
    return Refresh(
        resource_id=record.id,
        name=candidate.name,
        locator=candidate.locator,
        needs_crawl=candidate.needs_crawl,
        restore=bool(record.orphaned),
    )
