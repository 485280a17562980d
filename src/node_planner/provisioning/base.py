"""远程算力供给接口。执行器只依赖 acquire / run / release 三个能力。"""
from __future__ import annotations
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, TypeVar

from node_planner.common.exceptions import ProvisioningCancelledError

T = TypeVar("T")


@dataclass(frozen=True)
class ComputeHandle:
    """已租用的执行单元。"""
    rental_id: str
    compute_class: str
    provider: str
    meta: dict = field(default_factory=dict)


@dataclass(frozen=True)
class WorkloadSpec:
    command: str
    args: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OutputLine:
    stream: str  # stdout | stderr
    data: str


async def wait_or_cancel(aw: Awaitable[T], cancel: asyncio.Event | None) -> T:
    """
    等待 aw, 若 cancel 先被置位则取消 aw 并抛 ProvisioningCancelledError。
    """
    if cancel is None:
        return await aw
    if cancel.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise ProvisioningCancelledError("Shutdown requested")

    work = asyncio.ensure_future(aw)
    stopper = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        stopper.cancel()

    if work in done:
        return work.result()
    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise ProvisioningCancelledError("Shutdown requested")


class ComputeProvider(ABC):
    """远程算力后端基类。"""

    async def connect(self) -> None:
        """建立到后端的连接 (默认无操作)。"""

    async def close(self) -> None:
        """断开连接 (默认无操作)。"""

    @abstractmethod
    async def acquire(
        self,
        compute_class: str,
        budget_ms: int,
        cancel: asyncio.Event | None = None,
    ) -> ComputeHandle:
        """租用一个匹配 compute_class 的执行单元。"""
        ...

    @abstractmethod
    def run(
        self,
        handle: ComputeHandle,
        workload: WorkloadSpec,
        budget_ms: int,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[OutputLine]:
        """运行 workload, 逐行产出输出, 进程退出时结束。"""
        ...

    @abstractmethod
    async def release(self, handle: ComputeHandle) -> None:
        """停止并结算。所有退出路径都必须调用。"""
        ...

    @property
    @abstractmethod
    def provider(self) -> str:
        ...
