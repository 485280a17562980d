"""本地模拟后端: 不联网, 按 budget 休眠并产出合成输出。开发与演示用。"""
from __future__ import annotations
import asyncio
import itertools
from typing import AsyncIterator

import structlog

from node_planner.provisioning.base import (
    ComputeHandle, ComputeProvider, OutputLine, WorkloadSpec, wait_or_cancel,
)

logger = structlog.get_logger()


class SimulatedComputeProvider(ComputeProvider):
    def __init__(self, speedup: float = 1.0, heartbeat_seconds: float = 60.0) -> None:
        if speedup <= 0:
            raise ValueError("speedup must be positive")
        self._speedup = speedup
        self._heartbeat = heartbeat_seconds
        self._ids = itertools.count(1)
        self.active: set[str] = set()

    async def acquire(
        self,
        compute_class: str,
        budget_ms: int,
        cancel: asyncio.Event | None = None,
    ) -> ComputeHandle:
        rental_id = f"sim-{next(self._ids)}"
        self.active.add(rental_id)
        logger.info("rental_acquired", rental_id=rental_id,
                    compute_class=compute_class, simulated=True)
        return ComputeHandle(rental_id=rental_id, compute_class=compute_class,
                             provider=self.provider)

    async def run(
        self,
        handle: ComputeHandle,
        workload: WorkloadSpec,
        budget_ms: int,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[OutputLine]:
        remaining = budget_ms / 1000 / self._speedup
        yield OutputLine("stdout", f"{workload.command} started {' '.join(workload.args)}")
        while remaining > 0:
            step = min(remaining, self._heartbeat)
            await wait_or_cancel(asyncio.sleep(step), cancel)
            remaining -= step
            yield OutputLine("stdout", f"{workload.command} alive, {remaining:.1f}s left")
        yield OutputLine("stdout", f"{workload.command} finished")

    async def release(self, handle: ComputeHandle) -> None:
        self.active.discard(handle.rental_id)
        logger.info("rental_released", rental_id=handle.rental_id, simulated=True)

    @property
    def provider(self) -> str:
        return "simulated"
