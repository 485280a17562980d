"""全局 pytest fixtures: SQLite 临时文件库 + 可编排的算力后端。"""
import asyncio
from typing import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from node_planner.common.database import create_engine, create_session_factory, init_schema
from node_planner.common.exceptions import ProvisioningError
from node_planner.provisioning.base import (
    ComputeHandle, ComputeProvider, OutputLine, WorkloadSpec, wait_or_cancel,
)
from node_planner.store.plan_store import PlanStore

MINUTE = 60 * 1000


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'planner.db'}")
    await init_schema(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def store(session_factory) -> PlanStore:
    return PlanStore(session_factory)


class FakeClock:
    """可手动推进的墙钟 (epoch 毫秒)。"""

    def __init__(self, now: int = 1_000 * MINUTE) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class ScriptedProvider(ComputeProvider):
    """
    按 compute_class / 调用序号编排结果的假后端。

    fail_on: 第 N 次 run (从 1 开始) 抛 ProvisioningError
    gate: 若提供, run 会等待该 Event 后才结束 (用于并发测试)
    """

    def __init__(self, fail_on: set[int] | None = None, gate: asyncio.Event | None = None,
                 fail_acquire: bool = False, clock: FakeClock | None = None) -> None:
        self.fail_on = fail_on or set()
        self.gate = gate
        self.fail_acquire = fail_acquire
        self.clock = clock
        self.acquired: list[tuple[str, int]] = []
        self.runs: list[WorkloadSpec] = []
        self.released: list[str] = []
        self.concurrent = 0
        self.max_concurrent = 0

    async def acquire(self, compute_class, budget_ms, cancel=None) -> ComputeHandle:
        if self.fail_acquire:
            raise ProvisioningError("no offers")
        self.acquired.append((compute_class, budget_ms))
        return ComputeHandle(rental_id=f"r{len(self.acquired)}",
                             compute_class=compute_class, provider=self.provider)

    async def run(self, handle, workload, budget_ms, cancel=None):
        self.runs.append(workload)
        run_no = len(self.runs)
        self.concurrent += 1
        self.max_concurrent = max(self.max_concurrent, self.concurrent)
        try:
            yield OutputLine("stdout", f"start {workload.command}")
            if self.gate is not None:
                await wait_or_cancel(self.gate.wait(), cancel)
            else:
                await asyncio.sleep(0)
            if run_no in self.fail_on:
                raise ProvisioningError(f"run {run_no} crashed")
            yield OutputLine("stderr", "done")
        finally:
            self.concurrent -= 1
            # 远程运行占满预算 (失败也推进, 避免下一片等待真实时间)
            if self.clock is not None:
                self.clock.advance(budget_ms)

    async def release(self, handle) -> None:
        self.released.append(handle.rental_id)

    @property
    def provider(self) -> str:
        return "scripted"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider_cls():
    return ScriptedProvider
