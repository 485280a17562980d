"""DueJobMonitor 集成测试: 到期查询 → 注册表 → 执行器。"""
import asyncio
from datetime import timedelta

import pytest

from node_planner.common.enums import PlanStatus
from node_planner.executor.plan_executor import PlanExecutor
from node_planner.importer.batch_source import AllocationRecord
from node_planner.importer.decompose import split_window
from node_planner.scheduler.monitor import DueJobMonitor
from node_planner.scheduler.registry import ActiveNodeRegistry

MINUTE = 60 * 1000
LAG = timedelta(minutes=15)


async def seed_plan(store, node_id, start, stop, invoice=6.0):
    record = AllocationRecord(node_id=node_id, start_at=start, stop_at=stop,
                              invoice_amount=invoice, compute_class="gpu")
    slices = split_window(start, stop, invoice, timedelta(minutes=15), timedelta(minutes=60))
    async with store.transaction() as db:
        plan_id = await store.insert_plan(db, record, "batch.csv")
        await store.insert_jobs(db, plan_id, node_id, slices)
    return plan_id


def _wire(store, provider, clock):
    registry = ActiveNodeRegistry()
    executor = PlanExecutor(store, provider, time_lag=LAG, clock=clock)
    monitor = DueJobMonitor(store, executor, registry, time_lag=LAG,
                            minimum_duration=timedelta(minutes=15), clock=clock)
    return monitor, registry


@pytest.mark.asyncio
async def test_one_run_per_node(store, clock, provider_cls):
    adjusted = clock() - 15 * MINUTE
    plan_a1 = await seed_plan(store, "node-a", adjusted - 10 * MINUTE, adjusted + 110 * MINUTE)
    plan_a2 = await seed_plan(store, "node-a", adjusted - 5 * MINUTE, adjusted + 25 * MINUTE)
    plan_b = await seed_plan(store, "node-b", adjusted - MINUTE, adjusted + 29 * MINUTE)

    gate = asyncio.Event()
    provider = provider_cls(gate=gate, clock=clock)
    monitor, registry = _wire(store, provider, clock)

    assert await monitor.process_plans() == 2
    assert sorted(registry.active_nodes()) == ["node-a", "node-b"]
    # 上一轮仍在运行: 不重复启动
    assert await monitor.process_plans() == 0

    async with asyncio.timeout(5):
        while provider.concurrent < 2:
            await asyncio.sleep(0.01)
    gate.set()
    await registry.wait_all()
    assert len(registry) == 0
    assert await store.get_plan_status(plan_a1) == PlanStatus.COMPLETED.value
    assert await store.get_plan_status(plan_b) == PlanStatus.COMPLETED.value
    assert await store.get_plan_status(plan_a2) == PlanStatus.PENDING.value
    assert provider.max_concurrent == 2


@pytest.mark.asyncio
async def test_resume_mid_chain(store, clock, provider_cls):
    adjusted = clock() - 15 * MINUTE
    start = adjusted - 70 * MINUTE
    plan_id = await seed_plan(store, "node-c", start, start + 150 * MINUTE)

    provider = provider_cls(clock=clock)
    monitor, registry = _wire(store, provider, clock)
    assert await monitor.process_plans() == 1
    await registry.wait_all()

    # 从 order_index 1 恢复: 只跑剩余 50 分钟, 然后最后一片 30 分钟
    assert provider.acquired == [("gpu", 50 * MINUTE), ("gpu", 30 * MINUTE)]
    assert await store.get_plan_status(plan_id) == PlanStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_nothing_due(store, clock, provider_cls):
    adjusted = clock() - 15 * MINUTE
    await seed_plan(store, "node-a", adjusted + 5 * MINUTE, adjusted + 65 * MINUTE)
    monitor, registry = _wire(store, provider_cls(clock=clock), clock)
    assert await monitor.process_plans() == 0
    assert len(registry) == 0
