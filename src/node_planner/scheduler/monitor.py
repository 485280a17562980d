"""
到期 Job 监控。

每次轮询:
1. adjusted_now = now - time_lag (补偿上游上报延迟)
2. 查询到期集合 (窗口进行中, 剩余时长 > minimum_duration, 计划未完成)
3. 按 node_id 去重: 已有运行 → 跳过; 否则登记并异步启动执行器
到期 Job 可能位于链中任意位置 (重启后从中途恢复)。
"""
from __future__ import annotations
from datetime import timedelta
from typing import Callable

import structlog

from node_planner.common.timeutil import ms_to_datetime, to_ms, utc_now_ms
from node_planner.executor.plan_executor import PlanExecutor
from node_planner.scheduler.registry import ActiveNodeRegistry
from node_planner.store.plan_store import PlanStore

logger = structlog.get_logger()


class DueJobMonitor:
    def __init__(
        self,
        store: PlanStore,
        executor: PlanExecutor,
        registry: ActiveNodeRegistry,
        time_lag: timedelta,
        minimum_duration: timedelta,
        clock: Callable[[], int] = utc_now_ms,
    ) -> None:
        self._store = store
        self._executor = executor
        self._registry = registry
        self._time_lag_ms = to_ms(time_lag)
        self._minimum_ms = to_ms(minimum_duration)
        self._clock = clock

    async def process_plans(self) -> int:
        """单次轮询。查询失败直接上抛, 由周期循环记录后进入下一轮。"""
        now = self._clock()
        adjusted_now = now - self._time_lag_ms
        jobs = await self._store.query_due_jobs(adjusted_now, self._minimum_ms)

        logger.info("due_jobs_found", count=len(jobs),
                    at=ms_to_datetime(now).isoformat(),
                    adjusted_now=ms_to_datetime(adjusted_now).isoformat())

        activated = 0
        for job in jobs:
            task = self._registry.launch(
                job.node_id,
                lambda job=job: self._executor.execute_plan(job),
                name=f"plan-{job.plan_id}",
            )
            if task is None:
                logger.info("plan_already_active",
                            node_id=job.node_id, plan_id=job.plan_id)
                continue
            activated += 1
            logger.info("plan_activated", node_id=job.node_id, plan_id=job.plan_id,
                        order_index=job.order_index)
        return activated
