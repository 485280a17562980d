"""
计划执行器: 单个计划的 Job 链顺序执行。

状态: running → advancing → (running | completing) → done
- 派发时重算剩余时长与金额 (跨重启/调度延迟时只跑剩余部分)
- 远程步骤: acquire → run (流式输出) → release (所有路径必释放)
- 单个 Job 失败只记录, 不重试, 继续按 order_index + 1 查下一个
- 链耗尽 → 计划 completed (幂等)
- 取消 (关停) 时停止推进, 不标记完成, 中断的 Job 保持 running 以便重启后恢复
"""
from __future__ import annotations
import asyncio
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from node_planner.common.enums import JobStatus, PlanStatus
from node_planner.common.exceptions import (
    ProvisioningCancelledError, ProvisioningError, ProvisioningTimeoutError,
)
from node_planner.common.timeutil import to_ms, utc_now_ms
from node_planner.provisioning.base import ComputeProvider, WorkloadSpec, wait_or_cancel
from node_planner.store.plan_store import DueJob, PlanStore
import structlog

logger = structlog.get_logger()

DEFAULT_RUN_TIMEOUT_FACTOR = 1.05


@dataclass
class PlanRunResult:
    plan_id: int
    node_id: str
    jobs_done: int = 0
    jobs_failed: int = 0
    jobs_skipped: int = 0
    completed: bool = False


class PlanExecutor:
    def __init__(
        self,
        store: PlanStore,
        provider: ComputeProvider,
        time_lag: timedelta,
        shutdown: asyncio.Event | None = None,
        clock: Callable[[], int] = utc_now_ms,
        run_timeout_factor: float = DEFAULT_RUN_TIMEOUT_FACTOR,
    ) -> None:
        self._store = store
        self._provider = provider
        self._time_lag_ms = to_ms(time_lag)
        self._shutdown = shutdown or asyncio.Event()
        self._clock = clock
        self._timeout_factor = run_timeout_factor

    @property
    def shutdown(self) -> asyncio.Event:
        return self._shutdown

    def adjusted_now(self) -> int:
        return self._clock() - self._time_lag_ms

    async def execute_plan(self, initial: DueJob) -> PlanRunResult:
        result = PlanRunResult(plan_id=initial.plan_id, node_id=initial.node_id)
        log = logger.bind(node_id=initial.node_id, plan_id=initial.plan_id)

        await self._store.update_plan_status(
            initial.plan_id, PlanStatus.ACTIVE, trigger="executor_start")

        current: DueJob | None = initial
        while current is not None:
            outcome = await self._run_job(current)
            if outcome == JobStatus.DONE:
                result.jobs_done += 1
            elif outcome == JobStatus.FAILED:
                result.jobs_failed += 1
            elif outcome == JobStatus.SKIPPED:
                result.jobs_skipped += 1

            if self._shutdown.is_set():
                log.warning("plan_interrupted", order_index=current.order_index)
                return result

            current = await self._store.query_next_job(current.plan_id, current.order_index)

        result.completed = True
        await self._store.update_plan_status(
            initial.plan_id, PlanStatus.COMPLETED, trigger="chain_exhausted")
        log.info("plan_completed", done=result.jobs_done,
                 failed=result.jobs_failed, skipped=result.jobs_skipped)
        return result

    async def _run_job(self, job: DueJob) -> JobStatus:
        log = logger.bind(node_id=job.node_id, plan_id=job.plan_id,
                          order_index=job.order_index)

        # 提前拿到的下一片: 等到切片窗口开始再派发
        wait_ms = job.start_at - self.adjusted_now()
        if wait_ms > 0:
            log.info("job_waiting_for_window", wait_seconds=round(wait_ms / 1000, 1))
            try:
                await wait_or_cancel(asyncio.sleep(wait_ms / 1000), self._shutdown)
            except ProvisioningCancelledError:
                return JobStatus.PENDING

        adjusted_duration, adjusted_invoice = job.adjusted(self.adjusted_now())
        if adjusted_duration <= 0:
            await self._store.update_job_status(
                job.job_id, JobStatus.SKIPPED, error="window elapsed before dispatch",
                trigger="window_elapsed")
            log.warning("job_window_elapsed")
            return JobStatus.SKIPPED

        await self._store.update_job_status(job.job_id, JobStatus.RUNNING, trigger="dispatch")
        log.info("job_dispatch",
                 adjusted_duration_ms=adjusted_duration,
                 adjusted_invoice_amount=round(adjusted_invoice, 6),
                 compute_class=job.compute_class)

        try:
            await self._run_remote(job, adjusted_duration)
        except ProvisioningCancelledError:
            log.warning("job_cancelled")
            return JobStatus.RUNNING
        except Exception as e:
            log.error("job_failed", error=str(e), error_type=type(e).__name__)
            await self._store.update_job_status(
                job.job_id, JobStatus.FAILED, error=str(e) or type(e).__name__,
                trigger="remote_error")
            return JobStatus.FAILED

        await self._store.update_job_status(job.job_id, JobStatus.DONE, trigger="remote_exit")
        log.info("job_finished")
        return JobStatus.DONE

    async def _run_remote(self, job: DueJob, budget_ms: int) -> None:
        handle = await self._provider.acquire(job.compute_class, budget_ms, self._shutdown)
        try:
            workload = WorkloadSpec(
                command=job.node_id,
                args=[json.dumps({"duration": budget_ms / 1000})],
            )
            timeout = budget_ms * self._timeout_factor / 1000
            try:
                async with asyncio.timeout(timeout):
                    async for line in self._provider.run(handle, workload, budget_ms, self._shutdown):
                        if line.stream == "stderr":
                            logger.warning("remote_stderr", node_id=job.node_id, line=line.data)
                        else:
                            logger.info("remote_stdout", node_id=job.node_id, line=line.data)
            except TimeoutError as e:
                raise ProvisioningTimeoutError(
                    f"Remote run exceeded {timeout:.0f}s") from e
        finally:
            try:
                await self._provider.release(handle)
            except ProvisioningError as e:
                logger.error("release_failed", rental_id=handle.rental_id, error=str(e))
