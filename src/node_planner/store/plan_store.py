"""
计划/作业持久层。

- 导入: 调用方在 transaction() 内 insert_plan + insert_jobs, 整批提交或整批回滚
- 到期查询: adjusted_now 落在 [start_at, start_at + duration) 内且剩余时长 > 最小时长
- 状态更新: 单行条件更新, 只前进不回退, 重复更新为 no-op
"""
from __future__ import annotations
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, AsyncIterator

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from node_planner.common.enums import (
    JOB_TRANSITIONS, PLAN_TRANSITIONS, RESUMABLE_JOB_STATUSES, JobStatus, PlanStatus,
)
from node_planner.common.models import NodePlan, PlanJob, StateTransition
import structlog

if TYPE_CHECKING:
    from node_planner.importer.batch_source import AllocationRecord
    from node_planner.importer.decompose import JobSlice

logger = structlog.get_logger()


@dataclass(frozen=True)
class DueJob:
    """一个可派发的 Job 及其所属计划信息 (只读快照)。"""
    node_id: str
    compute_class: str
    plan_id: int
    job_id: int
    order_index: int
    start_at: int
    duration_ms: int
    invoice_amount: float
    status: str = JobStatus.PENDING.value

    @property
    def end_at(self) -> int:
        return self.start_at + self.duration_ms

    def adjusted(self, adjusted_now: int) -> tuple[int, float]:
        """派发时重算: 只跑窗口剩余时长, 金额按比例缩放。"""
        adjusted_duration = self.end_at - adjusted_now
        adjusted_invoice = adjusted_duration / self.duration_ms * self.invoice_amount
        return adjusted_duration, adjusted_invoice


def _job_select() -> Select:
    return (
        select(
            NodePlan.node_id,
            NodePlan.compute_class,
            PlanJob.plan_id,
            PlanJob.id,
            PlanJob.order_index,
            PlanJob.start_at,
            PlanJob.duration_ms,
            PlanJob.invoice_amount,
            PlanJob.status,
        )
        .join(NodePlan, NodePlan.id == PlanJob.plan_id)
        .where(NodePlan.status != PlanStatus.COMPLETED.value)
    )


def _to_due_job(row) -> DueJob:
    return DueJob(
        node_id=row[0],
        compute_class=row[1],
        plan_id=row[2],
        job_id=row[3],
        order_index=row[4],
        start_at=row[5],
        duration_ms=row[6],
        invoice_amount=row[7],
        status=row[8],
    )


class PlanStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """整体事务: 正常退出提交, 异常回滚并上抛。"""
        async with self._session_factory() as db:
            async with db.begin():
                yield db

    # ─── 写入 (调用方事务内) ───

    async def insert_plan(
        self, db: AsyncSession, record: AllocationRecord, source_file: str,
    ) -> int:
        plan = NodePlan(
            node_id=record.node_id,
            source_file=source_file,
            start_at=record.start_at,
            stop_at=record.stop_at,
            invoice_amount=record.invoice_amount,
            compute_class=record.compute_class,
            status=PlanStatus.PENDING.value,
        )
        db.add(plan)
        await db.flush()
        return plan.id

    async def insert_jobs(
        self, db: AsyncSession, plan_id: int, node_id: str, slices: list[JobSlice],
    ) -> int:
        db.add_all([
            PlanJob(
                plan_id=plan_id,
                node_id=node_id,
                order_index=s.order_index,
                start_at=s.start_at,
                duration_ms=s.duration_ms,
                invoice_amount=s.invoice_amount,
                status=JobStatus.PENDING.value,
            )
            for s in slices
        ])
        await db.flush()
        return len(slices)

    # ─── 查询 ───

    async def query_due_jobs(
        self, adjusted_now: int, minimum_duration_ms: int,
    ) -> list[DueJob]:
        end_at = PlanJob.start_at + PlanJob.duration_ms
        stmt = (
            _job_select()
            .where(
                PlanJob.start_at < adjusted_now,
                end_at > adjusted_now,
                end_at - adjusted_now > minimum_duration_ms,
                PlanJob.status.in_([s.value for s in RESUMABLE_JOB_STATUSES]),
            )
            .order_by(PlanJob.plan_id, PlanJob.order_index)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [_to_due_job(row) for row in result.all()]

    async def query_next_job(self, plan_id: int, order_index: int) -> DueJob | None:
        stmt = _job_select().where(
            PlanJob.plan_id == plan_id,
            PlanJob.order_index == order_index + 1,
        )
        async with self._session_factory() as db:
            row = (await db.execute(stmt)).first()
            return _to_due_job(row) if row else None

    async def get_plan_status(self, plan_id: int) -> str | None:
        async with self._session_factory() as db:
            result = await db.execute(select(NodePlan.status).where(NodePlan.id == plan_id))
            return result.scalar_one_or_none()

    async def has_source_file(self, source_file: str) -> bool:
        """该批次是否已落库 (提交成功但 move 失败的批次不再重复导入)。"""
        stmt = select(NodePlan.id).where(NodePlan.source_file == source_file).limit(1)
        async with self._session_factory() as db:
            return (await db.execute(stmt)).first() is not None

    async def complete_finished_plans(self, trigger: str = "startup_sweep") -> list[int]:
        """
        补完成: 未完成但已无 pending/running Job 的计划标记 completed。

        覆盖最后一个 Job 结束后, 计划完成前进程退出的情况。
        """
        open_job = (
            select(PlanJob.id)
            .where(
                PlanJob.plan_id == NodePlan.id,
                PlanJob.status.in_([s.value for s in RESUMABLE_JOB_STATUSES]),
            )
            .exists()
        )
        stmt = select(NodePlan.id).where(
            NodePlan.status != PlanStatus.COMPLETED.value, ~open_job,
        ).order_by(NodePlan.id)
        async with self._session_factory() as db:
            plan_ids = list((await db.execute(stmt)).scalars().all())

        completed = [
            plan_id for plan_id in plan_ids
            if await self.update_plan_status(plan_id, PlanStatus.COMPLETED, trigger=trigger)
        ]
        if completed:
            logger.info("finished_plans_completed", count=len(completed), plan_ids=completed)
        return completed

    # ─── 状态迁移 ───

    async def update_plan_status(
        self, plan_id: int, status: PlanStatus, trigger: str = "",
    ) -> bool:
        """
        条件更新计划状态。

        Returns:
            True = 本次发生迁移; False = 已处于目标状态或之后 (幂等, 不报错)
        """
        now = datetime.now(timezone.utc)
        values: dict = {"status": status.value}
        if status == PlanStatus.ACTIVE:
            values["activated_at"] = now
        elif status == PlanStatus.COMPLETED:
            values["completed_at"] = now

        allowed = [s.value for s in PLAN_TRANSITIONS.get(status, ())]
        async with self.transaction() as db:
            previous = (await db.execute(
                select(NodePlan.status).where(NodePlan.id == plan_id)
            )).scalar_one_or_none()
            result = await db.execute(
                update(NodePlan)
                .where(NodePlan.id == plan_id, NodePlan.status.in_(allowed))
                .values(**values)
            )
            if result.rowcount == 0:
                logger.debug("plan_status_noop", plan_id=plan_id,
                             current=previous, target=status.value)
                return False
            db.add(StateTransition(
                entity_type="plan", entity_id=plan_id,
                from_status=previous, to_status=status.value, trigger=trigger,
            ))
        logger.info("plan_status_changed", plan_id=plan_id,
                    from_status=previous, to_status=status.value, trigger=trigger)
        return True

    async def update_job_status(
        self, job_id: int, status: JobStatus, error: str | None = None,
        trigger: str = "",
    ) -> bool:
        now = datetime.now(timezone.utc)
        values: dict = {"status": status.value}
        if status == JobStatus.RUNNING:
            values["started_at"] = now
            values["error_message"] = None
        else:
            values["finished_at"] = now
            if error is not None:
                values["error_message"] = error[:2000]

        allowed = [s.value for s in JOB_TRANSITIONS.get(status, ())]
        async with self.transaction() as db:
            previous = (await db.execute(
                select(PlanJob.status).where(PlanJob.id == job_id)
            )).scalar_one_or_none()
            result = await db.execute(
                update(PlanJob)
                .where(PlanJob.id == job_id, PlanJob.status.in_(allowed))
                .values(**values)
            )
            if result.rowcount == 0:
                return False
            db.add(StateTransition(
                entity_type="job", entity_id=job_id,
                from_status=previous, to_status=status.value, trigger=trigger,
            ))
        return True
