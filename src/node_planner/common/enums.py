"""状态枚举: 单一真理源。"""
from enum import StrEnum


class PlanStatus(StrEnum):
    PENDING = "pending"; ACTIVE = "active"; COMPLETED = "completed"


class JobStatus(StrEnum):
    PENDING = "pending"; RUNNING = "running"; DONE = "done"
    FAILED = "failed"; SKIPPED = "skipped"


# 仅允许前进; 值 = 可迁入该状态的前置状态
PLAN_TRANSITIONS: dict[PlanStatus, tuple[PlanStatus, ...]] = {
    PlanStatus.ACTIVE: (PlanStatus.PENDING,),
    PlanStatus.COMPLETED: (PlanStatus.PENDING, PlanStatus.ACTIVE),
}

JOB_TRANSITIONS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.RUNNING: (JobStatus.PENDING, JobStatus.RUNNING),
    JobStatus.DONE: (JobStatus.RUNNING,),
    JobStatus.FAILED: (JobStatus.RUNNING,),
    JobStatus.SKIPPED: (JobStatus.PENDING, JobStatus.RUNNING),
}

# Monitor 可拾取的 Job 状态 (RUNNING = 重启前被中断的运行, 可恢复)
RESUMABLE_JOB_STATUSES: tuple[JobStatus, ...] = (JobStatus.PENDING, JobStatus.RUNNING)
