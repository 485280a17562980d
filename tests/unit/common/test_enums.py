from node_planner.common.enums import (
    JOB_TRANSITIONS, PLAN_TRANSITIONS, RESUMABLE_JOB_STATUSES, JobStatus, PlanStatus,
)


def test_plan_never_regresses():
    assert PlanStatus.PENDING not in PLAN_TRANSITIONS
    assert PlanStatus.COMPLETED not in PLAN_TRANSITIONS[PlanStatus.ACTIVE]
    assert PlanStatus.COMPLETED not in PLAN_TRANSITIONS[PlanStatus.COMPLETED]


def test_terminal_job_statuses_not_resumable():
    for s in (JobStatus.DONE, JobStatus.FAILED, JobStatus.SKIPPED):
        assert s not in RESUMABLE_JOB_STATUSES


def test_finished_jobs_cannot_restart():
    assert JobStatus.DONE not in JOB_TRANSITIONS[JobStatus.RUNNING]
    assert JobStatus.FAILED not in JOB_TRANSITIONS[JobStatus.RUNNING]


def test_string_values():
    assert PlanStatus.COMPLETED == "completed"
    assert JobStatus.RUNNING == "running"
