"""PlanImporter 集成测试: CSV 批次 → SQLite。"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from node_planner.common.models import NodePlan, PlanJob
from node_planner.importer.batch_source import FileBatchSource
from node_planner.importer.plan_importer import PlanImporter
from node_planner.store.plan_store import PlanStore

MINUTE = 60 * 1000
T0 = 1_700_000_000_000
HEADER = "key.0,key.1,value.0,value.1,value.2,value.3,value.4,value.5\n"


def _row(node_id, start, stop, invoice=10.0, compute_class="gpu"):
    return f"r,{node_id},{start},{stop},{invoice},,,{compute_class}\n"


@pytest.fixture
def source(tmp_path):
    return FileBatchSource(str(tmp_path / "incoming"), str(tmp_path / "imported"),
                           str(tmp_path / "failed"))


def _importer(store, source):
    return PlanImporter(store, source, minimum_duration=timedelta(minutes=15),
                        maximum_duration=timedelta(minutes=60))


def _write(tmp_path, name, *rows):
    (tmp_path / "incoming" / name).write_text(HEADER + "".join(rows), encoding="utf-8")


async def _count(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_import_batch(tmp_path, store, source, session_factory):
    _write(tmp_path, "a.csv",
           _row("node-a", T0, T0 + 150 * MINUTE, invoice=15.0),
           _row("node-b", T0, T0 + 10 * MINUTE))
    summary = await _importer(store, source).import_plans()

    assert summary.batches_imported == 1
    assert summary.plans_created == 1
    assert summary.jobs_created == 3
    assert summary.records_skipped == 1
    assert (tmp_path / "imported" / "a.csv").exists()
    assert not (tmp_path / "incoming" / "a.csv").exists()

    async with session_factory() as db:
        plan = (await db.execute(select(NodePlan))).scalar_one()
        jobs = (await db.execute(
            select(PlanJob).order_by(PlanJob.order_index))).scalars().all()
    assert (plan.node_id, plan.compute_class, plan.status) == ("node-a", "gpu", "pending")
    assert plan.source_file == "a.csv"
    assert [j.duration_ms for j in jobs] == [60 * MINUTE, 60 * MINUTE, 30 * MINUTE]
    assert [j.start_at for j in jobs] == [T0, T0 + 60 * MINUTE, T0 + 120 * MINUTE]
    assert sum(j.invoice_amount for j in jobs) == pytest.approx(15.0)
    assert {j.node_id for j in jobs} == {"node-a"}


@pytest.mark.asyncio
async def test_malformed_batch_does_not_block_others(tmp_path, store, source, session_factory):
    _write(tmp_path, "1-bad.csv", "r,node-x,not-a-number,5,1,,,gpu\n")
    _write(tmp_path, "2-good.csv", _row("node-a", T0, T0 + 60 * MINUTE))
    summary = await _importer(store, source).import_plans()

    assert summary.batches_failed == 1
    assert summary.batches_imported == 1
    assert (tmp_path / "failed" / "1-bad.csv").exists()
    assert (tmp_path / "imported" / "2-good.csv").exists()
    assert await _count(session_factory, NodePlan) == 1


class FlakyStore(PlanStore):
    """第二条记录写入 Job 时失败。"""

    def __init__(self, session_factory) -> None:
        super().__init__(session_factory)
        self.calls = 0

    async def insert_jobs(self, db, plan_id, node_id, slices):
        self.calls += 1
        if self.calls == 2:
            raise SQLAlchemyError("disk full")
        return await super().insert_jobs(db, plan_id, node_id, slices)


@pytest.mark.asyncio
async def test_batch_rolls_back_as_a_whole(tmp_path, session_factory, source):
    store = FlakyStore(session_factory)
    _write(tmp_path, "a.csv",
           _row("node-a", T0, T0 + 60 * MINUTE),
           _row("node-b", T0, T0 + 60 * MINUTE))
    summary = await _importer(store, source).import_plans()

    assert summary.batches_failed == 1
    assert summary.plans_created == 0
    assert (tmp_path / "failed" / "a.csv").exists()
    assert await _count(session_factory, NodePlan) == 0
    assert await _count(session_factory, PlanJob) == 0


@pytest.mark.asyncio
async def test_empty_incoming(store, source):
    summary = await _importer(store, source).import_plans()
    assert summary.batches_imported == summary.batches_failed == 0


def test_rejects_inverted_bounds(store, source):
    with pytest.raises(ValueError):
        PlanImporter(store, source, minimum_duration=timedelta(hours=2),
                     maximum_duration=timedelta(hours=1))


class VanishingSource(FileBatchSource):
    """列出后被外部删除的批次: 读取与 move 都会失败。"""

    async def read(self, batch):
        if batch.name.startswith("1-"):
            batch.path.unlink()
        return await super().read(batch)


@pytest.mark.asyncio
async def test_failed_move_does_not_stop_cycle(tmp_path, store, session_factory):
    source = VanishingSource(str(tmp_path / "incoming"), str(tmp_path / "imported"),
                             str(tmp_path / "failed"))
    _write(tmp_path, "1-gone.csv", _row("node-x", T0, T0 + 60 * MINUTE))
    _write(tmp_path, "2-good.csv", _row("node-a", T0, T0 + 60 * MINUTE))

    summary = await _importer(store, source).import_plans()

    assert summary.batches_failed == 1
    assert summary.batches_imported == 1
    assert (tmp_path / "imported" / "2-good.csv").exists()
    assert await _count(session_factory, NodePlan) == 1


class StuckSource(FileBatchSource):
    """mark_imported 失败 (如目标目录无权限), 文件留在 incoming/。"""
    stuck = True

    def mark_imported(self, batch):
        if self.stuck:
            raise PermissionError(f"cannot move {batch.name}")
        return super().mark_imported(batch)


@pytest.mark.asyncio
async def test_committed_batch_not_imported_twice(tmp_path, store, session_factory):
    source = StuckSource(str(tmp_path / "incoming"), str(tmp_path / "imported"),
                         str(tmp_path / "failed"))
    _write(tmp_path, "a.csv", _row("node-a", T0, T0 + 120 * MINUTE))
    importer = _importer(store, source)

    first = await importer.import_plans()
    assert (first.batches_imported, first.plans_created) == (1, 1)
    assert (tmp_path / "incoming" / "a.csv").exists()

    source.stuck = False
    second = await importer.import_plans()
    assert second.plans_created == 0
    assert not (tmp_path / "incoming" / "a.csv").exists()
    assert (tmp_path / "imported" / "a.csv").exists()
    assert await _count(session_factory, NodePlan) == 1
    assert await _count(session_factory, PlanJob) == 2
