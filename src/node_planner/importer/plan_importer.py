"""
计划导入器。

每个批次:
1. 解析记录, 丢弃窗口 < minimum_duration 的记录
2. 单事务内 insert_plan + insert_jobs (整批提交/整批回滚)
3. 成功 → imported/, 失败 → failed/
批次之间相互独立, 单批失败不影响后续批次。
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from node_planner.common.exceptions import IngestionError, PlanPersistenceError
from node_planner.common.timeutil import to_ms
from node_planner.importer.batch_source import Batch, FileBatchSource
from node_planner.importer.decompose import split_window
from node_planner.store.plan_store import PlanStore
import structlog

logger = structlog.get_logger()


@dataclass
class ImportSummary:
    batches_imported: int = 0
    batches_failed: int = 0
    plans_created: int = 0
    jobs_created: int = 0
    records_skipped: int = 0


class PlanImporter:
    def __init__(
        self,
        store: PlanStore,
        source: FileBatchSource,
        minimum_duration: timedelta,
        maximum_duration: timedelta,
    ) -> None:
        if maximum_duration < minimum_duration:
            raise ValueError("maximum_duration must not be shorter than minimum_duration")
        self._store = store
        self._source = source
        self._minimum = minimum_duration
        self._maximum = maximum_duration

    async def import_plans(self) -> ImportSummary:
        summary = ImportSummary()
        for batch in self._source.pending():
            try:
                if await self._store.has_source_file(batch.name):
                    # 上轮已提交但未移出 incoming/: 只补 move, 不重复落库
                    logger.warning("batch_already_imported", batch=batch.name)
                    self._settle(batch, self._source.mark_imported)
                    continue
                plans, jobs, skipped = await self._import_batch(batch)
            except (IngestionError, PlanPersistenceError) as e:
                summary.batches_failed += 1
                logger.error("batch_failed", batch=batch.name, **e.to_dict())
                self._settle(batch, self._source.mark_failed)
                continue
            except Exception:
                summary.batches_failed += 1
                logger.exception("batch_failed", batch=batch.name)
                self._settle(batch, self._source.mark_failed)
                continue

            summary.batches_imported += 1
            summary.plans_created += plans
            summary.jobs_created += jobs
            summary.records_skipped += skipped
            logger.info("batch_imported", batch=batch.name,
                        plans=plans, jobs=jobs, skipped=skipped)
            self._settle(batch, self._source.mark_imported)

        if summary.batches_imported or summary.batches_failed:
            logger.info("import_complete",
                        imported=summary.batches_imported,
                        failed=summary.batches_failed,
                        plans=summary.plans_created,
                        jobs=summary.jobs_created)
        return summary

    @staticmethod
    def _settle(batch: Batch, move: Callable[[Batch], Path]) -> bool:
        """移到终态目录; 失败只记录, 不影响后续批次。"""
        try:
            move(batch)
        except OSError as e:
            logger.error("batch_move_failed", batch=batch.name,
                         error=str(e), error_type=type(e).__name__)
            return False
        return True

    async def _import_batch(self, batch: Batch) -> tuple[int, int, int]:
        records = await self._source.read(batch)
        minimum_ms = to_ms(self._minimum)
        eligible = [r for r in records if r.window_ms >= minimum_ms]
        skipped = len(records) - len(eligible)

        plans = jobs = 0
        try:
            async with self._store.transaction() as db:
                for record in eligible:
                    slices = split_window(
                        record.start_at, record.stop_at, record.invoice_amount,
                        self._minimum, self._maximum,
                    )
                    plan_id = await self._store.insert_plan(db, record, batch.name)
                    jobs += await self._store.insert_jobs(db, plan_id, record.node_id, slices)
                    plans += 1
        except SQLAlchemyError as e:
            raise PlanPersistenceError(f"Batch {batch.name} rolled back: {e}") from e
        return plans, jobs, skipped
