"""
周期任务运行器。

- 启动时立即导入一次 + 轮询一次
- 之后按 import_interval / monitor_interval 周期执行
- 单轮异常只记录, 不影响后续轮次
周期以 loop.time() (单调时钟) 为基准, 不随墙钟跳变。
"""
from __future__ import annotations
import asyncio
from datetime import timedelta
from typing import Awaitable, Callable

import structlog

from node_planner.importer.plan_importer import PlanImporter
from node_planner.scheduler.monitor import DueJobMonitor

logger = structlog.get_logger()


class PeriodicRunner:
    def __init__(
        self,
        monitor: DueJobMonitor,
        importer: PlanImporter | None = None,
        monitor_interval: timedelta = timedelta(seconds=60),
        import_interval: timedelta = timedelta(hours=1),
    ) -> None:
        self._monitor = monitor
        self._importer = importer
        self._monitor_interval = monitor_interval.total_seconds()
        self._import_interval = import_interval.total_seconds()
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> None:
        """导入一次 + 轮询一次。"""
        if self._importer:
            await self._tick("import", self._importer.import_plans)
        await self._tick("poll", self._monitor.process_plans)

    async def start(self) -> None:
        self._running = True
        await self.run_once()
        self._tasks = [
            asyncio.create_task(self._periodic(
                "poll", self._monitor.process_plans, self._monitor_interval)),
        ]
        if self._importer:
            self._tasks.append(asyncio.create_task(self._periodic(
                "import", self._importer.import_plans, self._import_interval)))
        logger.info("scheduled_tasks_started", count=len(self._tasks),
                    monitor_interval=self._monitor_interval,
                    import_interval=self._import_interval)

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("scheduled_tasks_stopped")

    async def _periodic(
        self, name: str, fn: Callable[[], Awaitable], interval: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + interval
        while self._running:
            try:
                await asyncio.sleep(max(0.0, deadline - loop.time()))
                await self._tick(name, fn)
            except asyncio.CancelledError:
                break
            # 超时过长的轮次不补跑, 直接对齐到下一个周期
            deadline += interval
            now = loop.time()
            if deadline < now:
                deadline = now + interval

    @staticmethod
    async def _tick(name: str, fn: Callable[[], Awaitable]) -> None:
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            event = "poll_cycle_failed" if name == "poll" else "import_cycle_failed"
            logger.error(event, error=str(e), error_type=type(e).__name__)
