"""
活跃节点注册表: 每个 node_id 同时至多一个执行。

launch() 为 compare-and-insert: 检查与登记之间没有 await, 事件循环内原子。
登记项在任务自身的 finally 中移除 (成功/失败/取消均清除)。
进程内单实例, 重启后从空开始。
"""
from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger()


class ActiveNodeRegistry:
    def __init__(self) -> None:
        self._runs: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._runs)

    def is_active(self, node_id: str) -> bool:
        return node_id in self._runs

    def active_nodes(self) -> list[str]:
        return list(self._runs)

    def launch(
        self,
        node_id: str,
        coro_factory: Callable[[], Awaitable[Any]],
        name: str | None = None,
    ) -> asyncio.Task | None:
        """节点空闲 → 创建并登记任务; 已有运行 → 返回 None。"""
        if node_id in self._runs:
            return None
        task = asyncio.create_task(self._guarded(node_id, coro_factory), name=name)
        self._runs[node_id] = task
        return task

    async def _guarded(self, node_id: str, coro_factory: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await coro_factory()
        except asyncio.CancelledError:
            logger.warning("node_run_cancelled", node_id=node_id)
            raise
        except Exception:
            logger.exception("node_run_failed", node_id=node_id)
            return None
        finally:
            # 仅移除自己的登记项
            if self._runs.get(node_id) is asyncio.current_task():
                del self._runs[node_id]

    async def wait_all(self) -> None:
        tasks = list(self._runs.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cancel_all(self) -> int:
        tasks = list(self._runs.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()
        logger.info("node_runs_cancelled", count=len(tasks))
        return len(tasks)
