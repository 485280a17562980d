"""
窗口拆分。

把 [start_at, stop_at) 切成不超过 maximum 的连续切片:
- 每片时长 >= minimum 才落库, order_index 连续从 0 开始
- 尾部不足 minimum 的余量丢弃 (对应金额不结算)
- 金额按 切片时长 / 窗口总时长 线性分摊
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import timedelta

from node_planner.common.timeutil import to_ms


@dataclass(frozen=True)
class JobSlice:
    order_index: int
    start_at: int
    duration_ms: int
    invoice_amount: float


def split_window(
    start_at: int,
    stop_at: int,
    invoice_amount: float,
    minimum: timedelta,
    maximum: timedelta,
) -> list[JobSlice]:
    minimum_ms = to_ms(minimum)
    maximum_ms = to_ms(maximum)
    if maximum_ms <= 0:
        raise ValueError("maximum duration must be positive")

    total = stop_at - start_at
    if total <= 0 or total < minimum_ms:
        return []

    slices: list[JobSlice] = []
    remaining = total
    cursor = start_at
    order_index = 0
    while remaining > 0:
        duration = min(remaining, maximum_ms)
        if duration >= minimum_ms:
            slices.append(JobSlice(
                order_index=order_index,
                start_at=cursor,
                duration_ms=duration,
                invoice_amount=duration / total * invoice_amount,
            ))
            order_index += 1
        cursor += duration
        remaining -= duration
    return slices
