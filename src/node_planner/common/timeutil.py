"""
时间工具。

持久化约定: 时间戳 = epoch 毫秒 (int, *_at 列), 时长 = 毫秒 (int, duration_ms 列)。
配置中的时长一律为 timedelta, 只经由 to_ms() 进入毫秒域。
"""
from __future__ import annotations
import re
from datetime import datetime, timedelta, timezone

from node_planner.common.exceptions import DurationFormatError

_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}
_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h|d|w)")
_COMPACT = re.compile(r"^(?:\s*\d+(?:\.\d+)?\s*(?:ms|s|m|h|d|w))+\s*$")
_ISO = re.compile(
    r"^P(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?"
    r"(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


def parse_duration(value: str | int | float | timedelta) -> timedelta:
    """
    解析时长。

    支持: timedelta / 秒数 / "90s" "15m" "1h30m" "2d" / ISO-8601 "PT15M"。
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise DurationFormatError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise DurationFormatError(f"Invalid duration: {value!r}")

    text = value.strip().lower()
    if not text:
        raise DurationFormatError("Empty duration")
    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass

    if _COMPACT.match(text):
        total = timedelta(0)
        for amount, unit in _PART.findall(text):
            total += _UNITS[unit] * float(amount)
        return total

    iso = _ISO.match(value.strip().upper())
    if iso and any(iso.groupdict().values()):
        parts = {k: float(v) for k, v in iso.groupdict().items() if v}
        return timedelta(**parts)

    raise DurationFormatError(f"Invalid duration: {value!r}")


def to_ms(delta: timedelta) -> int:
    return int(delta / timedelta(milliseconds=1))


def utc_now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
