"""cron 表达式求值

evaluate 是纯函数：不读时钟、不访问存储，相同输入永远得到相同输出，
便于表驱动的单元测试。
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterError, croniter

from ..errors import ScheduleEvaluationError

# 支持的宏，其余以 @ 开头的写法一律视为非法
_MACROS = {"@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly"}


def _resolve_timezone(expr: str, tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleEvaluationError(expr, f"unknown timezone {tz_name!r}") from exc


def _check_shape(expr: str) -> str:
    normalized = " ".join((expr or "").split())
    if not normalized:
        raise ScheduleEvaluationError(expr, "empty expression")
    if normalized.startswith("@"):
        if normalized.lower() not in _MACROS:
            raise ScheduleEvaluationError(expr, f"unknown macro {normalized!r}")
        return normalized.lower()
    # 仅接受 minute hour day-of-month month day-of-week 五段
    if len(normalized.split(" ")) != 5:
        raise ScheduleEvaluationError(expr, "expected 5 fields")
    return normalized


def evaluate(expr: str, from_ts: float, tz_name: str = "UTC") -> float:
    """计算严格大于 from_ts 的下一个满足表达式的时间点

    Args:
        expr: 五段式 cron 表达式（minute hour day-of-month month day-of-week）或宏
        from_ts: 起点 Unix 时间戳
        tz_name: 解释各字段使用的 IANA 时区

    Returns:
        下一个触发点的 Unix 时间戳

    Raises:
        ScheduleEvaluationError: 表达式或时区非法
    """
    normalized = _check_shape(expr)
    tz = _resolve_timezone(expr, tz_name)
    start = datetime.fromtimestamp(from_ts, timezone.utc).astimezone(tz)

    try:
        itr = croniter(normalized, start)
        next_ts = itr.get_next(float)
        # 起点恰好落在触发点上时 croniter 已跳过，这里再兜底保证严格大于
        while next_ts <= from_ts:
            next_ts = itr.get_next(float)
    except (CroniterError, ValueError, KeyError) as exc:
        raise ScheduleEvaluationError(expr, str(exc) or exc.__class__.__name__) from exc

    return next_ts


__all__ = ["evaluate"]
