"""
调度表达式解析 - 判断 Schedule 在某一时刻是否到期。

支持两种表达式：
- 5 段 cron 表达式（分 时 日 月 周），使用 croniter 计算，例如 "*/15 * * * *"
- 一次性形式 "@at <ISO-8601>"，例如 "@at 2026-10-18T09:00:00+08:00"

到期规则（补跑至多一次）：
以基准时间（上次评估时间，没有时取创建时间）之后的第一次触发为准，
该触发时间 <= 当前时间即到期。无论错过多少次触发，都只合并为一次运行。
"""

from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

AT_PREFIX = "@at"


def _resolve_tz(tz: str | None) -> tzinfo:
    if tz:
        try:
            return ZoneInfo(tz)
        except ZoneInfoNotFoundError as e:
            raise ValueError(f"Unknown timezone: {tz!r}") from e
    return datetime.now().astimezone().tzinfo or timezone.utc


def parse_at(expr: str, tz: str | None = None) -> int | None:
    """
    解析一次性表达式 "@at <ISO-8601>"，返回毫秒时间戳。

    不带时区的时间按 tz（或本地时区）解释。不是 @at 形式时返回 None。

    异常:
        ValueError: 时间格式无法解析
    """
    text = expr.strip()
    if not text.startswith(AT_PREFIX):
        return None
    value = text[len(AT_PREFIX):].strip()
    when = datetime.fromisoformat(value)
    if when.tzinfo is None:
        when = when.replace(tzinfo=_resolve_tz(tz))
    return int(when.timestamp() * 1000)


def validate_expr(expr: str, tz: str | None = None) -> None:
    """校验调度表达式与时区，非法时抛出 ValueError。"""
    _resolve_tz(tz)
    if expr.strip().startswith(AT_PREFIX):
        parse_at(expr, tz)
        return
    if len(expr.split()) != 5 or not croniter.is_valid(expr):
        raise ValueError(f"Invalid cron expression: {expr!r}")


def next_fire_after(expr: str, after_ms: int, tz: str | None = None) -> int | None:
    """
    计算严格晚于 after_ms 的第一次触发时间（毫秒）。

    一次性表达式在触发时间已过时返回 None（不会再次到期）。
    """
    at_ms = parse_at(expr, tz)
    if at_ms is not None:
        return at_ms if at_ms > after_ms else None

    validate_expr(expr, tz)
    base = datetime.fromtimestamp(after_ms / 1000, tz=_resolve_tz(tz))
    return int(croniter(expr, base).get_next(float) * 1000)


def is_due(expr: str, baseline_ms: int, now_ms: int, tz: str | None = None) -> bool:
    """基准时间之后的第一次触发 <= now_ms 即到期。"""
    next_ms = next_fire_after(expr, baseline_ms, tz)
    return next_ms is not None and next_ms <= now_ms
