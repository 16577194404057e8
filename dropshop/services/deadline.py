"""截单时间计算（纯函数，无副作用）

deadline = 场次日期 + 取餐点 pickup_hour_end（门店本地时间），统一换算为 UTC。
判定规则：
    now <= deadline                  -> 可下单
    deadline < now <= deadline+grace -> 可下单，标记宽限期
    now > deadline+grace             -> 已截单
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from dropshop.core.config import settings

DEFAULT_GRACE_PERIOD = timedelta(minutes=settings.DROP_GRACE_PERIOD_MINUTES)


@dataclass(frozen=True)
class DeadlineVerdict:
    deadline: datetime
    orderable: bool
    grace_period: bool
    time_remaining: timedelta

    @property
    def time_remaining_label(self) -> Optional[str]:
        return format_time_remaining(self.time_remaining)


def ensure_utc(value: datetime) -> datetime:
    """数据库读出的时间可能不带时区（SQLite），按 UTC 处理"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_deadline(drop_date: date, pickup_hour_end: time, tz: Optional[str] = None) -> datetime:
    """计算场次的绝对截单时间（UTC）"""
    zone = ZoneInfo(tz or settings.SHOP_TIMEZONE)
    local = datetime.combine(drop_date, pickup_hour_end.replace(tzinfo=None), tzinfo=zone)
    return local.astimezone(timezone.utc)


def evaluate(
    deadline: datetime,
    now: Optional[datetime] = None,
    grace: Optional[timedelta] = None,
) -> DeadlineVerdict:
    """根据当前时间判定是否可下单"""
    deadline = ensure_utc(deadline)
    now = ensure_utc(now) if now else utcnow()
    grace = DEFAULT_GRACE_PERIOD if grace is None else grace

    remaining = max(deadline - now, timedelta(0))

    if now <= deadline:
        return DeadlineVerdict(deadline, True, False, remaining)
    if now <= deadline + grace:
        return DeadlineVerdict(deadline, True, True, remaining)
    return DeadlineVerdict(deadline, False, False, remaining)


def format_time_remaining(remaining: timedelta) -> Optional[str]:
    """格式化剩余时间，如 2h 5m；已过截止时间返回 None"""
    total_seconds = int(remaining.total_seconds())
    if total_seconds <= 0:
        return None
    hours, rest = divmod(total_seconds, 3600)
    minutes = rest // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
