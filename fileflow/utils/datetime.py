from datetime import datetime, timedelta, timezone


def now_utc() -> datetime:
    """
    获取当前UTC时间
    """
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """
    当前UTC时间的ISO格式字符串，用于写入JSON元数据
    """
    return now_utc().isoformat()


def add_hours(dt: datetime, hours: int) -> datetime:
    """
    添加小时数
    """
    return dt + timedelta(hours=hours)


def add_minutes(dt: datetime, minutes: int) -> datetime:
    """
    添加分钟数
    """
    return dt + timedelta(minutes=minutes)
