from datetime import datetime, timezone


def utcnow() -> datetime:
    """当前 UTC 时间（naive，与数据库 DateTime 列一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
