"""每日消息额度。

额度是派生值：每次请求都从持久化消息的时间戳重新计算，不做跨请求缓存。
计数窗口从当天 UTC 零点开始，零点过后自然清零。
"""

from datetime import datetime, timezone
from typing import Callable, Optional

from chat_core.domain.conversation import ThreadStore


DAILY_LIMIT = 20


def utc_midnight(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class QuotaTracker:
    """以当天完成的交换数（助手回复条数）计算已用额度。"""

    def __init__(self, store: ThreadStore, now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._store = store
        self._now = now

    def consumed(self, user_id: str) -> int:
        return self._store.count_messages_since(user_id, "assistant", utc_midnight(self._now()))

    def remaining(self, user_id: str) -> int:
        return max(0, DAILY_LIMIT - self.consumed(user_id))
