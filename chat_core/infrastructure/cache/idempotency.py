"""进程内幂等键缓存。

记录已处理（或正在处理）的 clientMessageId，用于拒绝重复提交。
底层是 cachetools.TTLCache：条目数超过上限时淘汰最近最少使用的键，
超过存活时间的键自动失效，不会无限增长。

状态：
- "in_flight": 某个请求已抢到该键，尚未得到终态结果。
- "handled": 已得到终态结果（成功，或不可重试的拒绝）。
- "released": 瞬时失败后放弃，可以用同一个键重试；记录失败时所在的会话，
  重试时复用该会话及已写入的用户消息。

并发请求携带同一个键时，只有第一个 claim() 成功，其余看到重复。
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from cachetools import TTLCache


@dataclass
class _Entry:
    state: str
    thread_id: Optional[str] = None


class IdempotencyCache:
    def __init__(
        self,
        max_entries: int = 10_000,
        ttl_seconds: float = 86_400.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=clock)
        self._lock = threading.Lock()

    def claim(self, key: str) -> bool:
        """尝试占用一个键。键处理中或已处理时返回 False。"""

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.state != "released":
                return False
            thread_id = entry.thread_id if entry is not None else None
            self._entries[key] = _Entry(state="in_flight", thread_id=thread_id)
            return True

    def mark_handled(self, key: str, thread_id: Optional[str] = None) -> None:
        with self._lock:
            self._entries[key] = _Entry(state="handled", thread_id=thread_id)

    def release(self, key: str, thread_id: Optional[str] = None) -> None:
        """放弃处理中的键，使同一个键可以重试；已处理的键不受影响。

        传入 thread_id 时保留该键对应的会话，供重试时复用。
        """

        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.state != "in_flight":
                return
            if thread_id:
                self._entries[key] = _Entry(state="released", thread_id=thread_id)
            else:
                del self._entries[key]

    def state_of(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.state if entry else None

    def thread_of(self, key: str) -> Optional[str]:
        """该键上一次尝试所在的会话（没有则为 None）。"""

        with self._lock:
            entry = self._entries.get(key)
            return entry.thread_id if entry else None

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)
