from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Protocol

from .models import Role


DEFAULT_TITLE = "New Chat"
TITLE_MAX_CHARS = 50
TITLE_MIN_BREAK = 20
_SENTENCE_BREAKS = (". ", "? ", "! ")


@dataclass
class MessageRecord:
    id: str
    thread_id: str
    role: Role
    content: str
    created_at: datetime
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Thread:
    id: str
    owner_id: str
    title: Optional[str]
    created_at: datetime
    updated_at: datetime
    is_starred: bool = False
    messages: List[MessageRecord] = field(default_factory=list)

    @property
    def display_title(self) -> str:
        return self.title or DEFAULT_TITLE


@dataclass
class ThreadSummary:
    id: str
    title: str
    is_starred: bool
    created_at: datetime
    updated_at: datetime
    message_count: int


class ThreadStore(Protocol):
    def create_thread(self, owner_id: str) -> Thread:
        ...

    def get_thread(self, thread_id: str, owner_id: str) -> Thread:
        ...

    def append_message(self, thread_id: str, message: MessageRecord) -> Thread:
        ...

    def set_title(self, thread_id: str, title: str) -> None:
        ...

    def list_threads(self, owner_id: str) -> List[ThreadSummary]:
        ...

    def delete_thread(self, thread_id: str, owner_id: str) -> None:
        ...

    def delete_all_threads(self, owner_id: str) -> int:
        ...

    def toggle_star(self, thread_id: str, owner_id: str) -> bool:
        ...

    def count_messages_since(self, owner_id: str, role: Role, since: datetime) -> int:
        ...


def title_from_text(text: str) -> str:
    """从一段文本截取会话标题。

    取前 50 个字符；优先在位置 >= 20 的句末（". " "? " "! "）处断开，
    否则在位置 >= 20 的最后一个空格处断开，再否则硬截断。
    断点字符本身不保留；截断时追加 "..."。
    """

    content = (text or "").strip()
    if not content:
        return DEFAULT_TITLE
    title = content[:TITLE_MAX_CHARS]
    break_point = max(title.rfind(sep) for sep in _SENTENCE_BREAKS)
    if break_point < TITLE_MIN_BREAK:
        break_point = title.rfind(" ")
    if break_point >= TITLE_MIN_BREAK:
        title = title[:break_point]
    return title + ("..." if len(content) > len(title) else "")


def derive_title(thread: Thread) -> str:
    """为会话生成标题，已有标题时原样返回（幂等）。"""

    if thread.title:
        return thread.title
    first_user = next((m for m in thread.messages if m.role == "user"), None)
    if first_user is None:
        return DEFAULT_TITLE
    return title_from_text(first_user.content)
