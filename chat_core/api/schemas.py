"""HTTP 请求/响应模型与序列化辅助函数。"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from chat_core.domain.conversation import MessageRecord, Thread, ThreadSummary


class SendMessageBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: Optional[str] = Field(default=None, alias="chatId", description="目标会话，为空则新建")
    text: str = Field(default="", description="用户输入")
    client_message_id: Optional[str] = Field(
        default=None,
        alias="clientMessageId",
        description="客户端生成的幂等键",
    )


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def message_to_dict(m: MessageRecord) -> Dict[str, Any]:
    return {
        "id": m.id,
        "role": m.role,
        "content": m.content,
        "timestamp": _iso(m.created_at),
    }


def summary_to_dict(s: ThreadSummary) -> Dict[str, Any]:
    return {
        "id": s.id,
        "title": s.title,
        "isStarred": s.is_starred,
        "createdAt": _iso(s.created_at),
        "updatedAt": _iso(s.updated_at),
        "messageCount": s.message_count,
    }


def thread_to_dict(t: Thread) -> Dict[str, Any]:
    return {
        "id": t.id,
        "title": t.display_title,
        "isStarred": t.is_starred,
        "createdAt": _iso(t.created_at),
        "updatedAt": _iso(t.updated_at),
        "messages": [message_to_dict(m) for m in t.messages],
    }
