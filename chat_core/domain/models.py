"""统一的消息交换数据模型。

本模块定义了服务端协调器、模型网关与客户端控制器之间共享的标准数据结构：

- ChatMessage: 发给模型的一条历史消息（user/model）。
- ExchangeRequest: 一次发送动作的请求单元（文本 + 目标会话 + 幂等键）。
- ExchangeResult: 一次交换成功后的结果（会话、两条新消息、剩余额度）。

模型输出的原始形态（字符串 / parts 数组 / 嵌套对象）只在网关边界出现，
见 providers.gemini_client.normalize_output，下游只处理纯文本。
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Union, TYPE_CHECKING

if TYPE_CHECKING:
    from chat_core.domain.conversation import MessageRecord, Thread


# 会话内持久化的消息角色
Role = Literal["user", "assistant"]

# 模型侧历史消息角色（Gemini 把助手称为 "model"）
HistoryRole = Literal["user", "model"]

# 消息投递状态：只存在于进行中的交换的内存视图里，从不持久化
DeliveryStatus = Literal["pending", "streaming", "complete", "failed"]

# 模型返回内容的原始形态：纯文本、parts 数组或任意嵌套对象
ModelOutput = Union[str, Sequence[Any], Mapping[str, Any], None]


@dataclass
class ChatMessage:
    """发给模型的一条历史消息。"""

    role: HistoryRole
    content: str

    def to_payload(self) -> Dict[str, Any]:
        return {"role": self.role, "parts": [{"text": self.content}]}


@dataclass
class ExchangeRequest:
    """一次发送动作。

    - text: 用户输入。
    - thread_id: 目标会话；为空表示新建会话。
    - client_message_id: 客户端生成的幂等键；为空时由服务端生成。
    """

    text: str
    thread_id: Optional[str] = None
    client_message_id: Optional[str] = None


@dataclass
class ExchangeResult:
    """一次成功的消息交换。"""

    thread: "Thread"
    user_message: "MessageRecord"
    assistant_message: "MessageRecord"
    title: str
    remaining: int
    trace_id: str = ""

    @property
    def messages(self) -> List["MessageRecord"]:
        return list(self.thread.messages)
