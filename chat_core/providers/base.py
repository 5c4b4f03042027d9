"""Provider 抽象接口。

模型网关不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商实现一个 ModelClient（如 GeminiClient）。
- 负责：用指定模型对历史 + 新提问生成回答，返回纯文本。
- 失败时必须抛出带 kind 的 ModelError，网关据此决定是否降级。
"""

from typing import Protocol, Sequence

from chat_core.domain.models import ChatMessage


class ModelClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - generate(model, history, prompt): 执行一次非流式调用，返回纯文本。
    """

    name: str

    def generate(self, model: str, history: Sequence[ChatMessage], prompt: str) -> str:
        ...
