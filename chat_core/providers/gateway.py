"""模型网关：按候选顺序调用模型并在限流时降级。

降级策略：
- 候选模型返回 RATE_LIMITED：静默尝试下一个候选。
- 其他任何错误：立即停止并向上抛出（这类错误与具体模型无关，换小模型只会再失败一次）。
- 所有候选都被限流：抛出 AllModelsExhaustedError，包装最后一次错误。
"""

import logging
import time
from typing import List, Optional, Sequence

from chat_core.domain.conversation import MessageRecord
from chat_core.domain.exceptions import AllModelsExhaustedError, ModelError, ModelErrorKind
from chat_core.domain.models import ChatMessage
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ModelClient


def build_history(messages: Sequence[MessageRecord], max_messages: Optional[int] = None) -> List[ChatMessage]:
    """把会话消息转换为模型所需的历史格式。

    - assistant 映射为 "model"，其余为 "user"；空内容跳过。
    - 连续的同角色消息只保留第一条（防御重复写入）。
    - 历史必须以 user 开头，开头不是 user 的条目丢弃。
    """

    if max_messages is not None and len(messages) > max_messages:
        messages = messages[-max_messages:]
    cleaned = [
        ChatMessage(role="model" if m.role == "assistant" else "user", content=m.content)
        for m in messages
        if m and m.content
    ]
    history: List[ChatMessage] = []
    for msg in cleaned:
        if not history or history[-1].role != msg.role:
            history.append(msg)
    if history and history[0].role != "user":
        history.pop(0)
    return history


class ModelGateway:
    def __init__(self, client: ModelClient, candidates: Sequence[str], max_history: Optional[int] = None):
        if not candidates:
            raise ValueError("ModelGateway requires at least one candidate model")
        self._client = client
        self._candidates = list(candidates)
        self._max_history = max_history

    @property
    def candidates(self) -> List[str]:
        return list(self._candidates)

    def generate(self, prior_messages: Sequence[MessageRecord], new_prompt: str, trace_id: str = "") -> str:
        """依次尝试候选模型，返回第一个成功的回答文本。

        prior_messages 是会话中已存储的消息（不含本次提问），在这里统一转换为模型历史。
        """

        history = build_history(prior_messages, self._max_history)
        last_error: Optional[ModelError] = None
        tried: List[str] = []
        for model in self._candidates:
            tried.append(model)
            start = time.time()
            try:
                text = self._client.generate(model, history, new_prompt)
            except ModelError as err:
                last_error = err
                if err.kind is ModelErrorKind.RATE_LIMITED:
                    logger.log(
                        logging.WARNING,
                        "Model rate limited, falling back",
                        extra={"extra": {"trace_id": trace_id, "model": model}},
                    )
                    continue
                logger.log(
                    logging.ERROR,
                    "Model call failed",
                    extra={"extra": {"trace_id": trace_id, "model": model, "kind": err.kind.value}},
                )
                raise
            logger.log(
                logging.INFO,
                "Model call succeeded",
                extra={
                    "extra": {
                        "trace_id": trace_id,
                        "model": model,
                        "elapsed_seconds": round(time.time() - start, 2),
                        "fallback_depth": len(tried) - 1,
                    }
                },
            )
            return text
        assert last_error is not None
        raise AllModelsExhaustedError(last_error, tried)
