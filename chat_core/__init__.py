"""Chat Core 顶层包。

该包提供 LLM 聊天消息交换管线的核心实现，
包括配置加载、领域模型、模型网关与降级、每日额度、幂等去重、
会话持久化、HTTP 接口以及客户端流式控制器。
"""

from chat_core.domain.models import ExchangeRequest, ExchangeResult

__all__ = ["ExchangeRequest", "ExchangeResult"]
