"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护候选模型配置 (registry)。
- 提供厂商的具体实现 (gemini_client)。
- 按候选顺序降级调用的模型网关 (gateway)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ModelClient
from chat_core.providers.gateway import ModelGateway
from chat_core.providers.gemini_client import GeminiClient
from chat_core.providers.registry import get_provider_config


_CLIENTS = {
    "gemini": GeminiClient,
}


def create_provider(name: Optional[str] = None) -> ModelClient:
    """根据名称创建 Provider 实例，名称需在 PROVIDER_REGISTRY 中登记。"""

    cfg = get_provider_config(name or "gemini")
    return _CLIENTS[cfg.name](settings)


def create_gateway(client: Optional[ModelClient] = None) -> ModelGateway:
    """用配置中的候选模型列表构造网关。"""

    return ModelGateway(
        client or create_provider(),
        candidates=settings.model_candidates,
        max_history=settings.max_context_messages,
    )
