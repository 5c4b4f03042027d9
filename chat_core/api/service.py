"""服务装配。

把存储、额度、幂等缓存、模型网关组装成一个协调器，供 HTTP 层使用。
所有组件都作为参数传入，测试可以替换其中任意一个。
"""

from dataclasses import dataclass
from typing import Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import ThreadStore
from chat_core.infrastructure.cache.idempotency import IdempotencyCache
from chat_core.infrastructure.storage.json_store import JsonThreadStore
from chat_core.providers import create_gateway
from chat_core.providers.gateway import ModelGateway
from chat_core.services.exchange import ExchangeCoordinator
from chat_core.services.quota import QuotaTracker


@dataclass
class ChatServices:
    store: ThreadStore
    coordinator: ExchangeCoordinator


def build_services(
    store: Optional[ThreadStore] = None,
    gateway: Optional[ModelGateway] = None,
    idempotency: Optional[IdempotencyCache] = None,
    quota: Optional[QuotaTracker] = None,
    delay_ms: Optional[int] = None,
) -> ChatServices:
    """按配置构造默认组件，显式传入的组件优先。"""

    if store is None:
        store = JsonThreadStore(root=settings.storage_root)
    if idempotency is None:
        idempotency = IdempotencyCache(
            max_entries=settings.idempotency_max_entries,
            ttl_seconds=settings.idempotency_ttl_seconds,
        )
    coordinator = ExchangeCoordinator(
        store=store,
        gateway=gateway or create_gateway(),
        idempotency=idempotency,
        quota=quota or QuotaTracker(store),
        chunk_words=settings.stream_chunk_words,
        delay_ms=settings.stream_delay_ms if delay_ms is None else delay_ms,
    )
    return ChatServices(store=store, coordinator=coordinator)
