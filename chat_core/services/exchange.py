"""消息交换协调器。

一次 "用户消息 → 助手消息" 的往返在这里完成：

1. 校验输入（空白 / 超长）。
2. 按 clientMessageId 去重（原子占用，先到者处理，后到者看到重复）。
3. 检查当日额度（在任何模型调用之前）。
4. 加载或新建会话（只允许访问自己的会话）。
5. 立即写入用户消息，即使随后模型调用失败也保留。
6. 调用模型网关，成功后写入助手消息并按需生成标题。
7. 模型调用失败时不回滚用户消息，向上抛出带类型的错误。

幂等键记录规则：成功，或不可重试的拒绝（额度、会话不存在、安全拦截、
认证错误）之后标记为已处理；瞬时上游故障（全部候选被限流、超时、未知错误）
以及意外异常会释放该键，允许用同一个键重试；重试沿用上次的会话与已写入的
用户消息，不会重复追加。
"""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

from chat_core.domain.conversation import MessageRecord, Thread, ThreadStore, derive_title
from chat_core.domain.exceptions import (
    DuplicateMessageError,
    InvalidInputError,
    MessageTooLongError,
    ModelError,
    QuotaExceededError,
    ThreadNotFoundError,
)
from chat_core.domain.models import ExchangeRequest, ExchangeResult
from chat_core.infrastructure.cache.idempotency import IdempotencyCache
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.gateway import ModelGateway
from chat_core.services.quota import DAILY_LIMIT, QuotaTracker


MESSAGE_LENGTH_LIMIT = 10_000

_WORD_RE = re.compile(r"\S+\s*")


def segment_words(text: str, size: int = 3) -> List[str]:
    """把文本按每 size 个词切成若干段，保留所有空白。

    各段拼接后与原文完全一致；开头的空白并入第一段。
    """

    if size < 1:
        raise ValueError("size must be >= 1")
    if not text:
        return []
    words = _WORD_RE.findall(text)
    leading = text[: len(text) - len(text.lstrip())]
    if not words:
        return [text]
    words[0] = leading + words[0]
    return ["".join(words[i:i + size]) for i in range(0, len(words), size)]


def token_frames(
    text: str,
    size: int = 3,
    delay_ms: int = 15,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[Dict[str, Any]]:
    """产出 token 帧序列，最后是一个 done 帧。每个 token 帧之后停顿 delay_ms。"""

    for piece in segment_words(text, size):
        yield {"type": "token", "content": piece}
        if delay_ms:
            sleep(delay_ms / 1000.0)
    yield {"type": "done"}


class ExchangeCoordinator:
    def __init__(
        self,
        store: ThreadStore,
        gateway: ModelGateway,
        idempotency: IdempotencyCache,
        quota: Optional[QuotaTracker] = None,
        chunk_words: int = 3,
        delay_ms: int = 15,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._gateway = gateway
        self._idempotency = idempotency
        self._quota = quota or QuotaTracker(store)
        self._chunk_words = chunk_words
        self._delay_ms = delay_ms
        self._sleep = sleep

    @property
    def quota(self) -> QuotaTracker:
        return self._quota

    def handle_send(self, user_id: str, req: ExchangeRequest) -> ExchangeResult:
        """执行一次完整的消息交换，失败时抛出 BusinessError 子类。"""

        start_time = time.time()
        trace_id = f"tr-{uuid4().hex}"
        log_ctx: Dict[str, Any] = {"trace_id": trace_id, "user_id": user_id}

        text = req.text or ""
        if not text.strip():
            raise InvalidInputError()
        if len(text) > MESSAGE_LENGTH_LIMIT:
            raise MessageTooLongError(len(text), MESSAGE_LENGTH_LIMIT)

        key = req.client_message_id or f"m-{uuid4().hex}"
        log_ctx["client_message_id"] = key
        if not self._idempotency.claim(key):
            self._log(logging.INFO, "Duplicate message rejected", log_ctx)
            raise DuplicateMessageError(key)

        try:
            result = self._exchange(user_id, req, key, text, log_ctx)
        except (QuotaExceededError, ThreadNotFoundError) as err:
            self._idempotency.mark_handled(key)
            self._log(logging.INFO, "Exchange rejected", log_ctx, code=err.code)
            raise
        except ModelError as err:
            if err.retryable:
                self._idempotency.release(key, log_ctx.get("thread_id"))
            else:
                self._idempotency.mark_handled(key)
            self._log(
                logging.WARNING,
                "Model call failed, user message kept",
                log_ctx,
                kind=err.kind.value,
                retryable=err.retryable,
            )
            raise
        except Exception:
            self._idempotency.release(key, log_ctx.get("thread_id"))
            logger.exception("Exchange failed", extra={"extra": dict(log_ctx)})
            raise

        self._idempotency.mark_handled(key, result.thread.id)
        result.trace_id = trace_id
        self._log(
            logging.INFO,
            "Completed exchange",
            log_ctx,
            elapsed_seconds=round(time.time() - start_time, 2),
            remaining=result.remaining,
        )
        return result

    def stream_send(self, user_id: str, req: ExchangeRequest) -> Tuple[ExchangeResult, Iterator[Dict[str, Any]]]:
        """流式变体：先完成交换，再把完整回答按词组切成 token 帧。

        这里的分段只是展示节奏，不是真正的逐 token 生成；校验、额度与模型错误
        都在产出第一帧之前抛出。
        """

        result = self.handle_send(user_id, req)
        frames = token_frames(
            result.assistant_message.content,
            size=self._chunk_words,
            delay_ms=self._delay_ms,
            sleep=self._sleep,
        )
        return result, frames

    def _exchange(
        self,
        user_id: str,
        req: ExchangeRequest,
        key: str,
        text: str,
        log_ctx: Dict[str, Any],
    ) -> ExchangeResult:
        remaining = self._quota.remaining(user_id)
        if remaining <= 0:
            raise QuotaExceededError(DAILY_LIMIT)

        thread = self._resolve_thread(user_id, req.thread_id, log_ctx, self._idempotency.thread_of(key))

        # 同一个键的上一次尝试已经写入了用户消息：复用它，不再追加
        stored = next(
            (i for i, m in enumerate(thread.messages) if m.id == key and m.role == "user"),
            None,
        )
        if stored is not None:
            user_msg = thread.messages[stored]
            prior = list(thread.messages[:stored])
            self._log(logging.INFO, "Reusing stored user message", log_ctx, message_id=user_msg.id)
        else:
            prior = list(thread.messages)
            user_msg = MessageRecord(
                id=key,
                thread_id=thread.id,
                role="user",
                content=text,
                created_at=datetime.now(timezone.utc),
            )
            self._store.append_message(thread.id, user_msg)
            self._log(logging.INFO, "Stored user message", log_ctx, message_id=user_msg.id)

        reply = self._gateway.generate(prior, user_msg.content, trace_id=log_ctx["trace_id"])

        assistant_msg = MessageRecord(
            id=f"m-{uuid4().hex}",
            thread_id=thread.id,
            role="assistant",
            content=reply,
            created_at=datetime.now(timezone.utc),
            meta={"reply_to": user_msg.id},
        )
        thread = self._store.append_message(thread.id, assistant_msg)
        self._log(logging.INFO, "Stored assistant message", log_ctx, message_id=assistant_msg.id)

        title = thread.title
        if not title:
            title = derive_title(thread)
            self._store.set_title(thread.id, title)
            thread.title = title

        return ExchangeResult(
            thread=thread,
            user_message=user_msg,
            assistant_message=assistant_msg,
            title=title,
            remaining=self._quota.remaining(user_id),
        )

    def _resolve_thread(
        self,
        user_id: str,
        thread_id: Optional[str],
        log_ctx: Dict[str, Any],
        resume_id: Optional[str] = None,
    ) -> Thread:
        """显式指定的会话优先；否则沿用同一个键上次失败时创建的会话，再否则新建。"""

        thread: Optional[Thread] = None
        if thread_id:
            thread = self._store.get_thread(thread_id, user_id)
        elif resume_id:
            try:
                thread = self._store.get_thread(resume_id, user_id)
            except ThreadNotFoundError:
                # 上次的会话已被删除，按新会话处理
                thread = None
        if thread is None:
            thread = self._store.create_thread(user_id)
            self._log(logging.INFO, "Created new thread", log_ctx, thread_id=thread.id)
        log_ctx["thread_id"] = thread.id
        return thread

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
