"""客户端流式控制器。

ChatStreamController 在应用启动时构造一次，按引用传给需要发送消息或订阅
更新的组件。它不持有任何持久状态，只维护：

- 每个幂等键对应的进行中请求（同一个键同时最多一个，新请求会先取消旧请求）；
- 订阅者集合：每次状态变化都会按产生顺序推送 ClientMessage。

单个键的状态机：idle -> sending -> {streaming -> done} | failed。
推送顺序：若干条 streaming，然后恰好一条终态（complete 或 failed）。
被取消的请求不推送终态，已推送的状态也不会撤回。
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional
from uuid import uuid4

import httpx

from chat_core.client.sse import SSEDecoder
from chat_core.config.settings import settings
from chat_core.domain.exceptions import error_body
from chat_core.domain.models import DeliveryStatus
from chat_core.infrastructure.logging.logger import logger


STREAM_PATH = "/chat/message/stream"
MESSAGE_PATH = "/chat/message"
REMAINING_HEADER = "x-dailylimit-remaining"

SendStatus = Literal["complete", "failed", "cancelled", "duplicate"]
RequestState = Literal["idle", "sending", "streaming", "done", "failed"]


@dataclass
class ErrorDetails:
    code: str
    title: str
    what: str
    action: str

    @classmethod
    def from_code(cls, code: str) -> "ErrorDetails":
        body = error_body(code)
        return cls(code=body["code"], title=body["title"], what=body["what"], action=body["action"])

    @classmethod
    def from_payload(cls, payload: Any) -> "ErrorDetails":
        if not isinstance(payload, dict):
            return cls.from_code("SERVER_ERROR")
        fallback = cls.from_code(str(payload.get("code") or "SERVER_ERROR"))
        return cls(
            code=str(payload.get("code") or fallback.code),
            title=str(payload.get("title") or fallback.title),
            what=str(payload.get("what") or fallback.what),
            action=str(payload.get("action") or fallback.action),
        )


@dataclass
class ClientMessage:
    """推送给订阅者的助手消息视图。"""

    id: str
    client_message_id: str
    status: DeliveryStatus
    content: str = ""
    role: str = "assistant"
    thread_id: Optional[str] = None
    error: Optional[ErrorDetails] = None
    timestamp: Optional[str] = None


@dataclass
class SendResult:
    client_message_id: str
    status: SendStatus
    message: Optional[ClientMessage] = None
    error: Optional[ErrorDetails] = None
    thread_id: Optional[str] = None
    remaining_messages: Optional[int] = None


@dataclass
class _InFlight:
    key: str
    task: Optional["asyncio.Task[SendResult]"] = None
    aborted: bool = False


Listener = Callable[[ClientMessage], None]


class _FallbackRequired(Exception):
    """流式接口不可用（连接失败或路由不存在），改走非流式接口。"""


@dataclass
class _StreamState:
    key: str
    thread_id: Optional[str]
    content: str = ""


class ChatStreamController:
    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            headers=headers,
            timeout=httpx.Timeout(None, connect=10.0),
        )
        if client is not None and headers:
            self._client.headers.update(headers)
        self._pending: Dict[str, _InFlight] = {}
        self._listeners: List[Listener] = []
        self._states: Dict[str, RequestState] = {}
        self.remaining_messages: Optional[int] = None

    # ---- 订阅 ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册订阅者，返回取消订阅的函数。"""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def state(self, client_message_id: str) -> RequestState:
        return self._states.get(client_message_id, "idle")

    # ---- 发送 / 取消 ----

    async def send_message(
        self,
        text: str,
        thread_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> SendResult:
        """发送一条消息，返回终态结果；除调用方自身被取消外不会抛出异常。"""

        key = client_message_id or str(uuid4())
        self.stop(key)
        inflight = _InFlight(key=key)
        task = asyncio.ensure_future(self._run(text, thread_id, key))
        inflight.task = task
        self._pending[key] = inflight
        try:
            return await task
        except asyncio.CancelledError:
            if inflight.aborted:
                return SendResult(client_message_id=key, status="cancelled", thread_id=thread_id)
            raise
        finally:
            if self._pending.get(key) is inflight:
                del self._pending[key]

    async def retry(self, text: str, thread_id: Optional[str] = None) -> SendResult:
        """用新的幂等键重发原始文本（失败占位消息上的重试操作）。"""

        return await self.send_message(text, thread_id=thread_id, client_message_id=None)

    def stop(self, client_message_id: str) -> None:
        """取消某个键的进行中请求；没有或已完成时什么也不做。"""

        inflight = self._pending.pop(client_message_id, None)
        if inflight is None or inflight.task is None or inflight.task.done():
            return
        inflight.aborted = True
        inflight.task.cancel()
        self._states[client_message_id] = "idle"

    def stop_all(self) -> None:
        for key in list(self._pending):
            self.stop(key)

    async def aclose(self) -> None:
        self.stop_all()
        if self._owns_client:
            await self._client.aclose()

    # ---- 内部实现 ----

    async def _run(self, text: str, thread_id: Optional[str], key: str) -> SendResult:
        body = {"text": text, "chatId": thread_id, "clientMessageId": key}
        self._states[key] = "sending"
        try:
            try:
                return await self._send_streaming(body, key, thread_id)
            except _FallbackRequired:
                logger.info("Stream endpoint unavailable, using non-streaming fallback",
                            extra={"extra": {"client_message_id": key}})
                return await self._send_plain(body, key, thread_id)
        except httpx.HTTPError as e:
            logger.warning(f"Chat request failed: {e}", extra={"extra": {"client_message_id": key}})
            return self._fail(key, thread_id, ErrorDetails.from_code("NETWORK_FAILURE"))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Malformed chat response: {e}", extra={"extra": {"client_message_id": key}})
            return self._fail(key, thread_id, ErrorDetails.from_code("SERVER_ERROR"))

    async def _send_streaming(self, body: Dict[str, Any], key: str, thread_id: Optional[str]) -> SendResult:
        try:
            async with self._client.stream("POST", STREAM_PATH, json=body) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    error = self._error_from_response(resp)
                    if resp.status_code == 404 and error.code != "THREAD_NOT_FOUND":
                        raise _FallbackRequired()
                    return self._reject(key, thread_id, error)
                self._read_remaining(resp)
                state = _StreamState(key=key, thread_id=resp.headers.get("x-chat-id") or thread_id)
                self._states[key] = "streaming"
                decoder = SSEDecoder()
                async for chunk in resp.aiter_text():
                    for frame in decoder.feed(chunk):
                        result = self._apply_frame(state, frame)
                        if result is not None:
                            return result
                for frame in decoder.flush():
                    result = self._apply_frame(state, frame)
                    if result is not None:
                        return result
                # 流结束但没有 done 帧：以已收到的内容收尾
                return self._complete(state.key, state.thread_id, state.content)
        except httpx.ConnectError:
            raise _FallbackRequired()

    async def _send_plain(self, body: Dict[str, Any], key: str, thread_id: Optional[str]) -> SendResult:
        resp = await self._client.post(MESSAGE_PATH, json=body)
        if resp.status_code >= 400:
            return self._reject(key, thread_id, self._error_from_response(resp))
        self._read_remaining(resp)
        data = resp.json()
        msgs = data.get("messages") or []
        last = msgs[-1] if msgs else {}
        content = last.get("content")
        if not isinstance(content, str):
            content = json.dumps(content or "", ensure_ascii=False)
        return self._complete(key, data.get("chatId") or thread_id, content, last.get("timestamp"))

    def _apply_frame(self, state: _StreamState, frame: Dict[str, Any]) -> Optional[SendResult]:
        kind = frame.get("type")
        if kind == "token":
            piece = frame.get("content")
            if isinstance(piece, str) and piece:
                state.content += piece
                self._publish(
                    ClientMessage(
                        id=f"ai-pending-{state.key}",
                        client_message_id=state.key,
                        status="streaming",
                        content=state.content,
                        thread_id=state.thread_id,
                    )
                )
            return None
        if kind == "done":
            return self._complete(state.key, state.thread_id, state.content)
        if kind == "error":
            return self._fail(state.key, state.thread_id, ErrorDetails.from_payload(frame.get("error")))
        return None

    def _complete(
        self,
        key: str,
        thread_id: Optional[str],
        content: str,
        timestamp: Optional[str] = None,
    ) -> SendResult:
        message = ClientMessage(
            id=f"ai-{key}",
            client_message_id=key,
            status="complete",
            content=content,
            thread_id=thread_id,
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
        )
        self._states[key] = "done"
        self._publish(message)
        return SendResult(
            client_message_id=key,
            status="complete",
            message=message,
            thread_id=thread_id,
            remaining_messages=self.remaining_messages,
        )

    def _reject(self, key: str, thread_id: Optional[str], error: ErrorDetails) -> SendResult:
        if error.code == "DUPLICATE_MESSAGE":
            # 重复提交对用户而言不是错误，不推送任何状态
            self._states[key] = "done"
            return SendResult(client_message_id=key, status="duplicate", error=error, thread_id=thread_id)
        return self._fail(key, thread_id, error)

    def _fail(self, key: str, thread_id: Optional[str], error: ErrorDetails) -> SendResult:
        message = ClientMessage(
            id=f"ai-{key}",
            client_message_id=key,
            status="failed",
            thread_id=thread_id,
            error=error,
        )
        self._states[key] = "failed"
        self._publish(message)
        return SendResult(
            client_message_id=key,
            status="failed",
            message=message,
            error=error,
            thread_id=thread_id,
            remaining_messages=self.remaining_messages,
        )

    def _publish(self, message: ClientMessage) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception(
                    "Message listener failed",
                    extra={"extra": {"client_message_id": message.client_message_id}},
                )

    def _read_remaining(self, resp: httpx.Response) -> None:
        raw = (resp.headers.get(REMAINING_HEADER) or "").strip()
        if raw.lstrip("-").isdigit():
            self.remaining_messages = max(0, int(raw))

    @staticmethod
    def _error_from_response(resp: httpx.Response) -> ErrorDetails:
        try:
            data = resp.json()
        except ValueError:
            return ErrorDetails.from_code("SERVER_ERROR")
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            return ErrorDetails.from_payload(data["error"])
        return ErrorDetails.from_code("SERVER_ERROR")
