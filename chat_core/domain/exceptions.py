"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或客户端做统一捕获与用户提示。

对外错误码（code）与用户可见文案（title/what/action）的对应关系
集中维护在 ERROR_MESSAGES 中，API 层与客户端共用同一份文案。
"""

from enum import Enum
from typing import Dict, Optional


ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "AUTH_REQUIRED": {
        "title": "Authentication required.",
        "what": "User is not authenticated.",
        "action": "Please sign in.",
    },
    "INVALID_INPUT": {
        "title": "Invalid input — message is empty.",
        "what": "No message content provided.",
        "action": "Please enter a message.",
    },
    "MESSAGE_TOO_LONG": {
        "title": "Message too long — split and retry.",
        "what": "Message exceeds maximum length.",
        "action": "Split your message into smaller parts.",
    },
    "DUPLICATE_MESSAGE": {
        "title": "Duplicate message blocked.",
        "what": "Same clientMessageId received twice.",
        "action": "If you meant to resend, modify and resend.",
    },
    "DAILY_MESSAGE_LIMIT": {
        "title": "Daily message limit reached (20).",
        "what": "You hit the per-day message quota.",
        "action": "Try again tomorrow.",
    },
    "THREAD_NOT_FOUND": {
        "title": "Thread not found.",
        "what": "The conversation thread does not exist.",
        "action": "Start a new conversation.",
    },
    "LLM_TIMEOUT": {
        "title": "AI service error — try again.",
        "what": "Model request timed out or failed.",
        "action": "Please try again in a few moments.",
    },
    "SERVER_ERROR": {
        "title": "Server error — something went wrong.",
        "what": "Unexpected server error occurred.",
        "action": "Please try again.",
    },
    "NETWORK_FAILURE": {
        "title": "Network error — unable to reach server.",
        "what": "Request failed or timed out.",
        "action": "Check your internet connection. Retry.",
    },
}


def error_body(code: str) -> Dict[str, str]:
    """按错误码返回 {title, what, action, code}，未知错误码按 SERVER_ERROR 处理。"""

    texts = ERROR_MESSAGES.get(code) or ERROR_MESSAGES["SERVER_ERROR"]
    return {**texts, "code": code if code in ERROR_MESSAGES else "SERVER_ERROR"}


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、model 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    @property
    def public_code(self) -> str:
        """暴露给客户端的错误码；内部错误码统一折叠为 SERVER_ERROR。"""

        return self.code if self.code in ERROR_MESSAGES else "SERVER_ERROR"


class InvalidInputError(BusinessError):
    """消息为空或全是空白字符。"""

    def __init__(self, message: str = "Message text is required", **extra):
        super().__init__(code="INVALID_INPUT", message=message, http_status=400, **extra)


class MessageTooLongError(BusinessError):
    def __init__(self, length: int, limit: int, **extra):
        super().__init__(
            code="MESSAGE_TOO_LONG",
            message=f"Message has {length} characters, limit is {limit}",
            http_status=400,
            length=length,
            limit=limit,
            **extra,
        )


class DuplicateMessageError(BusinessError):
    """同一个 clientMessageId 已被处理或正在处理中。"""

    def __init__(self, client_message_id: str, **extra):
        super().__init__(
            code="DUPLICATE_MESSAGE",
            message=f"Message {client_message_id} was already received",
            http_status=409,
            client_message_id=client_message_id,
            **extra,
        )


class QuotaExceededError(BusinessError):
    def __init__(self, limit: int, **extra):
        super().__init__(
            code="DAILY_MESSAGE_LIMIT",
            message=f"Daily message limit of {limit} reached",
            http_status=429,
            limit=limit,
            **extra,
        )


class ThreadNotFoundError(BusinessError):
    """会话不存在，或不属于当前用户（两种情况对外不做区分）。"""

    def __init__(self, thread_id: str, **extra):
        super().__init__(
            code="THREAD_NOT_FOUND",
            message=f"Thread {thread_id} not found",
            http_status=404,
            thread_id=thread_id,
            **extra,
        )


class ModelErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    SAFETY_BLOCKED = "safety_blocked"
    AUTH_ERROR = "auth_error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ModelError(BusinessError):
    """模型调用失败。

    kind 决定网关的降级策略：只有 RATE_LIMITED 会尝试下一个候选模型，
    其他类型立即向上抛出。
    """

    def __init__(self, kind: ModelErrorKind, message: str, model: Optional[str] = None, **extra):
        code = "LLM_TIMEOUT" if kind is ModelErrorKind.TIMEOUT else "SERVER_ERROR"
        http_status = 503 if kind is ModelErrorKind.TIMEOUT else 500
        super().__init__(code=code, message=message, http_status=http_status, model=model, **extra)
        self.kind = kind
        self.model = model

    @property
    def retryable(self) -> bool:
        """同一个 clientMessageId 是否允许重试。"""

        return self.kind in (ModelErrorKind.RATE_LIMITED, ModelErrorKind.TIMEOUT, ModelErrorKind.UNKNOWN)


class AllModelsExhaustedError(ModelError):
    """所有候选模型都因限流失败。last_error 保存最后一次观察到的错误。"""

    def __init__(self, last_error: ModelError, tried: list):
        super().__init__(
            kind=last_error.kind,
            message=f"All models failed. Last error: {last_error.message}",
            model=last_error.model,
            tried=list(tried),
        )
        self.code = "LLM_TIMEOUT"
        self.http_status = 503
        self.last_error = last_error
        self.tried = list(tried)
