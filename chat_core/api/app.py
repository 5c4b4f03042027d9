"""对外 HTTP 接口。

- POST /chat/message          非流式发送，返回整个会话的消息列表与标题。
- POST /chat/message/stream   流式发送，text/event-stream 帧：token* + done。
- GET /chat/history           当前用户的会话摘要，最近更新的在前。
- GET /chat/{id}              完整会话。
- DELETE /chat/clear          删除当前用户的全部会话。
- DELETE /chat/{id}           删除单个会话。
- PATCH /chat/{id}/star       切换星标。

调用者身份由上游认证层写入 request.state.user_id（或 X-User-Id 头），
CSRF 校验同样在进入本模块之前完成。
"""

import json
from typing import Any, Dict, Iterator, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from chat_core.api.schemas import (
    SendMessageBody,
    message_to_dict,
    summary_to_dict,
    thread_to_dict,
)
from chat_core.api.service import ChatServices, build_services
from chat_core.domain.exceptions import BusinessError, error_body
from chat_core.domain.models import ExchangeRequest
from chat_core.infrastructure.logging.logger import logger


REMAINING_HEADER = "X-DailyLimit-Remaining"


class AuthRequiredError(BusinessError):
    def __init__(self):
        super().__init__(code="AUTH_REQUIRED", message="User is not authenticated", http_status=401)


def current_user(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None) or request.headers.get("X-User-Id")
    if not user_id or not str(user_id).strip():
        raise AuthRequiredError()
    return str(user_id).strip()


def _error_response(code: str, status: int) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": error_body(code)})


def _sse(frames: Iterator[Dict[str, Any]]) -> Iterator[bytes]:
    for frame in frames:
        yield f"data: {json.dumps(frame, ensure_ascii=False)}\n\n".encode("utf-8")


def create_app(services: Optional[ChatServices] = None) -> FastAPI:
    app = FastAPI(title="Chat Core", version="0.1.0")
    app.state.services = services or build_services()

    def get_services(request: Request) -> ChatServices:
        return request.app.state.services

    @app.exception_handler(BusinessError)
    async def handle_business_error(request: Request, exc: BusinessError) -> JSONResponse:
        code = exc.public_code
        status = exc.http_status if code == exc.code else 500
        if status >= 500:
            logger.error(
                f"Request failed: {exc.message}",
                extra={"extra": {"path": request.url.path, "code": exc.code, **exc.extra}},
            )
        return _error_response(code, status)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response("INVALID_INPUT", 400)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"Unexpected error: {exc}",
            exc_info=exc,
            extra={"extra": {"path": request.url.path}},
        )
        return _error_response("SERVER_ERROR", 500)

    @app.post("/chat/message")
    def send_message(
        body: SendMessageBody,
        user_id: str = Depends(current_user),
        svc: ChatServices = Depends(get_services),
    ):
        result = svc.coordinator.handle_send(
            user_id,
            ExchangeRequest(text=body.text, thread_id=body.chat_id, client_message_id=body.client_message_id),
        )
        return JSONResponse(
            content={
                "chatId": result.thread.id,
                "messages": [message_to_dict(m) for m in result.messages],
                "title": result.title,
            },
            headers={REMAINING_HEADER: str(result.remaining)},
        )

    @app.post("/chat/message/stream")
    def send_message_stream(
        body: SendMessageBody,
        user_id: str = Depends(current_user),
        svc: ChatServices = Depends(get_services),
    ):
        result, frames = svc.coordinator.stream_send(
            user_id,
            ExchangeRequest(text=body.text, thread_id=body.chat_id, client_message_id=body.client_message_id),
        )
        return StreamingResponse(
            _sse(frames),
            media_type="text/event-stream",
            headers={
                REMAINING_HEADER: str(result.remaining),
                "X-Chat-Id": result.thread.id,
                "Cache-Control": "no-cache",
            },
        )

    @app.get("/chat/history")
    def history(user_id: str = Depends(current_user), svc: ChatServices = Depends(get_services)):
        return [summary_to_dict(s) for s in svc.store.list_threads(user_id)]

    @app.delete("/chat/clear")
    def clear(user_id: str = Depends(current_user), svc: ChatServices = Depends(get_services)):
        deleted = svc.store.delete_all_threads(user_id)
        return {"success": True, "deletedCount": deleted}

    @app.get("/chat/{thread_id}")
    def get_thread(thread_id: str, user_id: str = Depends(current_user), svc: ChatServices = Depends(get_services)):
        return thread_to_dict(svc.store.get_thread(thread_id, user_id))

    @app.patch("/chat/{thread_id}/star")
    def toggle_star(thread_id: str, user_id: str = Depends(current_user), svc: ChatServices = Depends(get_services)):
        return {"id": thread_id, "isStarred": svc.store.toggle_star(thread_id, user_id)}

    @app.delete("/chat/{thread_id}")
    def delete_thread(thread_id: str, user_id: str = Depends(current_user), svc: ChatServices = Depends(get_services)):
        svc.store.delete_thread(thread_id, user_id)
        return {"success": True}

    return app
