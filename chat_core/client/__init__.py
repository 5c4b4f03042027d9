"""客户端：流式控制器与 SSE 帧解码。"""

from chat_core.client.controller import ChatStreamController, ClientMessage, ErrorDetails, SendResult

__all__ = ["ChatStreamController", "ClientMessage", "ErrorDetails", "SendResult"]
