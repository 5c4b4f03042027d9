"""HTTP 接口层：FastAPI 应用与服务装配。"""

from chat_core.api.app import create_app

__all__ = ["create_app"]
