"""Gemini Provider 适配器。

本模块负责：

1. 接收统一的历史消息与新提问。
2. 将其转换为 Generative Language REST API 的 generateContent 请求。
3. 调用 HTTP 接口，并把限流/安全拦截/认证/超时等失败归类为 ModelError.kind。
4. 把响应中的内容（parts 数组、嵌套对象等）归一化为纯文本。

归一化只在这里做一次，网关与协调器拿到的永远是 str。
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from chat_core.domain.exceptions import ModelError, ModelErrorKind
from chat_core.domain.models import ChatMessage, ModelOutput
from chat_core.providers.registry import GEMINI_CONFIG


def normalize_output(output: ModelOutput) -> str:
    """把任意形态的模型输出归一化为纯文本。

    - str: 原样返回。
    - 序列（parts 数组）: 逐项归一化后拼接。
    - 映射: 依次取 text / parts / content 字段。
    - 其他: 空字符串。
    """

    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, Mapping):
        for key in ("text", "parts", "content"):
            if key in output and output[key] is not None:
                return normalize_output(output[key])
        return ""
    if isinstance(output, Sequence):
        return "".join(normalize_output(part) for part in output)
    return ""


class GeminiClient:
    """Gemini 提供方客户端实现。"""

    name = "gemini"

    def __init__(self, settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = settings

    def generate(self, model: str, history: Sequence[ChatMessage], prompt: str) -> str:
        """用指定模型执行一次非流式调用。

        步骤：
        1. 校验 API Key。
        2. 构造 generateContent 请求体。
        3. 发送请求，把网络错误/限流/认证失败映射为 ModelError。
        4. 检查安全拦截，并归一化输出文本。
        """

        api_key = getattr(self._settings, "gemini_api_key", None)
        if not api_key:
            raise ModelError(ModelErrorKind.AUTH_ERROR, "GEMINI_API_KEY not set", model=model)
        payload = self._build_payload(model, history, prompt)
        base = getattr(self._settings, "gemini_base_url", None) or GEMINI_CONFIG.base_url
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(
                    f"{base.rstrip('/')}/models/{model}:generateContent",
                    json=payload,
                    headers={
                        "x-goog-api-key": api_key,
                        "Content-Type": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            raise ModelError(ModelErrorKind.TIMEOUT, f"{model} timed out: {e}", model=model)
        except httpx.RequestError as e:
            raise ModelError(ModelErrorKind.UNKNOWN, str(e), model=model)
        if resp.status_code == 429:
            raise ModelError(ModelErrorKind.RATE_LIMITED, f"{model} rate limit (429)", model=model)
        if resp.status_code in (401, 403):
            raise ModelError(ModelErrorKind.AUTH_ERROR, resp.text, model=model, http_code=resp.status_code)
        if resp.status_code >= 400:
            raise ModelError(ModelErrorKind.UNKNOWN, resp.text, model=model, http_code=resp.status_code)
        return self._parse_response(resp.json(), model)

    def _build_payload(self, model: str, history: Sequence[ChatMessage], prompt: str) -> Dict[str, Any]:
        model_cfg = GEMINI_CONFIG.model(model)
        contents: List[Dict[str, Any]] = [m.to_payload() for m in history]
        contents.append(ChatMessage(role="user", content=prompt).to_payload())
        return {
            "contents": contents,
            "generationConfig": {
                "temperature": model_cfg.default_temperature,
                "maxOutputTokens": model_cfg.max_output_tokens,
            },
        }

    def _parse_response(self, data: Dict[str, Any], model: str) -> str:
        """把 generateContent 的响应 JSON 解析为纯文本。"""

        feedback = data.get("promptFeedback") or {}
        block_reason: Optional[str] = feedback.get("blockReason")
        if block_reason:
            raise ModelError(ModelErrorKind.SAFETY_BLOCKED, f"Prompt blocked: {block_reason}", model=model)
        candidates = data.get("candidates") or []
        if not candidates:
            raise ModelError(ModelErrorKind.UNKNOWN, "Empty response from model", model=model)
        first = candidates[0] or {}
        if first.get("finishReason") == "SAFETY":
            raise ModelError(ModelErrorKind.SAFETY_BLOCKED, "Response blocked by safety filters", model=model)
        return normalize_output(first.get("content"))
