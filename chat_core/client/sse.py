"""text/event-stream 帧解码。

服务端每帧格式为 ``data: <json>\\n\\n``。网络分块与帧边界无关：一个分块里可能有
多个完整帧，也可能只有半帧，解码器负责缓存不完整的部分。
"""

import json
from typing import Any, Dict, List


class SSEDecoder:
    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> List[Dict[str, Any]]:
        """喂入一段文本，返回其中所有完整帧的 JSON 负载。"""

        self._buffer += chunk.replace("\r\n", "\n")
        frames: List[Dict[str, Any]] = []
        while True:
            boundary = self._buffer.find("\n\n")
            if boundary == -1:
                break
            raw = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + 2:]
            frames.extend(self._parse_block(raw))
        return frames

    def flush(self) -> List[Dict[str, Any]]:
        """流结束时处理缓冲区中剩余的最后一帧（没有结尾空行的情况）。"""

        raw, self._buffer = self._buffer, ""
        return self._parse_block(raw) if raw.strip() else []

    @staticmethod
    def _parse_block(raw: str) -> List[Dict[str, Any]]:
        frames: List[Dict[str, Any]] = []
        for line in raw.split("\n"):
            if not line.startswith("data:"):
                continue
            data_str = line[5:].strip()
            if not data_str or data_str == "[DONE]":
                continue
            try:
                payload = json.loads(data_str)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                frames.append(payload)
        return frames
