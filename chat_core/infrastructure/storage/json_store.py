import json
import os
import shutil
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import (
    DEFAULT_TITLE,
    MessageRecord,
    Thread,
    ThreadStore,
    ThreadSummary,
)
from chat_core.domain.exceptions import BusinessError, ThreadNotFoundError
from chat_core.domain.models import Role


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonThreadStore(ThreadStore):
    """基于文件的会话存储。

    每个会话一个目录：meta.json 保存会话元数据（临时文件 + os.replace 原子写入），
    messages.jsonl 按插入顺序追加消息。同一会话上的写操作通过按会话 id
    分配的锁串行化，避免并发追加导致消息顺序错乱。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._thread_root = self._root / "threads"
        self._thread_root.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, thread_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(thread_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[thread_id] = lock
            return lock

    def create_thread(self, owner_id: str) -> Thread:
        tid = f"t-{uuid4().hex}"
        tdir = self._thread_root / tid
        tdir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc)
        thread = Thread(id=tid, owner_id=owner_id, title=None, created_at=now, updated_at=now)
        self._write_meta(tdir, thread)
        return thread

    def get_thread(self, thread_id: str, owner_id: str) -> Thread:
        thread = self._read_meta(thread_id)
        # 不属于调用者的会话与不存在的会话同样处理
        if thread is None or thread.owner_id != owner_id:
            raise ThreadNotFoundError(thread_id)
        thread.messages = self._read_messages(thread_id)
        return thread

    def append_message(self, thread_id: str, message: MessageRecord) -> Thread:
        tdir = self._thread_root / thread_id
        with self._lock_for(thread_id):
            thread = self._read_meta(thread_id)
            if thread is None:
                raise ThreadNotFoundError(thread_id)
            try:
                payload = asdict(message)
                payload["created_at"] = _iso(message.created_at)
                line = json.dumps(payload, ensure_ascii=False)
                with (tdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
            thread.updated_at = datetime.now(timezone.utc)
            self._write_meta(tdir, thread)
            thread.messages = self._read_messages(thread_id)
        return thread

    def set_title(self, thread_id: str, title: str) -> None:
        """更新会话标题。"""
        with self._lock_for(thread_id):
            thread = self._read_meta(thread_id)
            if thread is None:
                raise ThreadNotFoundError(thread_id)
            thread.title = title
            self._write_meta(self._thread_root / thread_id, thread)

    def list_threads(self, owner_id: str) -> List[ThreadSummary]:
        items: List[ThreadSummary] = []
        for thread in self._iter_owned(owner_id):
            items.append(
                ThreadSummary(
                    id=thread.id,
                    title=thread.title or DEFAULT_TITLE,
                    is_starred=thread.is_starred,
                    created_at=thread.created_at,
                    updated_at=thread.updated_at,
                    message_count=len(self._read_messages(thread.id)),
                )
            )
        items.sort(key=lambda s: s.updated_at, reverse=True)
        return items

    def delete_thread(self, thread_id: str, owner_id: str) -> None:
        # 先校验归属
        self.get_thread(thread_id, owner_id)
        with self._lock_for(thread_id):
            self._remove_dir(thread_id)
        with self._locks_guard:
            self._locks.pop(thread_id, None)

    def delete_all_threads(self, owner_id: str) -> int:
        deleted = 0
        for thread in list(self._iter_owned(owner_id)):
            with self._lock_for(thread.id):
                self._remove_dir(thread.id)
            with self._locks_guard:
                self._locks.pop(thread.id, None)
            deleted += 1
        return deleted

    def toggle_star(self, thread_id: str, owner_id: str) -> bool:
        self.get_thread(thread_id, owner_id)
        with self._lock_for(thread_id):
            thread = self._read_meta(thread_id)
            if thread is None:
                raise ThreadNotFoundError(thread_id)
            thread.is_starred = not thread.is_starred
            self._write_meta(self._thread_root / thread_id, thread)
            return thread.is_starred

    def count_messages_since(self, owner_id: str, role: Role, since: datetime) -> int:
        count = 0
        for thread in self._iter_owned(owner_id):
            # 追加消息总会刷新 updated_at，更早更新的会话里不可能有 since 之后的消息
            if thread.updated_at < since:
                continue
            for msg in self._read_messages(thread.id):
                if msg.role == role and msg.created_at >= since:
                    count += 1
        return count

    def _iter_owned(self, owner_id: str):
        for tdir in sorted(self._thread_root.glob("*/")):
            thread = self._read_meta(tdir.name)
            if thread is not None and thread.owner_id == owner_id:
                yield thread

    def _remove_dir(self, thread_id: str) -> None:
        tdir = self._thread_root / thread_id
        if not tdir.exists():
            raise ThreadNotFoundError(thread_id)
        try:
            shutil.rmtree(tdir)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def _read_meta(self, thread_id: str) -> Optional[Thread]:
        meta_path = self._thread_root / thread_id / "meta.json"
        if not meta_path.exists():
            return None
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        return Thread(
            id=data["id"],
            owner_id=data["owner_id"],
            title=data.get("title") or None,
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            is_starred=bool(data.get("is_starred", False)),
        )

    def _read_messages(self, thread_id: str) -> List[MessageRecord]:
        msgs_path = self._thread_root / thread_id / "messages.jsonl"
        items: List[MessageRecord] = []
        if not msgs_path.exists():
            return items
        # 文件行序即插入顺序，不按时间戳重排
        for line in msgs_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                items.append(self._to_message(json.loads(line)))
            except (ValueError, KeyError):
                continue
        return items

    def _write_meta(self, tdir: Path, thread: Thread) -> None:
        meta_path = tdir / "meta.json"
        tmp_path = tdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": thread.id,
            "owner_id": thread.owner_id,
            "title": thread.title,
            "is_starred": thread.is_starred,
            "created_at": _iso(thread.created_at),
            "updated_at": _iso(thread.updated_at),
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def _to_message(self, data: Dict[str, Any]) -> MessageRecord:
        return MessageRecord(
            id=data["id"],
            thread_id=data["thread_id"],
            role=data["role"],
            content=data.get("content") or "",
            created_at=_parse_dt(data["created_at"]),
            meta=data.get("meta") or {},
        )
