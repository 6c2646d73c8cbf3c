"""基于 JSON 文件的持久化实现。

目录结构::

    <root>/
        counters.json               # 各实体的自增 ID
        models.json                 # AIModel 列表
        usage.jsonl                 # UsageRecord，只追加
        sessions/<id>/meta.json     # ChatSession
        sessions/<id>/messages.jsonl

同一个 JsonStore 实例内的读写通过一把锁串行化，多个请求线程可以共享一个实例。
"""

import json
import os
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from chatbot_core.config.settings import settings
from chatbot_core.domain.ai_model import AIModel
from chatbot_core.domain.conversation import ChatSession, Message
from chatbot_core.domain.exceptions import PersistenceError, SessionNotFound, ValidationError
from chatbot_core.domain.models import Role
from chatbot_core.domain.usage import UsageRecord


# 持久化的消息只有用户和助手两种角色
MESSAGE_ROLES = ("user", "assistant")


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonStore:
    """会话、消息、模型配置与用量记录的文件存储。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._lock = threading.RLock()
        try:
            self._sessions_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(code="STORE_INIT_ERROR", message=str(e))

    # ---- 会话 ----

    def create_session(self, user_id: int, title: str) -> ChatSession:
        with self._lock:
            now = datetime.now(timezone.utc)
            session = ChatSession(
                id=self._next_id("session"),
                user_id=user_id,
                title=title,
                created_at=now,
                updated_at=now,
            )
            sdir = self._sessions_root / str(session.id)
            try:
                sdir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))
            self._write_session(session)
            return session

    def get_session(self, session_id: int, user_id: int) -> ChatSession:
        with self._lock:
            session = self._read_session(session_id)
        if session is None or session.is_deleted or session.user_id != user_id:
            raise SessionNotFound(code="SESSION_NOT_FOUND", message=f"chat session {session_id} not found")
        return session

    def list_sessions(self, user_id: int) -> List[ChatSession]:
        items: List[ChatSession] = []
        with self._lock:
            for sdir in self._sessions_root.iterdir():
                if not (sdir.is_dir() and sdir.name.isdigit()):
                    continue
                session = self._read_session(int(sdir.name))
                if session and not session.is_deleted and session.user_id == user_id:
                    items.append(session)
        items.sort(key=lambda s: s.id, reverse=True)
        return items

    def rename_session(self, session_id: int, user_id: int, title: str) -> ChatSession:
        with self._lock:
            session = self.get_session(session_id, user_id)
            session.title = title
            session.updated_at = datetime.now(timezone.utc)
            self._write_session(session)
            return session

    def delete_session(self, session_id: int, user_id: int) -> None:
        """软删除：只打墓碑标记，消息文件保留。"""

        with self._lock:
            session = self.get_session(session_id, user_id)
            now = datetime.now(timezone.utc)
            session.deleted_at = now
            session.updated_at = now
            self._write_session(session)

    # ---- 消息 ----

    def append_message(
        self,
        session_id: int,
        role: Role,
        content: str,
        model_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tokens: int = 0,
    ) -> Message:
        if role not in MESSAGE_ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"message role must be user or assistant, got {role!r}")
        with self._lock:
            session = self._read_session(session_id)
            if session is None or session.is_deleted:
                raise SessionNotFound(code="SESSION_NOT_FOUND", message=f"chat session {session_id} not found")
            now = datetime.now(timezone.utc)
            message = Message(
                id=self._next_id("message"),
                session_id=session_id,
                role=role,
                content=content,
                created_at=now,
                updated_at=now,
                model_id=model_id,
                tokens=tokens,
                metadata=dict(metadata or {}),
            )
            payload = asdict(message)
            payload["created_at"] = _ts(message.created_at)
            payload["updated_at"] = _ts(message.updated_at)
            self._append_line(self._sessions_root / str(session_id) / "messages.jsonl", payload)
            session.updated_at = now
            self._write_session(session)
            return message

    def list_messages(self, session_id: int) -> List[Message]:
        with self._lock:
            rows = self._read_lines(self._sessions_root / str(session_id) / "messages.jsonl")
        items = [self._to_message(row) for row in rows]
        items.sort(key=lambda m: (m.created_at, m.id))
        return items

    # ---- 模型配置 ----

    def list_models(self) -> List[AIModel]:
        with self._lock:
            return [AIModel.from_dict(row) for row in self._read_models()]

    def get_model(self, model_id: int) -> Optional[AIModel]:
        for model in self.list_models():
            if model.id == model_id:
                return model
        return None

    def save_model(self, model: AIModel) -> AIModel:
        """新增或更新模型；标记为默认时，同类型的其他模型取消默认。"""

        with self._lock:
            rows = self._read_models()
            if not model.id:
                model.id = self._next_id("model")
            model.updated_at = datetime.now(timezone.utc)
            kept = []
            for row in rows:
                if row.get("id") == model.id:
                    continue
                if model.is_default and row.get("is_default") and row.get("type", "chat") == model.type:
                    row["is_default"] = False
                kept.append(row)
            kept.append(model.to_dict())
            kept.sort(key=lambda r: r["id"])
            self._write_json(self._root / "models.json", kept)
            self._bump_counter("model", model.id)
            return model

    def seed_models(self, definitions: Iterable[Dict[str, Any]]) -> List[AIModel]:
        """模型库为空时写入初始模型定义。"""

        with self._lock:
            if self._read_models():
                return []
            created = []
            for data in definitions:
                model = AIModel.from_dict({"id": 0, **data})
                created.append(self.save_model(model))
            return created

    # ---- 用量 ----

    def record(self, usage: UsageRecord) -> UsageRecord:
        with self._lock:
            usage.id = self._next_id("usage")
            self._append_line(self._root / "usage.jsonl", usage.to_dict())
            return usage

    def list_by_user(self, user_id: int) -> List[UsageRecord]:
        with self._lock:
            rows = self._read_lines(self._root / "usage.jsonl")
        items = [UsageRecord.from_dict(row) for row in rows if row.get("user_id") == user_id]
        items.sort(key=lambda u: (u.created_at, u.id or 0), reverse=True)
        return items

    # ---- 内部方法 ----

    def _next_id(self, kind: str) -> int:
        counters = self._read_json(self._root / "counters.json", {})
        value = int(counters.get(kind, 0)) + 1
        counters[kind] = value
        self._write_json(self._root / "counters.json", counters)
        return value

    def _bump_counter(self, kind: str, value: int) -> None:
        counters = self._read_json(self._root / "counters.json", {})
        if int(counters.get(kind, 0)) < value:
            counters[kind] = value
            self._write_json(self._root / "counters.json", counters)

    def _read_session(self, session_id: int) -> Optional[ChatSession]:
        meta_path = self._sessions_root / str(session_id) / "meta.json"
        if not meta_path.exists():
            return None
        data = self._read_json(meta_path, None)
        if data is None:
            return None
        return ChatSession(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            title=data.get("title") or "",
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data["updated_at"]),
            deleted_at=_parse_ts(data.get("deleted_at")),
        )

    def _write_session(self, session: ChatSession) -> None:
        obj = {
            "id": session.id,
            "user_id": session.user_id,
            "title": session.title,
            "created_at": _ts(session.created_at),
            "updated_at": _ts(session.updated_at),
            "deleted_at": _ts(session.deleted_at) if session.deleted_at else None,
        }
        self._write_json(self._sessions_root / str(session.id) / "meta.json", obj)

    def _read_models(self) -> List[Dict[str, Any]]:
        return self._read_json(self._root / "models.json", [])

    def _to_message(self, data: Dict[str, Any]) -> Message:
        return Message(
            id=int(data["id"]),
            session_id=int(data["session_id"]),
            role=data["role"],
            content=data.get("content") or "",
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data.get("updated_at") or data["created_at"]),
            model_id=data.get("model_id"),
            tokens=int(data.get("tokens", 0)),
            metadata=data.get("metadata") or {},
        )

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=f"{path.name}: {e}")

    def _write_json(self, path: Path, obj: Any) -> None:
        tmp_path = path.parent / f"{path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))

    def _append_line(self, path: Path, payload: Dict[str, Any]) -> None:
        try:
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))

    def _read_lines(self, path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))
        rows = []
        for line in lines:
            if not line.strip():
                continue
            try:
                rows.append(json.loads(line))
            except ValueError:
                # 写入中途崩溃留下的半行，跳过
                continue
        return rows
