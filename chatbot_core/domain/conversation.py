"""会话与消息实体，以及持久化协议。

会话和消息归存储层所有；编排层在一轮对话期间只持有临时引用。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from .models import Role


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class ChatSession:
    id: int
    user_id: int
    title: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None  # 软删除墓碑

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Message:
    id: int
    session_id: int
    role: Role
    content: str
    created_at: datetime
    updated_at: datetime
    model_id: Optional[int] = None
    tokens: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "model_id": self.model_id,
            "tokens": self.tokens,
            "metadata": dict(self.metadata),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ChatStore(Protocol):
    def create_session(self, user_id: int, title: str) -> ChatSession:
        ...

    def get_session(self, session_id: int, user_id: int) -> ChatSession:
        ...

    def list_sessions(self, user_id: int) -> List[ChatSession]:
        ...

    def rename_session(self, session_id: int, user_id: int, title: str) -> ChatSession:
        ...

    def delete_session(self, session_id: int, user_id: int) -> None:
        ...

    def append_message(
        self,
        session_id: int,
        role: Role,
        content: str,
        model_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tokens: int = 0,
    ) -> Message:
        ...

    def list_messages(self, session_id: int) -> List[Message]:
        ...
