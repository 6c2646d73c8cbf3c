from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Protocol


UsageStatus = Literal["success", "error"]


@dataclass
class UsageRecord:
    """一次 Provider 调用的审计记录。

    每次调用尝试只创建一次；message_id 在助手消息落库之后才回填，
    流式进行中可能为空。
    """

    user_id: int
    model_id: int
    status: UsageStatus
    prompt: str = ""
    response: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    duration_ms: int = 0
    error_msg: str = ""
    cost: float = 0.0
    message_id: Optional[int] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if isinstance(known.get("created_at"), str):
            known["created_at"] = datetime.fromisoformat(known["created_at"].replace("Z", "+00:00"))
        return cls(**known)


class UsageStore(Protocol):
    def record(self, usage: UsageRecord) -> UsageRecord:
        ...

    def list_by_user(self, user_id: int) -> List[UsageRecord]:
        ...
