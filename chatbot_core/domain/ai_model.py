"""AI 模型配置实体。

AIModel 是只读配置：编排层只读取它来决定用哪个 Provider、
用什么采样参数，从不修改它。
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol


@dataclass
class AIModel:
    id: int
    name: str  # 唯一名称，也是发给厂商的模型 ID，如 glm-4
    display_name: str
    provider: str  # zhipu / openai / coze
    type: str = "chat"
    url: str = ""  # 完整的请求地址，空则使用 Provider 默认地址
    max_tokens: int = 2048
    temperature: float = 0.7
    top_p: float = 0.9
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    enabled: bool = True
    is_default: bool = False
    api_parameters: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    cost_per_1k_tokens: float = 0.0
    # 大分类：workflow / bot / bigmodel；coze 的 workflow_id 或 bot_id 放在 provider_class_id
    provider_class: str = ""
    provider_class_id: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AIModel":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        for key in ("created_at", "updated_at"):
            value = known.get(key)
            if isinstance(value, str):
                known[key] = datetime.fromisoformat(value.replace("Z", "+00:00"))
        known.setdefault("display_name", known.get("name", ""))
        return cls(**known)


class ModelStore(Protocol):
    def list_models(self) -> List[AIModel]:
        ...

    def get_model(self, model_id: int) -> Optional[AIModel]:
        ...

    def save_model(self, model: AIModel) -> AIModel:
        ...
