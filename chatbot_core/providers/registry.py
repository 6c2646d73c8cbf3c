"""Provider 与模型配置。

- ProviderConfig: 每个厂商的默认接入地址。
- ModelRegistry: 把逻辑模型 ID / 名称解析为 AIModel 配置，
  只返回 enabled 的模型，并负责找出默认模型。

ModelRegistry 本身不缓存，每次都读模型库；模型库内部自行串行化读写。
"""

from dataclasses import dataclass
from typing import List, Mapping, Optional

from chatbot_core.domain.ai_model import AIModel, ModelStore
from chatbot_core.domain.exceptions import ModelNotFound, NoDefaultModel
from chatbot_core.infrastructure.logging.logger import logger

PROVIDER_ZHIPU = "zhipu"
PROVIDER_OPENAI = "openai"
PROVIDER_COZE = "coze"


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    PROVIDER_ZHIPU: ProviderConfig(name=PROVIDER_ZHIPU, base_url="https://open.bigmodel.cn/api/paas/v4"),
    PROVIDER_OPENAI: ProviderConfig(name=PROVIDER_OPENAI, base_url="https://api.openai.com/v1"),
    PROVIDER_COZE: ProviderConfig(name=PROVIDER_COZE, base_url="https://api.coze.cn"),
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


class ModelRegistry:
    def __init__(self, store: ModelStore):
        self._store = store

    def list_enabled(self) -> List[AIModel]:
        return [m for m in self._store.list_models() if m.enabled]

    def get_by_id(self, model_id: int) -> AIModel:
        model = self._store.get_model(model_id)
        if model is None or not model.enabled:
            raise ModelNotFound(code="MODEL_NOT_FOUND", message=f"model {model_id} not found")
        return model

    def get_by_name(self, name: str) -> AIModel:
        for model in self.list_enabled():
            if model.name == name:
                return model
        raise ModelNotFound(code="MODEL_NOT_FOUND", message=f"model {name!r} not found")

    def get_default(self, model_type: str = "chat") -> AIModel:
        candidates = [m for m in self.list_enabled() if m.is_default and m.type == model_type]
        if not candidates:
            raise NoDefaultModel(code="NO_DEFAULT_MODEL", message=f"no default {model_type} model configured")
        if len(candidates) > 1:
            logger.warning(
                "Multiple default models flagged",
                extra={"extra": {"model_type": model_type, "model_ids": [m.id for m in candidates]}},
            )
        return min(candidates, key=lambda m: m.id)

    def resolve(self, model_id: Optional[int], strict: bool = False) -> AIModel:
        """显式 model_id 优先；查不到时回退到默认模型（strict=True 时直接报错）。"""

        if model_id is None:
            return self.get_default()
        try:
            return self.get_by_id(model_id)
        except ModelNotFound:
            if strict:
                raise
            logger.warning(
                "Requested model unavailable, falling back to default",
                extra={"extra": {"model_id": model_id}},
            )
            return self.get_default()
