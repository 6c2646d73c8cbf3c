"""Provider 客户端工厂。

根据 AIModel.provider 选择具体实现；工厂只持有静态配置和
Coze 的共享 token 缓存，可被多个并发请求同时调用。
"""

from typing import Optional

from chatbot_core.config.settings import settings
from chatbot_core.domain.ai_model import AIModel
from chatbot_core.domain.exceptions import MissingCredential, UnsupportedProvider
from chatbot_core.providers.base import ProviderClient
from chatbot_core.providers.coze_client import CozeClient, fetch_access_token
from chatbot_core.providers.openai_compat_client import OpenAICompatClient
from chatbot_core.providers.registry import PROVIDER_COZE, PROVIDER_OPENAI, PROVIDER_ZHIPU, get_provider_config
from chatbot_core.providers.token_cache import TokenCache
from chatbot_core.providers.zhipu_client import ZhipuClient


class ProviderFactory:
    def __init__(self, cfg=settings, coze_tokens: Optional[TokenCache] = None):
        self._settings = cfg
        self._coze_tokens = coze_tokens or TokenCache(
            fetch=lambda: fetch_access_token(self._settings),
            ttl_seconds=getattr(cfg, "coze_token_refresh_minutes", 14) * 60,
        )

    def create_client(self, model: AIModel, user_id: Optional[int] = None) -> ProviderClient:
        provider = (model.provider or "").lower()
        if provider == PROVIDER_ZHIPU:
            return self._create_zhipu(model)
        if provider == PROVIDER_OPENAI:
            return self._create_openai(model)
        if provider == PROVIDER_COZE:
            return self._create_coze(model, user_id)
        raise UnsupportedProvider(code="UNSUPPORTED_PROVIDER", message=f"unsupported AI provider: {model.provider!r}")

    def _create_zhipu(self, model: AIModel) -> ProviderClient:
        api_key = getattr(self._settings, "zhipu_api_key", None)
        if not api_key:
            raise MissingCredential(code="MISSING_API_KEY", message="ZHIPU_API_KEY not set")
        base = getattr(self._settings, "zhipu_base_url", None) or get_provider_config(PROVIDER_ZHIPU).base_url
        return ZhipuClient(model, api_key=api_key, base_url=base, cfg=self._settings)

    def _create_openai(self, model: AIModel) -> ProviderClient:
        api_key = getattr(self._settings, "openai_api_key", None)
        if not api_key:
            raise MissingCredential(code="MISSING_API_KEY", message="OPENAI_API_KEY not set")
        base = getattr(self._settings, "openai_base_url", None) or get_provider_config(PROVIDER_OPENAI).base_url
        return OpenAICompatClient(model, api_key=api_key, base_url=base, cfg=self._settings)

    def _create_coze(self, model: AIModel, user_id: Optional[int]) -> ProviderClient:
        static_token = getattr(self._settings, "coze_access_token", None)
        if static_token:
            return CozeClient(model, token_source=lambda: static_token, cfg=self._settings, user_id=user_id)
        if not (
            getattr(self._settings, "coze_private_key", None)
            and getattr(self._settings, "coze_client_id", None)
            and getattr(self._settings, "coze_public_key_id", None)
        ):
            raise MissingCredential(
                code="MISSING_API_KEY",
                message="COZE_ACCESS_TOKEN or COZE_CLIENT_ID/COZE_PUBLIC_KEY_ID/COZE_PRIVATE_KEY not set",
            )
        return CozeClient(
            model,
            token_source=self._coze_tokens.get,
            cfg=self._settings,
            user_id=user_id,
            token_cache=self._coze_tokens,
        )
