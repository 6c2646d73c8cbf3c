"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口与流式契约 (base)。
- 维护 Provider 默认配置与模型解析 (registry)。
- 按模型配置创建客户端 (factory)。
- 提供各厂商的具体实现 (openai_compat_client、zhipu_client、coze_client)。
"""

from chatbot_core.providers.base import ProviderClient
from chatbot_core.providers.factory import ProviderFactory
from chatbot_core.providers.registry import ModelRegistry

__all__ = ["ProviderClient", "ProviderFactory", "ModelRegistry"]
