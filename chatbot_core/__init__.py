"""Chatbot Core 顶层包。

聊天应用后端的核心实现：配置加载、领域模型、Provider 适配、
流式对话编排、用量记录、持久化存储与 HTTP 推送通道。
"""

from chatbot_core.engine.orchestrator import StreamOrchestrator, TurnEvent
from chatbot_core.providers.factory import ProviderFactory
from chatbot_core.providers.registry import ModelRegistry

__all__ = ["StreamOrchestrator", "TurnEvent", "ProviderFactory", "ModelRegistry"]
