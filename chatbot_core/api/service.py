"""对外服务门面。

把存储、模型注册表、Provider 工厂、用量记录器与编排器组装在一起，
给 HTTP 层提供按用户隔离的会话 / 消息 / 模型 / 用量接口。

所有协作对象都通过构造函数注入，build_service() 按配置组装默认实现。
"""

import threading
from typing import Any, Dict, List, Optional

from chatbot_core.config.settings import settings
from chatbot_core.domain.ai_model import AIModel
from chatbot_core.domain.conversation import ChatSession, ChatStore, Message
from chatbot_core.domain.exceptions import ValidationError
from chatbot_core.domain.usage import UsageRecord, UsageStore
from chatbot_core.engine.orchestrator import StreamOrchestrator, Turn, TurnResult, TurnSink
from chatbot_core.engine.usage_recorder import UsageRecorder
from chatbot_core.infrastructure.logging.logger import logger
from chatbot_core.infrastructure.storage.json_store import JsonStore
from chatbot_core.providers.factory import ProviderFactory
from chatbot_core.providers.registry import ModelRegistry

DEFAULT_SESSION_TITLE = "New chat"


class ChatService:
    def __init__(
        self,
        chat_store: ChatStore,
        usage_store: UsageStore,
        registry: ModelRegistry,
        orchestrator: StreamOrchestrator,
    ):
        self._chats = chat_store
        self._usage = usage_store
        self._registry = registry
        self._orchestrator = orchestrator

    # ---- 会话 ----

    def create_session(self, user_id: int, title: Optional[str] = None) -> ChatSession:
        title = (title or "").strip() or DEFAULT_SESSION_TITLE
        if len(title) > 200:
            raise ValidationError(code="TITLE_TOO_LONG", message="session title must be at most 200 characters")
        session = self._chats.create_session(user_id, title)
        logger.info("Created chat session", extra={"extra": {"session_id": session.id, "user_id": user_id}})
        return session

    def list_sessions(self, user_id: int) -> List[ChatSession]:
        return self._chats.list_sessions(user_id)

    def rename_session(self, user_id: int, session_id: int, title: str) -> ChatSession:
        title = (title or "").strip()
        if not title:
            raise ValidationError(code="EMPTY_TITLE", message="session title must not be empty")
        return self._chats.rename_session(session_id, user_id, title)

    def delete_session(self, user_id: int, session_id: int) -> None:
        self._chats.delete_session(session_id, user_id)
        logger.info("Deleted chat session", extra={"extra": {"session_id": session_id, "user_id": user_id}})

    # ---- 消息 ----

    def list_messages(self, user_id: int, session_id: int) -> List[Message]:
        # 先校验归属，别人的会话一律当作不存在
        self._chats.get_session(session_id, user_id)
        return self._chats.list_messages(session_id)

    def begin_turn(self, user_id: int, session_id: int, text: str, model_id: Optional[int] = None) -> Turn:
        return self._orchestrator.begin_turn(session_id, user_id, text, model_id)

    def stream_turn(self, turn: Turn, sink: TurnSink, cancel: Optional[threading.Event] = None) -> Turn:
        return self._orchestrator.stream(turn, sink, cancel)

    def send_message(self, user_id: int, session_id: int, text: str, model_id: Optional[int] = None) -> TurnResult:
        return self._orchestrator.respond(session_id, user_id, text, model_id)

    # ---- 模型与用量 ----

    def list_models(self) -> List[AIModel]:
        return self._registry.list_enabled()

    def list_usage(self, user_id: int) -> List[UsageRecord]:
        return self._usage.list_by_user(user_id)


def model_summary(model: AIModel) -> Dict[str, Any]:
    """返回给前端的模型信息，不包含请求地址与厂商参数。"""

    return {
        "id": model.id,
        "name": model.name,
        "display_name": model.display_name,
        "provider": model.provider,
        "type": model.type,
        "description": model.description,
        "max_tokens": model.max_tokens,
        "is_default": model.is_default,
    }


def build_service(cfg=settings, store: Optional[JsonStore] = None, factory: Optional[ProviderFactory] = None) -> ChatService:
    """按配置组装默认服务；模型库为空时写入配置里的模型定义。"""

    store = store or JsonStore(root=cfg.storage_root)
    seeded = store.seed_models(getattr(cfg, "models", None) or [])
    if seeded:
        logger.info("Seeded model store", extra={"extra": {"models": [m.name for m in seeded]}})
    registry = ModelRegistry(store)
    orchestrator = StreamOrchestrator(
        chat_store=store,
        registry=registry,
        factory=factory or ProviderFactory(cfg),
        usage_recorder=UsageRecorder(store),
        cfg=cfg,
    )
    return ChatService(chat_store=store, usage_store=store, registry=registry, orchestrator=orchestrator)
