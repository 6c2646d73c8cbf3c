"""对话轮次编排核心。

一轮对话的状态机::

    Idle -> HistoryLoaded -> ProviderInvoked -> Streaming -> {Completed | Failed} -> Terminal

- begin_turn(): 校验输入、检查会话归属、解析模型、先落库用户消息、加载历史。
  这一步的错误直接抛出，调用方可以在打开推送通道之前返回普通 HTTP 错误。
- stream(): 调用 Provider 的流式接口，把片段转发给 sink 并累积全文；
  成功时落库助手消息并记录用量，失败或取消时只发一个 error 事件、只记一条错误用量，
  不保存半截回答。
- respond(): 非流式版本，返回 (用户消息, 助手消息, 用量)。

编排器本身不保存跨轮次的可变状态，每轮的累积文本放在各自的 _Relay 里，
同一个实例可以被多个请求线程并发使用。
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional
from uuid import uuid4

from chatbot_core.config.settings import settings
from chatbot_core.domain.ai_model import AIModel
from chatbot_core.domain.conversation import ChatSession, ChatStore, Message
from chatbot_core.domain.exceptions import (
    BusinessError,
    EmptyPrompt,
    EmptyResponse,
    ProviderError,
    StreamCancelled,
)
from chatbot_core.domain.models import ChatMessage, ChatUsage, StreamEvent
from chatbot_core.domain.usage import UsageRecord
from chatbot_core.engine.usage_recorder import UsageRecorder, UsageTracker, estimate_tokens
from chatbot_core.infrastructure.logging.logger import logger
from chatbot_core.providers.base import as_provider_error
from chatbot_core.providers.factory import ProviderFactory
from chatbot_core.providers.registry import ModelRegistry


class TurnState(str, Enum):
    IDLE = "idle"
    HISTORY_LOADED = "history_loaded"
    PROVIDER_INVOKED = "provider_invoked"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINAL = "terminal"


_TRANSITIONS: Dict[TurnState, tuple] = {
    TurnState.IDLE: (TurnState.HISTORY_LOADED,),
    TurnState.HISTORY_LOADED: (TurnState.PROVIDER_INVOKED, TurnState.FAILED),
    TurnState.PROVIDER_INVOKED: (TurnState.STREAMING, TurnState.FAILED),
    TurnState.STREAMING: (TurnState.COMPLETED, TurnState.FAILED),
    TurnState.COMPLETED: (TurnState.TERMINAL,),
    TurnState.FAILED: (TurnState.TERMINAL,),
    TurnState.TERMINAL: (),
}


EventType = Literal["user_message", "stream_start", "stream_chunk", "stream_end", "error"]


@dataclass
class TurnEvent:
    """编排器交给传输层的事件，type 与推送协议的 type 字段一一对应。"""

    type: EventType
    message: Optional[Message] = None
    model: Optional[str] = None
    text: str = ""
    message_id: Optional[int] = None
    full_text: str = ""
    error: Optional[BusinessError] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in ("stream_end", "error")

    def to_payload(self) -> Dict[str, Any]:
        if self.type == "user_message":
            return {"type": self.type, "message": self.message.to_dict() if self.message else None}
        if self.type == "stream_start":
            return {"type": self.type, "model": self.model}
        if self.type == "stream_chunk":
            return {"type": self.type, "text": self.text}
        if self.type == "stream_end":
            return {"type": self.type, "message_id": self.message_id, "full_text": self.full_text}
        err = self.error
        return {
            "type": self.type,
            "error": err.message if err else "unknown error",
            "code": err.code if err else "UNKNOWN",
        }


# 返回 False 表示调用方不再需要后续事件
TurnSink = Callable[[TurnEvent], bool]


@dataclass
class Turn:
    """begin_turn() 的结果：一轮对话在调用 Provider 之前已经确定的部分。"""

    session: ChatSession
    user_id: int
    model: AIModel
    user_message: Message
    history: List[ChatMessage]
    trace_id: str
    state: TurnState = TurnState.HISTORY_LOADED
    assistant_message: Optional[Message] = None
    usage: Optional[UsageRecord] = None
    error: Optional[BusinessError] = None
    log_ctx: Dict[str, Any] = field(default_factory=dict)

    @property
    def prompt(self) -> str:
        return self.user_message.content


@dataclass
class TurnResult:
    user_message: Message
    assistant_message: Message
    usage: Optional[UsageRecord]


class _Relay:
    """Provider sink：累积片段、转发给外部 sink，并在片段边界检查取消。"""

    def __init__(self, orchestrator: "StreamOrchestrator", turn: Turn, sink: TurnSink, cancel: threading.Event):
        self._orchestrator = orchestrator
        self._turn = turn
        self._sink = sink
        self._cancel = cancel
        self.pieces: List[str] = []
        self.usage: Optional[ChatUsage] = None
        self.error: Optional[BusinessError] = None
        self.completed = False
        self.cancelled = False
        self.fragments = 0

    @property
    def text(self) -> str:
        return "".join(self.pieces)

    def __call__(self, event: StreamEvent) -> bool:
        if self.cancelled or self.completed or self.error is not None:
            return False
        if self._cancel.is_set():
            self.cancelled = True
            return False
        if event.error is not None and event.recoverable:
            self._orchestrator._log(
                logging.WARNING,
                "Skipped malformed stream fragment",
                self._turn.log_ctx,
                error_code=event.error.code,
                error=event.error.message,
            )
            return True
        if event.error is not None:
            self.error = event.error
            return False
        if event.is_final:
            self.usage = event.usage
            self.completed = True
            return False
        if not event.fragment:
            return True
        self.pieces.append(event.fragment)
        self.fragments += 1
        if not self._sink(TurnEvent(type="stream_chunk", text=event.fragment)):
            self.cancelled = True
            return False
        return True


class StreamOrchestrator:
    def __init__(
        self,
        chat_store: ChatStore,
        registry: ModelRegistry,
        factory: ProviderFactory,
        usage_recorder: UsageRecorder,
        cfg=settings,
    ):
        self._store = chat_store
        self._registry = registry
        self._factory = factory
        self._usage = usage_recorder
        self._settings = cfg

    # ---- 轮次准备 ----

    def begin_turn(
        self,
        session_id: int,
        user_id: int,
        text: str,
        model_id: Optional[int] = None,
    ) -> Turn:
        """校验并落库用户消息，返回可以交给 stream()/respond() 的 Turn。"""

        trace_id = f"tr-{uuid4().hex}"
        log_ctx: Dict[str, Any] = {
            "trace_id": trace_id,
            "session_id": session_id,
            "user_id": user_id,
        }

        # 1. 空内容在任何副作用之前拒绝
        if not text or not text.strip():
            raise EmptyPrompt(code="EMPTY_PROMPT", message="message content must not be empty")

        # 2. 会话归属与模型解析
        session = self._store.get_session(session_id, user_id)
        model = self._registry.resolve(model_id, strict=getattr(self._settings, "strict_model_selection", False))
        if model_id is not None and model.id != model_id:
            self._log(
                logging.WARNING,
                "Fell back to default model",
                log_ctx,
                requested_model_id=model_id,
                model_id=model.id,
            )
        log_ctx["model_id"] = model.id

        # 3. 先落库用户消息，再调用 Provider
        user_message = self._store.append_message(session.id, "user", text, model_id=model.id)
        self._log(logging.INFO, "Stored user message", log_ctx, message_id=user_message.id)

        # 4. 历史上下文：不包含刚写入的这条
        history = self._load_history(session.id, exclude_id=user_message.id)
        self._log(logging.INFO, "Loaded history", log_ctx, history_size=len(history))

        return Turn(
            session=session,
            user_id=user_id,
            model=model,
            user_message=user_message,
            history=history,
            trace_id=trace_id,
            log_ctx=log_ctx,
        )

    # ---- 流式 ----

    def stream(self, turn: Turn, sink: TurnSink, cancel: Optional[threading.Event] = None) -> Turn:
        """驱动一轮流式对话，保证 sink 最多只收到一个终止事件。"""

        cancel = cancel or threading.Event()
        log_ctx = turn.log_ctx
        tracker = self._usage.begin(turn.user_id, turn.model, turn.prompt)

        sink(TurnEvent(type="user_message", message=turn.user_message))
        sink(TurnEvent(type="stream_start", model=turn.model.display_name or turn.model.name))

        self._advance(turn, TurnState.PROVIDER_INVOKED)
        try:
            client = self._factory.create_client(turn.model, user_id=turn.user_id)
        except BusinessError as e:
            return self._fail(turn, sink, tracker, e)
        self._log(logging.INFO, "Invoking provider", log_ctx, provider=client.name, model=turn.model.name)

        self._advance(turn, TurnState.STREAMING)
        relay = _Relay(self, turn, sink, cancel)
        try:
            client.generate_stream(turn.prompt, turn.history, relay)
        except Exception as e:
            # 客户端自己漏掉的异常也要变成一个 error 事件
            self._log(logging.ERROR, "Provider stream raised", log_ctx, error_type=type(e).__name__)
            if relay.error is None:
                relay.error = as_provider_error(e)

        if relay.cancelled:
            self._log(logging.INFO, "Client cancelled stream", log_ctx, fragments=relay.fragments)
            return self._fail(
                turn,
                sink,
                tracker,
                StreamCancelled(code="STREAM_CANCELLED", message="stream cancelled by client"),
            )
        if relay.error is not None:
            return self._fail(turn, sink, tracker, relay.error)
        if not relay.completed:
            return self._fail(
                turn,
                sink,
                tracker,
                ProviderError(code="STREAM_INCOMPLETE", message="provider stream ended without a terminal event"),
            )

        full_text = relay.text
        if not full_text:
            return self._fail(turn, sink, tracker, EmptyResponse(code="EMPTY_RESPONSE", message="provider returned no content"))

        try:
            assistant = self._save_assistant(turn, full_text, relay.usage, tracker)
        except BusinessError as e:
            # 回答丢失必须让用户知道
            return self._fail(turn, sink, tracker, e)

        turn.assistant_message = assistant
        turn.usage = tracker.succeed(full_text, relay.usage, message_id=assistant.id)
        self._advance(turn, TurnState.COMPLETED)
        self._log(
            logging.INFO,
            "Turn completed",
            log_ctx,
            message_id=assistant.id,
            fragments=relay.fragments,
            response_length=len(full_text),
            elapsed_ms=tracker.elapsed_ms,
        )
        sink(TurnEvent(type="stream_end", message_id=assistant.id, full_text=full_text))
        self._advance(turn, TurnState.TERMINAL)
        return turn

    def run(
        self,
        session_id: int,
        user_id: int,
        text: str,
        sink: TurnSink,
        model_id: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Turn:
        turn = self.begin_turn(session_id, user_id, text, model_id)
        return self.stream(turn, sink, cancel)

    # ---- 非流式 ----

    def respond(
        self,
        session_id: int,
        user_id: int,
        text: str,
        model_id: Optional[int] = None,
    ) -> TurnResult:
        turn = self.begin_turn(session_id, user_id, text, model_id)
        tracker = self._usage.begin(turn.user_id, turn.model, turn.prompt)
        self._advance(turn, TurnState.PROVIDER_INVOKED)
        try:
            client = self._factory.create_client(turn.model, user_id=user_id)
            self._log(logging.INFO, "Invoking provider", turn.log_ctx, provider=client.name, model=turn.model.name)
            self._advance(turn, TurnState.STREAMING)
            result = client.generate(turn.prompt, turn.history)
            if not result.content:
                raise EmptyResponse(code="EMPTY_RESPONSE", message="provider returned no content")
            assistant = self._save_assistant(turn, result.content, result.usage, tracker)
        except BusinessError as e:
            tracker.fail(e)
            self._advance(turn, TurnState.FAILED)
            self._log(logging.ERROR, "Turn failed", turn.log_ctx, error_code=e.code, error=e.message)
            raise
        except Exception as e:
            error = as_provider_error(e)
            tracker.fail(error)
            self._advance(turn, TurnState.FAILED)
            self._log(logging.ERROR, "Turn failed", turn.log_ctx, error_code=error.code, error=error.message)
            raise error from e

        usage = tracker.succeed(result.content, result.usage, message_id=assistant.id)
        self._advance(turn, TurnState.COMPLETED)
        self._advance(turn, TurnState.TERMINAL)
        self._log(
            logging.INFO,
            "Turn completed",
            turn.log_ctx,
            message_id=assistant.id,
            response_length=len(result.content),
            elapsed_ms=tracker.elapsed_ms,
        )
        return TurnResult(user_message=turn.user_message, assistant_message=assistant, usage=usage)

    # ---- 内部方法 ----

    def _load_history(self, session_id: int, exclude_id: int) -> List[ChatMessage]:
        messages = [m for m in self._store.list_messages(session_id) if m.id != exclude_id]
        max_context = getattr(self._settings, "max_context_messages", None)
        if max_context and len(messages) > max_context:
            messages = messages[-max_context:]
        return [ChatMessage(role=m.role, content=m.content) for m in messages]

    def _save_assistant(
        self,
        turn: Turn,
        content: str,
        usage: Optional[ChatUsage],
        tracker: UsageTracker,
    ) -> Message:
        if usage is not None and usage.completion_tokens:
            tokens, token_source = usage.completion_tokens, "provider"
        else:
            tokens, token_source = estimate_tokens(content), "estimate"
        metadata = {
            "model_id": turn.model.id,
            "provider": turn.model.provider,
            "tokens": tokens,
            "token_source": token_source,
            "duration_ms": tracker.elapsed_ms,
            "trace_id": turn.trace_id,
        }
        return self._store.append_message(
            turn.session.id,
            "assistant",
            content,
            model_id=turn.model.id,
            metadata=metadata,
            tokens=tokens,
        )

    def _fail(self, turn: Turn, sink: TurnSink, tracker: UsageTracker, error: BusinessError) -> Turn:
        turn.error = error
        turn.usage = tracker.fail(error)
        self._advance(turn, TurnState.FAILED)
        self._log(
            logging.ERROR,
            "Turn failed",
            turn.log_ctx,
            error_code=error.code,
            error=error.message,
            elapsed_ms=tracker.elapsed_ms,
        )
        sink(TurnEvent(type="error", error=error))
        self._advance(turn, TurnState.TERMINAL)
        return turn

    @staticmethod
    def _advance(turn: Turn, target: TurnState) -> None:
        if target not in _TRANSITIONS[turn.state]:
            raise RuntimeError(f"illegal turn transition {turn.state.value} -> {target.value}")
        turn.state = target

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
