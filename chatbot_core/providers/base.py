"""Provider 抽象接口。

编排层不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 ZhipuClient、CozeClient）。
- generate(prompt, history): 非流式调用，返回 ChatResult。
- generate_stream(prompt, history, sink): 流式调用，把片段逐个交给 sink。

流式契约：
- 最多只投递一个终止事件（完成或失败），之后不再有任何事件；
- sink 返回 False 时 Provider 必须尽快停止并正常返回，不视为错误；
- Provider 内部的失败不抛出，而是以终止错误事件交给 sink。
"""

from typing import List, Protocol

from chatbot_core.domain.exceptions import BusinessError, ProviderError
from chatbot_core.domain.models import ChatMessage, ChatResult, StreamEvent, StreamSink


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。"""

    name: str

    def generate(self, prompt: str, history: List[ChatMessage]) -> ChatResult:
        ...

    def generate_stream(self, prompt: str, history: List[ChatMessage], sink: StreamSink) -> None:
        ...


class GuardedSink:
    """包装调用方的 sink，保证终止事件至多一个。

    - 终止事件之后的任何事件都被丢弃；
    - 一旦 sink 返回 False，后续也不再转发。
    """

    def __init__(self, sink: StreamSink):
        self._sink = sink
        self.terminated = False
        self.stopped = False

    @property
    def open(self) -> bool:
        return not (self.terminated or self.stopped)

    def __call__(self, event: StreamEvent) -> bool:
        if not self.open:
            return False
        if event.is_terminal:
            self.terminated = True
        keep_going = bool(self._sink(event))
        if not keep_going:
            self.stopped = True
        return keep_going and not self.terminated

    def fail(self, error: BusinessError) -> None:
        """以终止错误结束流；已经结束或已被要求停止时忽略。"""

        if self.open:
            self(StreamEvent.failure(error))

    def finish(self, usage=None) -> None:
        if self.open:
            self(StreamEvent.done(usage))


def build_messages(prompt: str, history: List[ChatMessage]) -> List[ChatMessage]:
    """history ++ [本轮用户消息]。"""

    return list(history) + [ChatMessage(role="user", content=prompt)]


def as_provider_error(exc: Exception) -> ProviderError:
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, BusinessError):
        return ProviderError(code=exc.code, message=exc.message)
    return ProviderError(code="PROVIDER_ERROR", message=str(exc) or exc.__class__.__name__)
