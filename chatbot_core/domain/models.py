"""统一的对话与结果数据模型。

本模块定义了 Provider 适配层与编排层之间共享的标准数据结构：

- ChatMessage: 发给 Provider 的一条上下文消息（user/assistant/system）。
- ChatResult: 非流式调用的统一结果。
- StreamEvent: 流式调用中交给 sink 的单个事件。

所有 Provider 适配器都只依赖这些模型，并负责在各自的 API JSON
和这些模型之间做转换。
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Optional

from chatbot_core.domain.exceptions import BusinessError


# LLM 消息角色类型（与 OpenAI / 智谱等厂商的 role 字段对应）
Role = Literal["system", "user", "assistant"]


@dataclass
class ChatMessage:
    role: Role
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_payload(cls, raw: Optional[Dict[str, Any]]) -> Optional["ChatUsage"]:
        if not raw or not isinstance(raw, dict):
            return None
        prompt = int(raw.get("prompt_tokens", 0) or 0)
        completion = int(raw.get("completion_tokens", 0) or 0)
        total = int(raw.get("total_tokens", 0) or 0) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass
class ChatResult:
    """一次非流式调用的最终结果。

    - content: 第一个 choice 的文本。
    - usage: 厂商给出的 token 统计；没有时为 None，由用量记录器估算。
    - raw: 原始响应 JSON，用于调试。
    """

    provider: str
    model: str
    content: str
    usage: Optional[ChatUsage] = None
    finish_reason: Optional[str] = None
    raw: Optional[dict] = None


@dataclass
class StreamEvent:
    """流式调用产生的单个事件。

    一次调用最多产生一个终止事件：
    - is_final=True 表示正常结束（可能携带 usage）；
    - error 非空且 recoverable=False 表示失败。
    recoverable=True 的错误（例如某一行 JSON 解析失败）只是通知，流会继续。
    """

    fragment: str = ""
    is_final: bool = False
    error: Optional[BusinessError] = None
    recoverable: bool = False
    usage: Optional[ChatUsage] = None

    @property
    def is_terminal(self) -> bool:
        return self.is_final or (self.error is not None and not self.recoverable)

    @classmethod
    def chunk(cls, fragment: str) -> "StreamEvent":
        return cls(fragment=fragment)

    @classmethod
    def done(cls, usage: Optional[ChatUsage] = None) -> "StreamEvent":
        return cls(is_final=True, usage=usage)

    @classmethod
    def failure(cls, error: BusinessError) -> "StreamEvent":
        return cls(error=error)

    @classmethod
    def warning(cls, error: BusinessError) -> "StreamEvent":
        return cls(error=error, recoverable=True)


# sink 返回 True 表示继续，False 表示要求 Provider 停止产出
StreamSink = Callable[[StreamEvent], bool]
