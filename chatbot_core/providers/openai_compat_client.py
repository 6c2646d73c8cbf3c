"""OpenAI 兼容 Provider 适配器。

本模块负责：

1. 接收 prompt + 历史消息。
2. 将其转换为 chat/completions 的 HTTP 请求格式。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将响应 JSON（或 SSE 流）解析为统一的 ChatResult / StreamEvent。

智谱、Moonshot 等厂商都沿用这套 chat/completions 协议，
区别只在鉴权头，所以 ZhipuClient 直接继承本类。
"""

import json
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from chatbot_core.config.settings import settings
from chatbot_core.domain.ai_model import AIModel
from chatbot_core.domain.exceptions import (
    ApiError,
    EmptyResponse,
    NetworkError,
    RateLimitError,
    StreamParseError,
)
from chatbot_core.domain.models import ChatMessage, ChatResult, ChatUsage, StreamEvent, StreamSink
from chatbot_core.providers.base import GuardedSink, as_provider_error, build_messages
from chatbot_core.providers.sse import iter_sse_data

DONE_MARKER = "[DONE]"


class OpenAICompatClient:
    """OpenAI 兼容接口客户端，使用固定的 Bearer API Key。"""

    name = "openai"

    def __init__(self, model: AIModel, api_key: str, base_url: str, cfg=settings):
        self._model = model
        self._api_key = api_key
        self._base_url = base_url
        self._settings = cfg

    # ---- 非流式 ----

    def generate(self, prompt: str, history: List[ChatMessage]) -> ChatResult:
        payload = self._build_payload(build_messages(prompt, history), stream=False)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(self._endpoint(), json=payload, headers=self._headers())
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._check_status(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code="BAD_RESPONSE", message=f"{self.name} returned invalid JSON: {e}")
        return self._parse_response(data)

    # ---- 流式 ----

    def generate_stream(self, prompt: str, history: List[ChatMessage], sink: StreamSink) -> None:
        guard = GuardedSink(sink)
        payload = self._build_payload(build_messages(prompt, history), stream=True)
        try:
            headers = dict(self._headers())
            headers["Accept"] = "text/event-stream"
            headers["Cache-Control"] = "no-cache"
            with httpx.Client(timeout=self._settings.stream_timeout, trust_env=False) as client:
                with client.stream("POST", self._endpoint(), json=payload, headers=headers) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        self._check_status(resp.status_code, resp.text)
                    self._consume_stream(resp.iter_lines(), guard)
        except httpx.RequestError as e:
            guard.fail(NetworkError(code="NETWORK_ERROR", message=str(e)))
        except Exception as e:
            # 业务错误以及厂商返回形状不对的数据，都以一个失败事件结束
            guard.fail(as_provider_error(e))

    def _consume_stream(self, lines: Iterable[str], guard: GuardedSink) -> None:
        usage: Optional[ChatUsage] = None
        for _event, data in iter_sse_data(lines):
            if not guard.open:
                return
            if data == DONE_MARKER:
                guard.finish(usage)
                return
            try:
                chunk = json.loads(data)
                choice, content = self._parse_chunk(chunk)
            except ValueError as e:
                # 单行解析失败只通知，不中断整条流
                warning = StreamParseError(code="STREAM_PARSE_ERROR", message=f"failed to parse stream payload: {e}")
                if not guard(StreamEvent.warning(warning)):
                    return
                continue
            usage = ChatUsage.from_payload(chunk.get("usage")) or usage
            if choice is None:
                continue
            if content:
                self._pace()
                if not guard(StreamEvent.chunk(content)):
                    return
            if choice.get("finish_reason"):
                guard.finish(usage)
                return
        # 连接正常关闭但没有结束标记，同样视为完成
        guard.finish(usage)

    @staticmethod
    def _parse_chunk(chunk: Any) -> Tuple[Optional[Dict[str, Any]], str]:
        """取出第一个 choice 和它的增量文本，结构不对时抛 ValueError。"""

        if not isinstance(chunk, dict):
            raise ValueError(f"unexpected payload type {type(chunk).__name__}")
        choices = chunk.get("choices") or []
        if not isinstance(choices, list):
            raise ValueError("choices is not a list")
        if not choices:
            return None, ""
        choice = choices[0] or {}
        if not isinstance(choice, dict):
            raise ValueError("choice is not an object")
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise ValueError("delta is not an object")
        content = delta.get("content") or ""
        if not isinstance(content, str):
            raise ValueError("delta content is not a string")
        return choice, content

    # ---- 辅助方法 ----

    def _endpoint(self) -> str:
        if self._model.url:
            return self._model.url
        return f"{self._base_url.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, messages: List[ChatMessage], stream: bool) -> Dict[str, Any]:
        model = self._model
        payload: Dict[str, Any] = {
            "model": model.name,
            "messages": [m.to_payload() for m in messages],
            "max_tokens": model.max_tokens,
            "temperature": model.temperature,
            "top_p": model.top_p,
            "stream": stream,
        }
        # 惩罚参数为 0 时不下发，部分厂商不认识这两个字段
        if model.presence_penalty:
            payload["presence_penalty"] = model.presence_penalty
        if model.frequency_penalty:
            payload["frequency_penalty"] = model.frequency_penalty
        for key, value in (model.api_parameters or {}).items():
            payload.setdefault(key, value)
        return payload

    def _parse_response(self, data: Dict[str, Any]) -> ChatResult:
        choices = data.get("choices") or []
        if not choices:
            raise EmptyResponse(code="EMPTY_RESPONSE", message=f"{self.name} returned no choices")
        first = choices[0] or {}
        message = first.get("message") or {}
        return ChatResult(
            provider=self.name,
            model=self._model.name,
            content=message.get("content") or "",
            usage=ChatUsage.from_payload(data.get("usage")),
            finish_reason=first.get("finish_reason"),
            raw=data,
        )

    def _check_status(self, status_code: int, body: str) -> None:
        if status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit")
        if status_code >= 400:
            raise ApiError(
                code="API_ERROR",
                message=f"{self.name} request failed with status {status_code}: {body}",
                upstream_status=status_code,
            )

    def _pace(self) -> None:
        delay_ms = getattr(self._settings, "stream_delay_ms", 0) or 0
        if delay_ms > 0:
            time.sleep(delay_ms / 1000.0)
