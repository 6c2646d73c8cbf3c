"""Coze（智能体 / 工作流）Provider 适配器。

两种模式，由 AIModel.provider_class 决定：
- workflow: POST /v1/workflow/stream_run，workflow_id 取 provider_class_id；
- 其他（bot）: POST /v3/chat，bot_id 取 provider_class_id。

鉴权使用 JWT OAuth 换来的 access token，由 TokenCache 在进程内共享，
避免每个请求都去换一次 token。
"""

import json
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse
from uuid import uuid4

import httpx
import jwt

from chatbot_core.config.settings import settings
from chatbot_core.domain.ai_model import AIModel
from chatbot_core.domain.exceptions import (
    ApiError,
    EmptyResponse,
    MissingCredential,
    NetworkError,
    ProviderError,
    RateLimitError,
    StreamParseError,
)
from chatbot_core.domain.models import ChatMessage, ChatResult, ChatUsage, StreamEvent, StreamSink
from chatbot_core.providers.base import GuardedSink, as_provider_error
from chatbot_core.providers.sse import iter_sse_data
from chatbot_core.providers.token_cache import TokenCache

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


def fetch_access_token(cfg=settings) -> str:
    """用 RS256 签名的 JWT 断言向 Coze 换取 access token。"""

    private_key = (cfg.coze_private_key or "").replace("\\n", "\n")
    if not private_key:
        raise MissingCredential(code="MISSING_API_KEY", message="COZE_PRIVATE_KEY not set")
    if not cfg.coze_client_id:
        raise MissingCredential(code="MISSING_API_KEY", message="COZE_CLIENT_ID not set")
    if not cfg.coze_public_key_id:
        raise MissingCredential(code="MISSING_API_KEY", message="COZE_PUBLIC_KEY_ID not set")

    base = cfg.coze_api_url.rstrip("/")
    now = int(time.time())
    claims = {
        "iss": cfg.coze_client_id,
        "aud": urlparse(base).netloc or base,
        "iat": now,
        "exp": now + 3600,
        "jti": uuid4().hex,
    }
    try:
        assertion = jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": cfg.coze_public_key_id})
    except (ValueError, TypeError, jwt.PyJWTError) as e:
        raise MissingCredential(code="INVALID_PRIVATE_KEY", message=f"COZE_PRIVATE_KEY is not a valid PEM key: {e}")

    try:
        with httpx.Client(timeout=cfg.http_timeout, trust_env=False) as client:
            resp = client.post(
                f"{base}/api/permission/oauth2/token",
                json={"grant_type": JWT_BEARER_GRANT, "duration_seconds": cfg.coze_token_lifetime_seconds},
                headers={"Authorization": f"Bearer {assertion}", "Content-Type": "application/json"},
            )
    except httpx.RequestError as e:
        raise NetworkError(code="NETWORK_ERROR", message=str(e))
    if resp.status_code >= 400:
        raise ApiError(
            code="OAUTH_ERROR",
            message=f"coze token exchange failed with status {resp.status_code}: {resp.text}",
            upstream_status=resp.status_code,
        )
    try:
        body = resp.json()
    except ValueError as e:
        raise ApiError(code="OAUTH_ERROR", message=f"coze token exchange returned invalid JSON: {e}")
    token = body.get("access_token") if isinstance(body, dict) else None
    if not token:
        raise ApiError(code="OAUTH_ERROR", message="coze token exchange returned no access_token")
    return token


class CozeClient:
    name = "coze"

    def __init__(
        self,
        model: AIModel,
        token_source: Callable[[], str],
        cfg=settings,
        user_id: Optional[int] = None,
        token_cache: Optional[TokenCache] = None,
    ):
        self._model = model
        self._token_source = token_source
        self._token_cache = token_cache
        self._settings = cfg
        self._user_id = user_id

    @property
    def is_workflow(self) -> bool:
        return (self._model.provider_class or "").lower() == "workflow"

    # ---- 非流式：收集完整的流 ----

    def generate(self, prompt: str, history: List[ChatMessage]) -> ChatResult:
        pieces: List[str] = []
        outcome: Dict[str, Any] = {}

        def collect(event: StreamEvent) -> bool:
            if event.error is not None and not event.recoverable:
                outcome["error"] = event.error
            elif event.is_final:
                outcome["usage"] = event.usage
            elif event.fragment:
                pieces.append(event.fragment)
            return True

        self.generate_stream(prompt, history, collect)
        if "error" in outcome:
            raise as_provider_error(outcome["error"])
        content = "".join(pieces)
        if not content:
            raise EmptyResponse(code="EMPTY_RESPONSE", message="coze returned no content")
        return ChatResult(provider=self.name, model=self._model.name, content=content, usage=outcome.get("usage"))

    # ---- 流式 ----

    def generate_stream(self, prompt: str, history: List[ChatMessage], sink: StreamSink) -> None:
        guard = GuardedSink(sink)
        try:
            url, payload = self._build_request(prompt, history)
            handle = self._handle_workflow_event if self.is_workflow else self._handle_chat_event
            with httpx.Client(timeout=self._settings.stream_timeout, trust_env=False) as client:
                with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        self._check_status(resp.status_code, resp.text)
                    state: Dict[str, Any] = {"usage": None}
                    for event, data in iter_sse_data(resp.iter_lines()):
                        if not guard.open:
                            return
                        if data == "[DONE]":
                            guard.finish(state["usage"])
                            return
                        try:
                            body = json.loads(data) if data else {}
                        except ValueError as e:
                            warning = StreamParseError(code="STREAM_PARSE_ERROR", message=f"failed to parse coze event: {e}")
                            if not guard(StreamEvent.warning(warning)):
                                return
                            continue
                        if not handle(event, body if isinstance(body, dict) else {}, guard, state):
                            return
                    guard.finish(state["usage"])
        except httpx.RequestError as e:
            guard.fail(NetworkError(code="NETWORK_ERROR", message=str(e)))
        except Exception as e:
            # 业务错误以及厂商返回形状不对的数据，都以一个失败事件结束
            guard.fail(as_provider_error(e))

    def _handle_workflow_event(self, event: Optional[str], body: Dict[str, Any], guard: GuardedSink, state) -> bool:
        if event == "Message":
            usage = self._usage(body.get("usage"))
            if usage:
                state["usage"] = usage
            content = body.get("content") or ""
            if content and isinstance(content, str):
                return guard(StreamEvent.chunk(content))
            return True
        if event == "Done":
            guard.finish(state["usage"])
            return False
        if event == "Error":
            message = body.get("error_message") or "workflow failed"
            guard.fail(ProviderError(code="WORKFLOW_ERROR", message=f"workflow error: {message}"))
            return False
        if event == "Interrupt":
            guard.fail(ProviderError(code="WORKFLOW_INTERRUPTED", message="workflow interrupted and needs input"))
            return False
        return True

    def _handle_chat_event(self, event: Optional[str], body: Dict[str, Any], guard: GuardedSink, state) -> bool:
        if event == "conversation.message.delta":
            if body.get("type", "answer") != "answer":
                return True
            content = body.get("content") or ""
            if content and isinstance(content, str):
                return guard(StreamEvent.chunk(content))
            return True
        if event == "conversation.chat.completed":
            state["usage"] = self._usage(body.get("usage")) or state["usage"]
            guard.finish(state["usage"])
            return False
        if event == "done":
            guard.finish(state["usage"])
            return False
        if event in ("conversation.chat.failed", "error"):
            last_error = body.get("last_error") or body
            if isinstance(last_error, dict):
                message = last_error.get("msg") or "chat failed"
            else:
                message = str(last_error)
            guard.fail(ProviderError(code="CHAT_FAILED", message=f"coze chat failed: {message}"))
            return False
        return True

    # ---- 辅助方法 ----

    def _build_request(self, prompt: str, history: List[ChatMessage]) -> Tuple[str, Dict[str, Any]]:
        target = self._model.provider_class_id
        if not target:
            raise MissingCredential(
                code="MISSING_TARGET",
                message=f"coze model {self._model.name!r} has no workflow/bot id",
            )
        base = (self._model.url or self._settings.coze_api_url).rstrip("/")
        if self.is_workflow:
            parameters = dict(self._model.api_parameters or {})
            parameters["input"] = prompt
            return f"{base}/v1/workflow/stream_run", {"workflow_id": target, "parameters": parameters}
        messages = [
            {"role": m.role, "content": m.content, "content_type": "text"}
            for m in list(history) + [ChatMessage(role="user", content=prompt)]
            if m.role in ("user", "assistant")
        ]
        payload = {
            "bot_id": target,
            "user_id": str(self._user_id or "chatbot"),
            "stream": True,
            "auto_save_history": True,
            "additional_messages": messages,
        }
        return f"{base}/v3/chat", payload

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token_source()}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def _check_status(self, status_code: int, body: str) -> None:
        if status_code == 401 and self._token_cache is not None:
            # token 被提前吊销，下次请求重新换取
            self._token_cache.invalidate()
        if status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="coze rate limit")
        raise ApiError(
            code="API_ERROR",
            message=f"coze request failed with status {status_code}: {body}",
            upstream_status=status_code,
        )

    @staticmethod
    def _usage(raw: Any) -> Optional[ChatUsage]:
        if not raw or not isinstance(raw, dict):
            return None
        prompt = int(raw.get("input_count", 0) or 0)
        completion = int(raw.get("output_count", 0) or 0)
        total = int(raw.get("token_count", 0) or 0) or prompt + completion
        return ChatUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
