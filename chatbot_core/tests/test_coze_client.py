import json

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from chatbot_core.domain.ai_model import AIModel
from chatbot_core.domain.exceptions import ApiError, MissingCredential, ProviderError
from chatbot_core.providers.coze_client import CozeClient, fetch_access_token
from chatbot_core.providers.token_cache import TokenCache


class SettingsStub:
    coze_api_url = "https://api.coze.cn"
    coze_client_id = "client-1"
    coze_public_key_id = "kid-1"
    coze_private_key = None
    coze_token_lifetime_seconds = 900
    http_timeout = 1.0
    stream_timeout = 1.0
    stream_delay_ms = 0


def _model(provider_class="workflow", **kw):
    data = dict(
        id=5,
        name="travel-workflow",
        display_name="Travel Agent",
        provider="coze",
        provider_class=provider_class,
        provider_class_id="7350000000000",
    )
    data.update(kw)
    return AIModel(**data)


def _events(*pairs):
    lines = []
    for name, body in pairs:
        lines.append(f"event: {name}")
        lines.append("data: " + (body if isinstance(body, str) else json.dumps(body)))
        lines.append("")
    return lines


def _stream_client(lines, captured=None, status_code=200):
    class StreamResp:
        def __init__(self):
            self.status_code = status_code
            self.text = "unauthorized"

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def read(self):
            return b""

        def iter_lines(self):
            yield from lines

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, method, url, json=None, headers=None):
            if captured is not None:
                captured["url"] = url
                captured["json"] = json
                captured["headers"] = headers
            return StreamResp()

    return Client


def test_coze_workflow_stream(monkeypatch):
    captured = {}
    lines = _events(
        ("Message", {"content": "Day 1: "}),
        ("Message", {"content": "Kyoto", "usage": {"input_count": 3, "output_count": 2, "token_count": 5}}),
        ("Done", {}),
    )
    monkeypatch.setattr("httpx.Client", _stream_client(lines, captured))

    events = []
    client = CozeClient(_model(api_parameters={"days": 3}), token_source=lambda: "tok", cfg=SettingsStub())
    client.generate_stream("plan a trip", [], lambda e: events.append(e) or True)

    assert "".join(e.fragment for e in events) == "Day 1: Kyoto"
    assert events[-1].is_final and events[-1].usage.total_tokens == 5
    assert captured["url"] == "https://api.coze.cn/v1/workflow/stream_run"
    assert captured["json"] == {"workflow_id": "7350000000000", "parameters": {"days": 3, "input": "plan a trip"}}
    assert captured["headers"]["Authorization"] == "Bearer tok"


def test_coze_workflow_error_event(monkeypatch):
    lines = _events(("Message", {"content": "partial"}), ("Error", {"error_message": "node failed"}))
    monkeypatch.setattr("httpx.Client", _stream_client(lines))

    events = []
    CozeClient(_model(), token_source=lambda: "tok", cfg=SettingsStub()).generate_stream(
        "x", [], lambda e: events.append(e) or True
    )

    terminal = [e for e in events if e.is_terminal]
    assert len(terminal) == 1
    assert "node failed" in terminal[0].error.message


def test_coze_bot_chat_stream_and_generate(monkeypatch):
    captured = {}
    lines = _events(
        ("conversation.message.delta", {"type": "answer", "content": "Hel"}),
        ("conversation.message.delta", {"type": "follow_up", "content": "ignored"}),
        ("conversation.message.delta", {"type": "answer", "content": "lo"}),
        ("conversation.chat.completed", {"usage": {"input_count": 1, "output_count": 1}}),
        ("done", '"[DONE]"'),
    )
    monkeypatch.setattr("httpx.Client", _stream_client(lines, captured))

    from chatbot_core.domain.models import ChatMessage

    client = CozeClient(_model(provider_class="bot"), token_source=lambda: "tok", cfg=SettingsStub(), user_id=42)
    res = client.generate("Hello", [ChatMessage(role="assistant", content="hi")])

    assert res.content == "Hello"
    assert res.usage.total_tokens == 2
    assert captured["url"] == "https://api.coze.cn/v3/chat"
    assert captured["json"]["bot_id"] == "7350000000000"
    assert captured["json"]["user_id"] == "42"
    assert [m["role"] for m in captured["json"]["additional_messages"]] == ["assistant", "user"]


def test_coze_generate_raises_on_failed_chat(monkeypatch):
    lines = _events(("conversation.chat.failed", {"last_error": {"code": 4000, "msg": "bot offline"}}))
    monkeypatch.setattr("httpx.Client", _stream_client(lines))

    client = CozeClient(_model(provider_class="bot"), token_source=lambda: "tok", cfg=SettingsStub())
    with pytest.raises(ProviderError) as ei:
        client.generate("Hello", [])
    assert "bot offline" in ei.value.message


def test_coze_missing_target_id_fails_stream(monkeypatch):
    monkeypatch.setattr("httpx.Client", _stream_client([]))
    events = []
    CozeClient(_model(provider_class_id=""), token_source=lambda: "tok", cfg=SettingsStub()).generate_stream(
        "x", [], lambda e: events.append(e) or True
    )
    assert len(events) == 1 and events[0].error.code == "MISSING_TARGET"


def test_coze_unauthorized_invalidates_cached_token(monkeypatch):
    fetched = []
    cache = TokenCache(fetch=lambda: fetched.append(1) or f"tok-{len(fetched)}", ttl_seconds=840)
    monkeypatch.setattr("httpx.Client", _stream_client([], status_code=401))

    client = CozeClient(_model(), token_source=cache.get, cfg=SettingsStub(), token_cache=cache)
    events = []
    client.generate_stream("x", [], lambda e: events.append(e) or True)

    assert events[0].error.extra["upstream_status"] == 401
    assert cache.get() == "tok-2"


def test_fetch_access_token_signs_rs256_assertion(monkeypatch):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    captured = {}

    class Resp:
        status_code = 200
        text = ""

        def json(self):
            return {"access_token": "czs_abc", "expires_in": 900}

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None):
            captured["url"] = url
            captured["json"] = json
            captured["headers"] = headers
            return Resp()

    monkeypatch.setattr("httpx.Client", Client)
    cfg = SettingsStub()
    cfg.coze_private_key = pem.replace("\n", "\\n")

    assert fetch_access_token(cfg) == "czs_abc"
    assert captured["url"] == "https://api.coze.cn/api/permission/oauth2/token"
    assert captured["json"]["duration_seconds"] == 900
    assertion = captured["headers"]["Authorization"].split(" ", 1)[1]
    assert jwt.get_unverified_header(assertion)["kid"] == "kid-1"
    claims = jwt.decode(assertion, key.public_key(), algorithms=["RS256"], audience="api.coze.cn")
    assert claims["iss"] == "client-1"


def test_fetch_access_token_requires_private_key():
    with pytest.raises(MissingCredential):
        fetch_access_token(SettingsStub())


def test_coze_string_last_error_fails_stream(monkeypatch):
    lines = _events(
        ("conversation.message.delta", {"type": "answer", "content": "Hel"}),
        ("conversation.chat.failed", {"last_error": "bot offline"}),
    )
    monkeypatch.setattr("httpx.Client", _stream_client(lines))

    events = []
    CozeClient(_model(provider_class="bot"), token_source=lambda: "tok", cfg=SettingsStub()).generate_stream(
        "x", [], lambda e: events.append(e) or True
    )

    terminal = [e for e in events if e.is_terminal]
    assert len(terminal) == 1
    assert "bot offline" in terminal[0].error.message


def test_coze_wrong_shape_usage_is_ignored(monkeypatch):
    lines = _events(("Message", {"content": "ok", "usage": "n/a"}), ("Done", {}))
    monkeypatch.setattr("httpx.Client", _stream_client(lines))

    events = []
    CozeClient(_model(), token_source=lambda: "tok", cfg=SettingsStub()).generate_stream(
        "x", [], lambda e: events.append(e) or True
    )

    assert [e.fragment for e in events if e.fragment] == ["ok"]
    assert events[-1].is_final and events[-1].usage is None


def test_fetch_access_token_rejects_non_json_body(monkeypatch):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()

    class Resp:
        status_code = 200
        text = "<html>gateway</html>"

        def json(self):
            raise ValueError("Expecting value")

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None):
            return Resp()

    monkeypatch.setattr("httpx.Client", Client)
    cfg = SettingsStub()
    cfg.coze_private_key = pem

    with pytest.raises(ApiError) as ei:
        fetch_access_token(cfg)
    assert ei.value.code == "OAUTH_ERROR"
