from chatbot_core.domain.ai_model import AIModel
from chatbot_core.providers.openai_compat_client import OpenAICompatClient
from chatbot_core.providers.sse import iter_sse_data


class SettingsStub:
    http_timeout = 1.0
    stream_timeout = 1.0
    stream_delay_ms = 0


def test_openai_payload_merges_api_parameters(monkeypatch):
    model = AIModel(
        id=2,
        name="moonshot-v1-8k",
        display_name="Kimi",
        provider="openai",
        presence_penalty=0.5,
        api_parameters={"seed": 7, "temperature": 1.5},
    )
    captured = {}

    class Resp:
        status_code = 200
        text = ""

        def json(self):
            return {"choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}]}

    class Client:
        def __init__(self, *a, **kw):
            captured["client_kw"] = kw

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
    client = OpenAICompatClient(model, api_key="sk-test", base_url="https://api.moonshot.cn/v1/", cfg=SettingsStub())
    res = client.generate("hi", [])

    assert res.content == "ok"
    assert res.usage is None
    assert captured["url"] == "https://api.moonshot.cn/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer sk-test"
    assert captured["json"]["presence_penalty"] == 0.5
    assert "frequency_penalty" not in captured["json"]
    assert captured["json"]["seed"] == 7
    # 模型自身的采样参数优先于 api_parameters
    assert captured["json"]["temperature"] == model.temperature
    assert captured["client_kw"]["trust_env"] is False


def test_openai_stream_carries_usage_on_final_event(monkeypatch):
    lines = [
        'data: {"choices":[{"delta":{"content":"A"}}]}',
        "",
        'data: {"choices":[{"delta":{"content":"B"},"finish_reason":"stop"}],'
        '"usage":{"prompt_tokens":4,"completion_tokens":2}}',
        "",
    ]

    class StreamResp:
        status_code = 200

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def iter_lines(self):
            yield from lines

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, *a, **kw):
            return StreamResp()

    monkeypatch.setattr("httpx.Client", Client)
    model = AIModel(id=2, name="gpt-4o-mini", display_name="GPT", provider="openai")
    events = []
    OpenAICompatClient(model, "sk", "https://api.openai.com/v1", cfg=SettingsStub()).generate_stream(
        "hi", [], lambda e: events.append(e) or True
    )

    assert "".join(e.fragment for e in events) == "AB"
    final = events[-1]
    assert final.is_final
    assert (final.usage.prompt_tokens, final.usage.completion_tokens, final.usage.total_tokens) == (4, 2, 6)


def test_iter_sse_data_tracks_event_names():
    lines = [
        "id: 0",
        "event: Message",
        'data: {"content":"x"}',
        "",
        ": comment",
        'data: {"content":"y"}',
        "",
        "event: Done",
        "data: {}",
    ]
    assert list(iter_sse_data(lines)) == [
        ("Message", '{"content":"x"}'),
        (None, '{"content":"y"}'),
        ("Done", "{}"),
    ]
