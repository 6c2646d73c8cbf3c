import asyncio
import json
import logging
import threading
from types import SimpleNamespace

from chatbot_core.api.transport import format_sse, relay_turn
from chatbot_core.domain.exceptions import ApiError
from chatbot_core.engine.orchestrator import TurnEvent


def test_format_sse_error_event():
    text = format_sse(TurnEvent(type="error", error=ApiError(code="API_ERROR", message="boom")))
    assert text.startswith("event: message\ndata: ")
    assert text.endswith("\n\n")
    payload = json.loads(text.split("data: ", 1)[1])
    assert payload == {"type": "error", "error": "boom", "code": "API_ERROR"}


def test_relay_turn_cancels_on_disconnect():
    started = threading.Event()
    saw_cancel = threading.Event()
    late = []

    class SlowService:
        def stream_turn(self, turn, sink, cancel):
            sink(TurnEvent(type="stream_start", model="GLM-4"))
            started.set()
            if cancel.wait(2.0):
                # 取消之后的事件不再投递
                late.append(sink(TurnEvent(type="stream_chunk", text="late")))
                saw_cancel.set()
            return turn

    turn = SimpleNamespace(trace_id="tr-test", session=SimpleNamespace(id=1))

    async def disconnected():
        return started.is_set()

    async def collect():
        return [chunk async for chunk in relay_turn(SlowService(), turn, disconnected, poll_interval=0.01)]

    chunks = asyncio.run(collect())

    assert saw_cancel.wait(2.0)
    assert late == [False]
    assert len(chunks) == 1
    assert json.loads(chunks[0].split("data: ", 1)[1]) == {"type": "stream_start", "model": "GLM-4"}


def test_relay_turn_streams_until_worker_finishes():
    class QuickService:
        def stream_turn(self, turn, sink, cancel):
            sink(TurnEvent(type="stream_chunk", text="a"))
            sink(TurnEvent(type="stream_end", message_id=3, full_text="a"))
            return turn

    turn = SimpleNamespace(trace_id="tr-test", session=SimpleNamespace(id=1))

    async def connected():
        return False

    async def collect():
        return [chunk async for chunk in relay_turn(QuickService(), turn, connected, poll_interval=0.01)]

    types = [json.loads(c.split("data: ", 1)[1])["type"] for c in asyncio.run(collect())]
    assert types == ["stream_chunk", "stream_end"]


def test_worker_error_after_disconnect_is_logged(caplog):
    started = threading.Event()

    class BrokenService:
        def stream_turn(self, turn, sink, cancel):
            sink(TurnEvent(type="stream_start", model="GLM-4"))
            started.set()
            cancel.wait(2.0)
            raise RuntimeError("store went away")

    turn = SimpleNamespace(trace_id="tr-broken", session=SimpleNamespace(id=1))

    async def disconnected():
        return started.is_set()

    def logged():
        return [r for r in caplog.records if r.getMessage() == "Stream worker failed"]

    async def collect():
        chunks = [chunk async for chunk in relay_turn(BrokenService(), turn, disconnected, poll_interval=0.01)]
        for _ in range(200):
            if logged():
                break
            await asyncio.sleep(0.01)
        return chunks

    with caplog.at_level(logging.ERROR, logger="chatbot_core"):
        chunks = asyncio.run(collect())

    assert len(chunks) == 1
    records = logged()
    assert len(records) == 1
    assert records[0].extra["trace_id"] == "tr-broken"
    assert "store went away" in records[0].extra["error"]
