"""SSE 推送通道。

编排器是同步代码，放在线程池里执行；它产生的 TurnEvent 通过
loop.call_soon_threadsafe 投递到 asyncio.Queue，由异步生成器按顺序写给客户端。

客户端断开时设置 cancel 事件，编排器会在下一个片段边界停止转发。
"""

import asyncio
import json
import threading
from typing import AsyncIterator, Awaitable, Callable

from chatbot_core.api.service import ChatService
from chatbot_core.engine.orchestrator import Turn, TurnEvent
from chatbot_core.infrastructure.logging.logger import logger

SSE_EVENT_NAME = "message"

_DONE = object()


def format_sse(event: TurnEvent) -> str:
    data = json.dumps(event.to_payload(), ensure_ascii=False, default=str)
    return f"event: {SSE_EVENT_NAME}\ndata: {data}\n\n"


def _log_worker_failure(fut: asyncio.Future, turn: Turn) -> None:
    # 断开路径上不会 await worker，异常只能在这里留下记录
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is None:
        return
    logger.error(
        "Stream worker failed",
        extra={"extra": {"trace_id": turn.trace_id, "session_id": turn.session.id, "error": repr(exc)}},
    )


async def relay_turn(
    service: ChatService,
    turn: Turn,
    is_disconnected: Callable[[], Awaitable[bool]],
    poll_interval: float = 0.5,
) -> AsyncIterator[str]:
    """在工作线程里跑完一轮对话，把事件逐个格式化成 SSE 文本。"""

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    cancel = threading.Event()

    def post(item) -> bool:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        except RuntimeError:
            # 事件循环已关闭，说明连接早已不在
            cancel.set()
            return False
        return True

    def sink(event: TurnEvent) -> bool:
        if cancel.is_set():
            return False
        return post(event)

    def work() -> None:
        try:
            service.stream_turn(turn, sink, cancel)
        finally:
            post(_DONE)

    worker = loop.run_in_executor(None, work)
    worker.add_done_callback(lambda fut: _log_worker_failure(fut, turn))
    last_check = loop.time()
    try:
        while True:
            try:
                item = await asyncio.wait_for(queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                item = None
            if item is _DONE:
                break
            if item is not None:
                yield format_sse(item)
            if item is None or loop.time() - last_check >= poll_interval:
                last_check = loop.time()
                if await is_disconnected():
                    logger.info(
                        "Client disconnected, cancelling stream",
                        extra={"extra": {"trace_id": turn.trace_id, "session_id": turn.session.id}},
                    )
                    cancel.set()
                    break
        if not cancel.is_set():
            await worker
    finally:
        cancel.set()
