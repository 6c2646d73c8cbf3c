"""HTTP 接口（FastAPI）。

除 /health 外所有路由都需要 ``Authorization: Bearer <token>``。
业务异常统一映射为 ``{"code", "message"}`` JSON；流式接口在打开 SSE 通道之前
完成输入校验、会话归属与模型解析，这些错误以普通 HTTP 错误返回。

运行：python -m chatbot_core.api.app
"""

from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from chatbot_core.api.service import ChatService, build_service, model_summary
from chatbot_core.api.transport import relay_turn
from chatbot_core.config.settings import settings
from chatbot_core.domain.exceptions import BusinessError, InvalidToken
from chatbot_core.infrastructure.auth.tokens import Identity, TokenVerifier
from chatbot_core.infrastructure.logging.logger import logger, setup_logger


class CreateSessionRequest(BaseModel):
    title: Optional[str] = None


class RenameSessionRequest(BaseModel):
    title: str


class SendMessageRequest(BaseModel):
    content: str = Field(..., max_length=20000)
    model_id: Optional[int] = None


router = APIRouter(prefix="/api")


def get_service(request: Request) -> ChatService:
    return request.app.state.service


def current_identity(request: Request, authorization: Optional[str] = Header(default=None)) -> Identity:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidToken(code="INVALID_TOKEN", message="missing bearer token")
    verifier: TokenVerifier = request.app.state.verifier
    return verifier.verify(token.strip())


@router.get("/models")
def list_models(
    identity: Identity = Depends(current_identity),
    service: ChatService = Depends(get_service),
) -> List[Dict[str, Any]]:
    return [model_summary(m) for m in service.list_models()]


@router.post("/chat")
def create_chat(
    body: CreateSessionRequest,
    identity: Identity = Depends(current_identity),
    service: ChatService = Depends(get_service),
) -> Dict[str, Any]:
    return service.create_session(identity.user_id, body.title).to_dict()


@router.get("/chat")
def list_chats(
    identity: Identity = Depends(current_identity),
    service: ChatService = Depends(get_service),
) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in service.list_sessions(identity.user_id)]


@router.put("/chat/{session_id}")
def rename_chat(
    session_id: int,
    body: RenameSessionRequest,
    identity: Identity = Depends(current_identity),
    service: ChatService = Depends(get_service),
) -> Dict[str, Any]:
    return service.rename_session(identity.user_id, session_id, body.title).to_dict()


@router.delete("/chat/{session_id}")
def delete_chat(
    session_id: int,
    identity: Identity = Depends(current_identity),
    service: ChatService = Depends(get_service),
) -> Dict[str, Any]:
    service.delete_session(identity.user_id, session_id)
    return {"id": session_id, "deleted": True}


@router.get("/chat/{session_id}/message")
def list_chat_messages(
    session_id: int,
    identity: Identity = Depends(current_identity),
    service: ChatService = Depends(get_service),
) -> List[Dict[str, Any]]:
    return [m.to_dict() for m in service.list_messages(identity.user_id, session_id)]


@router.post("/chat/{session_id}/message")
async def send_chat_message(
    session_id: int,
    body: SendMessageRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    service: ChatService = Depends(get_service),
) -> StreamingResponse:
    turn = await run_in_threadpool(service.begin_turn, identity.user_id, session_id, body.content, body.model_id)
    poll_interval = getattr(request.app.state.settings, "sse_poll_interval", 0.5)
    return StreamingResponse(
        relay_turn(service, turn, request.is_disconnected, poll_interval),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/chat/{session_id}/message/sync")
def send_chat_message_sync(
    session_id: int,
    body: SendMessageRequest,
    identity: Identity = Depends(current_identity),
    service: ChatService = Depends(get_service),
) -> Dict[str, Any]:
    result = service.send_message(identity.user_id, session_id, body.content, body.model_id)
    return {
        "user_message": result.user_message.to_dict(),
        "assistant_message": result.assistant_message.to_dict(),
        "usage": result.usage.to_dict() if result.usage else None,
    }


@router.get("/usage")
def list_usage(
    identity: Identity = Depends(current_identity),
    service: ChatService = Depends(get_service),
) -> List[Dict[str, Any]]:
    return [u.to_dict() for u in service.list_usage(identity.user_id)]


async def business_error_handler(request: Request, exc: BusinessError) -> JSONResponse:
    level = "error" if exc.http_status >= 500 else "info"
    getattr(logger, level)(
        "Request failed",
        extra={"extra": {"path": request.url.path, "error_code": exc.code, "error": exc.message}},
    )
    return JSONResponse(status_code=exc.http_status, content={"code": exc.code, "message": exc.message})


def create_app(
    service: Optional[ChatService] = None,
    verifier: Optional[TokenVerifier] = None,
    cfg=settings,
) -> FastAPI:
    setup_logger(cfg)
    app = FastAPI(title="chatbot-core")
    app.state.settings = cfg
    app.state.service = service or build_service(cfg)
    app.state.verifier = verifier or TokenVerifier.from_settings(cfg)
    app.add_exception_handler(BusinessError, business_error_handler)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    app.include_router(router)
    return app


def main() -> None:
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
