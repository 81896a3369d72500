"""HTTP API: streamed chat plus conversation history endpoints."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import API_TOKENS, RECENT_CONVERSATIONS_LIMIT
from .errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    TalkbackError,
    TransportError,
    ValidationError,
)
from .exchange import ExchangeService
from .models import Attachment
from .storage import ConversationStore

logger = logging.getLogger(__name__)


# --- Pydantic Models ---


class ChatRequest(BaseModel):
    """Request to send one message"""

    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    attachments: list[Attachment] = []
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")


class ChatSummary(BaseModel):
    """Sidebar entry"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    updated_at: float = Field(serialization_alias="updatedAt")


# --- Error mapping ---

_STATUS = {
    AuthenticationError: 401,
    # Fail closed: a conversation someone else owns looks like a missing one.
    AuthorizationError: 404,
    NotFoundError: 404,
    ValidationError: 400,
    TransportError: 502,
}


async def _handle_error(request: Request, exc: TalkbackError) -> JSONResponse:
    status = next((code for cls, code in _STATUS.items() if isinstance(exc, cls)), 500)
    if isinstance(exc, AuthorizationError):
        detail = "Conversation not found"
    elif status == 500:
        logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=exc)
        detail = "Failed to process request."
    else:
        detail = str(exc)
    return JSONResponse({"error": detail}, status_code=status)


# --- Dependencies ---


def get_owner_id(request: Request) -> str:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    owner = request.app.state.tokens.get(token.strip()) if scheme.lower() == "bearer" else None
    if not owner:
        raise AuthenticationError("Unauthorized: Missing Authentication")
    return owner


def get_service(request: Request) -> ExchangeService:
    return request.app.state.service


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


# --- App ---


def create_app(
    service: ExchangeService,
    tokens: dict[str, str] | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Let in-flight exchanges finish writing before the store goes away.
        await service.wait_idle()
        service.store.close()

    app = FastAPI(title="talkback", lifespan=lifespan)
    app.state.service = service
    app.state.store = service.store
    app.state.tokens = dict(API_TOKENS if tokens is None else tokens)
    app.add_exception_handler(TalkbackError, _handle_error)

    @app.post("/api/chat")
    async def post_chat(
        body: ChatRequest,
        owner_id: str = Depends(get_owner_id),
        service: ExchangeService = Depends(get_service),
    ):
        """Send a message and stream the reply as plain text."""
        exchange = await service.open_exchange(
            owner_id,
            body.message,
            conversation_id=body.conversation_id,
            attachments=body.attachments,
            system_prompt=body.system_prompt,
        )
        logger.info(
            "Chat on %s (%s), %d chars",
            exchange.conversation_id,
            "new" if exchange.is_new else "existing",
            len(body.message),
        )
        return StreamingResponse(
            exchange.body(),
            media_type="text/plain; charset=utf-8",
            headers={
                "X-Chat-ID": exchange.conversation_id,
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/api/chat")
    def get_chat(
        chatId: Optional[str] = None,
        owner_id: str = Depends(get_owner_id),
        store: ConversationStore = Depends(get_store),
    ):
        """Load a full conversation."""
        if not chatId:
            raise ValidationError("chatId is required")
        return store.get(chatId, owner_id).model_dump(mode="json")

    @app.get("/api/chats")
    def list_chats(
        limit: int = RECENT_CONVERSATIONS_LIMIT,
        owner_id: str = Depends(get_owner_id),
        store: ConversationStore = Depends(get_store),
    ):
        """Most recently updated conversations of the caller."""
        summaries = store.list_recent(owner_id, limit=limit)
        return [
            ChatSummary(id=s.id, title=s.title, updated_at=s.updated_at).model_dump(by_alias=True)
            for s in summaries
        ]

    @app.delete("/api/chats/{chat_id}", status_code=204)
    async def delete_chat(
        chat_id: str,
        owner_id: str = Depends(get_owner_id),
        store: ConversationStore = Depends(get_store),
    ):
        """Delete one of the caller's conversations."""
        await asyncio.to_thread(store.delete, chat_id, owner_id)
        return Response(status_code=204)

    return app
