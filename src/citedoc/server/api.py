"""FastAPI application: streamed answers, ingestion, chats and highlighting."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterator, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from citedoc.core.answer import encode_sse
from citedoc.core.config import Settings, get_settings
from citedoc.core.conversation import ConversationService
from citedoc.core.errors import (
    AuthorizationError,
    CiteDocError,
    ConfigurationError,
    IngestionError,
    NotFoundError,
)
from citedoc.core.highlight import highlight
from citedoc.core.ingest import IngestionPipeline
from citedoc.core.logging_config import configure_logging
from citedoc.core.models import Conversation, Message, StreamEvent
from citedoc.core.store import DocumentStore

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    AuthorizationError: 401,
    NotFoundError: 404,
    IngestionError: 422,
    ConfigurationError: 500,
}


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    file_ids: List[str] = Field(default_factory=list, alias="fileIds")

    model_config = {"populate_by_name": True}


class CreateChatRequest(BaseModel):
    title: Optional[str] = None


class IngestRequest(BaseModel):
    name: str = Field(..., min_length=1)
    text: str


class HighlightRequest(BaseModel):
    chunk_id: Optional[str] = Field(default=None, alias="chunkId")
    cited_text: Optional[str] = Field(default=None, alias="citedText")

    model_config = {"populate_by_name": True}


def require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identity supplied by the upstream auth proxy.

    Raises:
        AuthorizationError: if the X-User-Id header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise AuthorizationError("Missing X-User-Id header")
    return x_user_id.strip()


def get_conversations(request: Request) -> ConversationService:
    return request.app.state.conversations


def get_ingestion(request: Request) -> IngestionPipeline:
    return request.app.state.ingestion


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def chat_payload(conversation: Conversation) -> dict:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "createdAt": conversation.created_at.isoformat() if conversation.created_at else None,
        "updatedAt": conversation.updated_at.isoformat() if conversation.updated_at else None,
        "messageCount": conversation.message_count,
    }


def message_payload(message: Message) -> dict:
    return {
        "id": message.id,
        "role": message.role.value,
        "content": message.content,
        "createdAt": message.created_at.isoformat() if message.created_at else None,
        "fileIds": message.attached_document_ids,
        "sourceIds": message.source_document_ids,
    }


def sse_stream(events: Iterator[StreamEvent]) -> Iterator[str]:
    for event in events:
        yield encode_sse(event)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    conversations: Optional[ConversationService] = None,
    ingestion: Optional[IngestionPipeline] = None
) -> FastAPI:
    """
    Build the API application.

    Collaborators that are not passed in are created at startup; a store
    created here is opened at startup and closed at shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown."""
        configure_logging(settings.log_level, settings.json_logs)

        owned_store = None
        if app.state.store is None:
            owned_store = DocumentStore(
                settings.database_url, min_size=settings.db_pool_min, max_size=settings.db_pool_max
            )
            owned_store.open()
            app.state.store = owned_store

        if app.state.conversations is None:
            app.state.conversations = ConversationService(app.state.store, settings)
        if app.state.ingestion is None:
            app.state.ingestion = IngestionPipeline(app.state.store, settings=settings)

        issues = settings.validate()
        if issues:
            logger.warning(f"Configuration issues: {', '.join(issues)}")
        logger.info("citedoc API ready.")
        yield

        if owned_store is not None:
            owned_store.close()
        logger.info("citedoc API shut down.")

    app = FastAPI(
        title="citedoc",
        description="Question answering over uploaded documents with verifiable citations.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.conversations = conversations
    app.state.ingestion = ingestion

    @app.exception_handler(CiteDocError)
    async def citedoc_error_handler(request: Request, exc: CiteDocError) -> JSONResponse:
        status_code = next(
            (code for error_type, code in _STATUS_CODES.items() if isinstance(exc, error_type)),
            500
        )
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        return JSONResponse(status_code=status_code, content={"error": exc.user_message})

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok", "configured": not settings.validate()}

    @app.post("/api/chat")
    def chat(
        body: ChatRequest,
        user_id: str = Depends(require_user),
        service: ConversationService = Depends(get_conversations)
    ) -> StreamingResponse:
        """
        Answer a question as a server-sent-event stream.

        Each frame is ``data: {json}``; see StreamEvent for the event types.
        """
        turn = service.prepare_turn(user_id, body.message, body.chat_id, body.file_ids)
        return StreamingResponse(
            sse_stream(service.stream_turn(turn)),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/api/chats")
    def list_chats(
        user_id: str = Depends(require_user),
        service: ConversationService = Depends(get_conversations)
    ) -> dict:
        return {"chats": [chat_payload(c) for c in service.list_chats(user_id)]}

    @app.post("/api/chats", status_code=201)
    def create_chat(
        body: CreateChatRequest,
        user_id: str = Depends(require_user),
        service: ConversationService = Depends(get_conversations)
    ) -> dict:
        return chat_payload(service.create_chat(user_id, body.title))

    @app.get("/api/chats/{chat_id}")
    def get_chat(
        chat_id: str,
        user_id: str = Depends(require_user),
        service: ConversationService = Depends(get_conversations)
    ) -> dict:
        conversation = service.get_chat(chat_id, user_id)
        payload = chat_payload(conversation)
        payload["messages"] = [message_payload(m) for m in conversation.messages]
        return payload

    @app.delete("/api/chats/{chat_id}")
    def delete_chat(
        chat_id: str,
        user_id: str = Depends(require_user),
        service: ConversationService = Depends(get_conversations)
    ) -> dict:
        service.delete_chat(chat_id, user_id)
        return {"deleted": chat_id}

    @app.post("/api/documents", status_code=201)
    def ingest_document(
        body: IngestRequest,
        user_id: str = Depends(require_user),
        pipeline: IngestionPipeline = Depends(get_ingestion)
    ) -> dict:
        result = pipeline.ingest_text(body.name, body.text, user_id)
        return {
            "documentId": result.document_id,
            "addressableMarkup": result.addressable_markup,
            "fragments": [
                {
                    "id": f.id,
                    "content": f.content,
                    "startOffset": f.start_offset,
                    "endOffset": f.end_offset,
                }
                for f in result.fragments
            ],
        }

    @app.get("/api/documents")
    def list_documents(
        user_id: str = Depends(require_user),
        store: DocumentStore = Depends(get_store)
    ) -> dict:
        return {
            "documents": [
                {"id": d.id, "name": d.name, "createdAt": d.created_at.isoformat() if d.created_at else None}
                for d in store.list_documents(user_id)
            ]
        }

    @app.get("/api/documents/{document_id}")
    def get_document(
        document_id: str,
        user_id: str = Depends(require_user),
        store: DocumentStore = Depends(get_store)
    ) -> dict:
        document = store.get_document(document_id, owner_id=user_id)
        return {"id": document.id, "name": document.name, "addressableMarkup": document.addressable_markup}

    @app.post("/api/documents/{document_id}/highlight")
    def highlight_document(
        document_id: str,
        body: HighlightRequest,
        user_id: str = Depends(require_user),
        store: DocumentStore = Depends(get_store)
    ) -> dict:
        document = store.get_document(document_id, owner_id=user_id)
        result = highlight(document.addressable_markup, body.chunk_id, body.cited_text)
        return {
            "markup": result.markup,
            "matched": result.matched,
            "scrollTarget": (
                {"blockIndex": result.scroll_target.block_index, "chunkId": result.scroll_target.fragment_id}
                if result.scroll_target else None
            ),
        }

    return app
