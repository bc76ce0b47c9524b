#!/usr/bin/env python3
"""
Chat Stream Bridge
Exposes the streaming chat session engine over HTTP: conversation CRUD,
single-flight chat exchanges streamed as SSE events, and tool execution
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from config import BRIDGE_PORT, VERSION
from backend_client import BackendClient
from models import (
    AuthError, ChatBridgeError, ChatRequest, CreateConversationRequest, PersistError,
    RetryExhaustedError, SessionEvent, SessionValidationError, ToolCall, ToolExecuteRequest,
    TransportError
)
from session_manager import SessionCoordinator
from tools import ToolExecutor
from utils.helpers import make_trace_logger

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything the endpoints need, owned by the app instead of module globals"""
    backend: BackendClient
    coordinator: SessionCoordinator
    tool_executor: ToolExecutor
    owns_backend: bool = False

    @classmethod
    def from_config(cls) -> "AppContext":
        holder = {}

        def on_unauthorized():
            # Credentials are gone; nothing in flight can succeed
            coordinator = holder.get("coordinator")
            if coordinator is not None:
                coordinator.cancel_all()

        backend = BackendClient(on_unauthorized=on_unauthorized)
        tool_executor = ToolExecutor(backend)
        coordinator = SessionCoordinator(backend, tool_executor=tool_executor)
        holder["coordinator"] = coordinator
        return cls(backend=backend, coordinator=coordinator, tool_executor=tool_executor, owns_backend=True)


# ============================================================================
# Helper Functions
# ============================================================================

def to_http_error(error: Exception) -> HTTPException:
    """Map session engine errors onto HTTP status codes."""
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, SessionValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, AuthError):
        return HTTPException(status_code=401, detail=str(error))
    if isinstance(error, (PersistError, RetryExhaustedError)):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, TransportError):
        if error.status_code == 404:
            return HTTPException(status_code=404, detail=str(error))
        return HTTPException(status_code=502, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def make_frame(payload) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def event_payload(event: SessionEvent) -> dict:
    return event.model_dump(mode="json", exclude_none=True)


async def stream_exchange(
    coordinator: SessionCoordinator,
    conversation_id: str,
    body: ChatRequest,
    trace,
) -> AsyncGenerator[str, None]:
    """Run one exchange in the background and relay its events as SSE frames."""
    queue: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(coordinator.send(
        conversation_id,
        body.config_ids,
        body.input,
        mode=body.mode,
        listener=queue.put_nowait,
    ))
    task.add_done_callback(lambda _: queue.put_nowait(None))
    sent = 0

    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            sent += 1
            yield make_frame(event_payload(event))

        try:
            result = task.result()
            trace("stream.done", f"frames={sent} attempts={result.attempts} cancelled={result.cancelled}")
        except ChatBridgeError as e:
            trace("stream.error", f"{type(e).__name__}: {e}", level=logging.ERROR)
            yield make_frame(event_payload(SessionEvent(
                type="error",
                conversation_id=conversation_id,
                data={"error": str(e), "kind": type(e).__name__},
            )))
        yield "data: [DONE]\n\n"
    finally:
        if not task.done():
            # Client went away mid-stream
            trace("stream.disconnect", f"frames={sent}", level=logging.WARNING)
            task.cancel()


# ============================================================================
# App Factory
# ============================================================================

def create_app(context: Optional[AppContext] = None) -> FastAPI:
    context = context or AppContext.from_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        context.coordinator.cancel_all()
        if context.owns_backend:
            await context.backend.aclose()

    app = FastAPI(title="Chat Stream Bridge", version=VERSION, lifespan=lifespan)
    app.state.context = context

    def ctx(request: Request) -> AppContext:
        return request.app.state.context

    @app.get("/")
    async def root(request: Request):
        """Health check endpoint"""
        return {
            "message": "Chat Stream Bridge API",
            "version": VERSION,
            "status": "running",
            "active_sessions": len(ctx(request).coordinator.active_sessions()),
        }

    @app.get("/sessions")
    async def list_sessions(request: Request):
        """List active streaming sessions (debug endpoint)"""
        return {"sessions": ctx(request).coordinator.active_sessions()}

    @app.delete("/sessions/{conversation_id}")
    async def delete_session(conversation_id: str, request: Request):
        """Cancel the live generation for a conversation."""
        if ctx(request).coordinator.cancel_conversation(conversation_id):
            return {"status": "cancelled", "conversation_id": conversation_id}
        raise HTTPException(status_code=404, detail="Session not found")

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    @app.get("/conversations")
    async def list_conversations(request: Request):
        try:
            return await ctx(request).backend.list_conversations()
        except ChatBridgeError as e:
            raise to_http_error(e)

    @app.post("/conversations")
    async def create_conversation(body: CreateConversationRequest, request: Request):
        try:
            return await ctx(request).backend.create_conversation(body.user_id, body.title, body.mode)
        except ChatBridgeError as e:
            raise to_http_error(e)

    @app.get("/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str, request: Request):
        try:
            return await ctx(request).backend.get_conversation(conversation_id)
        except ChatBridgeError as e:
            raise to_http_error(e)

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str, request: Request):
        context = ctx(request)
        try:
            await context.backend.delete_conversation(conversation_id)
        except ChatBridgeError as e:
            raise to_http_error(e)
        context.coordinator.forget(conversation_id)
        return {"status": "deleted", "conversation_id": conversation_id}

    @app.get("/conversations/{conversation_id}/messages")
    async def list_messages(conversation_id: str, request: Request):
        """Switch to the conversation and return its visible transcript."""
        try:
            return await ctx(request).coordinator.switch_conversation(conversation_id)
        except ChatBridgeError as e:
            raise to_http_error(e)

    @app.delete("/conversations/{conversation_id}/messages/{message_id}")
    async def delete_message(conversation_id: str, message_id: str, request: Request):
        context = ctx(request)
        try:
            await context.backend.delete_message(conversation_id, message_id)
        except ChatBridgeError as e:
            raise to_http_error(e)
        transcript = context.coordinator.transcript(conversation_id)
        transcript[:] = [m for m in transcript if m.id != message_id]
        return {"status": "deleted", "message_id": message_id}

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    @app.post("/conversations/{conversation_id}/chat")
    async def chat(conversation_id: str, body: ChatRequest, request: Request):
        """Send one user turn; streams SSE events unless stream is false."""
        coordinator = ctx(request).coordinator
        trace_id, trace = make_trace_logger("http")
        trace("request.start", f"conversation={conversation_id} configs={body.config_ids} mode={body.mode.value} stream={body.stream}")

        try:
            coordinator.validate(conversation_id, body.config_ids, body.input, body.mode)
        except SessionValidationError as e:
            raise to_http_error(e)

        if body.stream:
            return StreamingResponse(
                stream_exchange(coordinator, conversation_id, body, trace),
                media_type="text/event-stream",
            )

        try:
            return await coordinator.send(conversation_id, body.config_ids, body.input, mode=body.mode)
        except ChatBridgeError as e:
            trace("request.error", f"{type(e).__name__}: {e}", level=logging.ERROR)
            raise to_http_error(e)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    @app.get("/tools")
    async def list_tools(request: Request, refresh: bool = False):
        try:
            return await ctx(request).tool_executor.list_tools(refresh=refresh)
        except ChatBridgeError as e:
            raise to_http_error(e)

    @app.post("/tools/execute")
    async def execute_tool(body: ToolExecuteRequest, request: Request):
        call = ToolCall(id=body.id or f"call_{uuid.uuid4().hex[:12]}", name=body.name, arguments=body.arguments)
        try:
            return await ctx(request).tool_executor.execute(call)
        except ChatBridgeError as e:
            raise to_http_error(e)

    return app


app = create_app()


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=BRIDGE_PORT)


if __name__ == "__main__":
    main()
