#!/usr/bin/env python3
"""
Backend Client
Thin async wrapper around the job/LLM backend's REST and streaming endpoints
"""

import logging
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from config import BACKEND_STREAM_CONNECT_TIMEOUT, BACKEND_TIMEOUT, BACKEND_TOKEN, BACKEND_URL, STREAM_PATH
from models import (
    AuthError, Conversation, ConversationMode, CreateConversationRequest, CreateMessageRequest,
    LLMProvider, Message, StreamChatRequest, Tool, ToolCall, ToolResult, TransportError, UserLLMConfig
)
from utils.helpers import emit_log as _emit_log, mask_token as _mask_token, truncate as _truncate

logger = logging.getLogger(__name__)

Record = TypeVar("Record", bound=BaseModel)


def validate_record(model: Type[Record], data: Any, source: str) -> Record:
    """Validate one backend record; a malformed record is a non-retryable transport error."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise TransportError(
            f"{source} returned an invalid {model.__name__}: {_truncate(str(e))}",
            retryable=False,
        ) from e


def validate_records(model: Type[Record], data: Any, source: str) -> List[Record]:
    if not isinstance(data, list):
        raise TransportError(f"{source} returned {type(data).__name__}, expected a list", retryable=False)
    return [validate_record(model, item, source) for item in data if item]


def extract_message(data: Any, source: str = "POST /messages") -> Message:
    """Message create responses arrive either as a record or a one-element list."""
    if isinstance(data, list) and data and isinstance(data[0], dict) and "id" in data[0]:
        return validate_record(Message, data[0], source)
    if isinstance(data, dict) and "id" in data:
        return validate_record(Message, data, source)
    raise TransportError(f"Invalid message structure: {_truncate(str(data))}", retryable=False)


class BackendClient:
    """Bearer-authenticated client; every failure is raised as a typed session error."""

    def __init__(
        self,
        base_url: str = BACKEND_URL,
        token: Optional[str] = BACKEND_TOKEN,
        timeout: float = BACKEND_TIMEOUT,
        on_unauthorized: Optional[Callable[[], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        stream_path: str = STREAM_PATH,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token or ""
        self.stream_path = stream_path
        self.on_unauthorized = on_unauthorized
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        logger.info(f"Backend client ready base_url={self.base_url} token={_mask_token(self.token)}")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    def _headers(self, accept: str = "application/json") -> Dict[str, str]:
        headers = {"Accept": accept, "Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _handle_unauthorized(self):
        logger.warning("Backend returned 401, clearing credentials")
        self.token = ""
        if self.on_unauthorized:
            self.on_unauthorized()

    def _check_status(self, response: httpx.Response, method: str, path: str):
        if response.status_code == 401:
            self._handle_unauthorized()
            raise AuthError(f"{method} {path} unauthorized")
        if response.is_success:
            return
        body = response.text
        # Server-side failures and bodiless errors are worth another try
        retryable = response.status_code >= 500 or not body.strip()
        raise TransportError(
            f"{method} {path} returned {response.status_code}: {_truncate(body)}",
            status_code=response.status_code,
            retryable=retryable,
        )

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.request(method, path, json=payload, headers=self._headers())
        except httpx.TransportError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        self._check_status(response, method, path)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"{method} {path} returned invalid JSON: {e}",
                status_code=response.status_code,
                retryable=False,
            ) from e

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, user_id: str, title: str, mode: ConversationMode = ConversationMode.CHAT) -> Conversation:
        request = CreateConversationRequest(user_id=user_id, title=title, mode=mode)
        data = await self._request("POST", "/conversations", request.model_dump(mode="json"))
        return validate_record(Conversation, data, "POST /conversations")

    async def list_conversations(self) -> List[Conversation]:
        data = await self._request("GET", "/conversations") or []
        return validate_records(Conversation, data, "GET /conversations")

    async def get_conversation(self, conversation_id: str) -> Conversation:
        data = await self._request("GET", f"/conversations/{conversation_id}")
        return validate_record(Conversation, data, f"GET /conversations/{conversation_id}")

    async def delete_conversation(self, conversation_id: str):
        await self._request("DELETE", f"/conversations/{conversation_id}")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def create_message(self, request: CreateMessageRequest) -> Message:
        data = await self._request("POST", "/messages", request.model_dump(mode="json", exclude_none=True))
        return extract_message(data)

    async def list_messages(self, conversation_id: str) -> List[Message]:
        data = await self._request("GET", f"/conversations/{conversation_id}/messages") or []
        return validate_records(Message, data, f"GET /conversations/{conversation_id}/messages")

    async def delete_message(self, conversation_id: str, message_id: str):
        await self._request("DELETE", f"/conversations/{conversation_id}/messages/{message_id}")

    # ------------------------------------------------------------------
    # Provider identity
    # ------------------------------------------------------------------

    async def list_user_configs(self) -> List[UserLLMConfig]:
        data = await self._request("GET", "/llm/user-configs") or []
        return validate_records(UserLLMConfig, data, "GET /llm/user-configs")

    async def get_provider(self, provider_id: str) -> LLMProvider:
        data = await self._request("GET", f"/llm/providers/{provider_id}")
        return validate_record(LLMProvider, data, f"GET /llm/providers/{provider_id}")

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def list_tools(self) -> List[Tool]:
        data = await self._request("GET", "/tools") or []
        return validate_records(Tool, data, "GET /tools")

    async def execute_tool(self, call: ToolCall) -> ToolResult:
        data = await self._request("POST", "/function-calling/execute", call.to_request())
        if not isinstance(data, dict):
            raise TransportError(f"Invalid tool result: {_truncate(str(data))}", retryable=False)
        data.setdefault("tool_call_id", call.id)
        return validate_record(ToolResult, data, "POST /function-calling/execute")

    # ------------------------------------------------------------------
    # Streaming chat
    # ------------------------------------------------------------------

    async def stream_chat(self, request: StreamChatRequest, trace=None) -> AsyncGenerator[bytes, None]:
        """Open the chat stream and yield raw body chunks as they arrive."""
        timeout = httpx.Timeout(self._timeout, connect=BACKEND_STREAM_CONNECT_TIMEOUT, read=None)
        received = 0
        try:
            async with self._client.stream(
                "POST",
                self.stream_path,
                json=request.model_dump(mode="json"),
                headers=self._headers(accept="text/event-stream"),
                timeout=timeout,
            ) as response:
                if not response.is_success:
                    await response.aread()
                    self._check_status(response, "POST", self.stream_path)
                _emit_log(
                    trace,
                    "backend.stream.open",
                    f"status={response.status_code} config={request.user_llm_config_id} messages={len(request.messages)}",
                )
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    yield chunk
        except httpx.TransportError as e:
            _emit_log(trace, "backend.stream.error", f"received={received} error={e}", level=logging.WARNING)
            raise TransportError(f"Chat stream failed: {e}") from e
        _emit_log(trace, "backend.stream.closed", f"bytes={received}", level=logging.DEBUG)
