#!/usr/bin/env python3
"""
Pydantic Models for the Chat Stream Bridge
Request/response records for every backend endpoint plus session errors
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ROLES = ("system", "user", "assistant", "tool")


def utc_now_iso() -> str:
    """Timestamp format used for locally created records"""
    return datetime.now(timezone.utc).isoformat()


class ConversationMode(str, Enum):
    """Single-provider chat or multi-provider arena"""
    CHAT = "chat"
    ARENA = "arena"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class DetectionKind(str, Enum):
    TOOL_RESULT = "tool_result"
    TOOL_CALL = "tool_call"
    CONTINUE = "continue"
    PLAIN = "plain"


# ============================================================================
# Backend Records
# ============================================================================

class BackendRecord(BaseModel):
    """Base for records returned by the backend (unknown fields are ignored)"""
    model_config = ConfigDict(extra="ignore")


class Conversation(BackendRecord):
    id: str
    user_id: Optional[str] = None
    title: str = ""
    mode: ConversationMode = ConversationMode.CHAT
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("mode", mode="before")
    @classmethod
    def _default_mode(cls, value):
        # Older conversations were stored without a mode
        return value or ConversationMode.CHAT


class Message(BackendRecord):
    """Chat message; an empty id marks a local draft"""
    id: str = ""
    conversation_id: str = ""
    role: str
    content: str = ""
    provider_model: Optional[str] = None
    attachment_id: Optional[str] = None
    raw_output: Optional[str] = None
    usage_stats: Optional[Dict[str, Any]] = None
    created_at: str = Field(default_factory=utc_now_iso)
    rendered_content: Optional[str] = None
    # Local only: set when the final save of a draft was rejected
    unsent: bool = False
    error: Optional[str] = None

    @field_validator("content", "raw_output", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        # The backend stores content as a JSON value, usually but not always a string
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)

    @property
    def is_draft(self) -> bool:
        return not self.id


class UserLLMConfig(BackendRecord):
    id: str
    user_id: Optional[str] = None
    provider_id: str
    description: Optional[str] = None


class LLMProvider(BackendRecord):
    id: str
    name: str
    api_endpoint: Optional[str] = None


class Tool(BackendRecord):
    id: Optional[str] = None
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BackendRecord):
    tool_call_id: str
    result: Any = None


class ToolCall(BaseModel):
    """Tool invocation; status only ever moves forward"""
    id: str
    name: str
    arguments: Any = Field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: Any = None
    error: Optional[str] = None

    def mark_running(self):
        self._advance(ToolCallStatus.PENDING, ToolCallStatus.RUNNING)

    def complete(self, result: Any):
        self._advance(ToolCallStatus.RUNNING, ToolCallStatus.COMPLETED)
        self.result = result

    def fail(self, error: str):
        if self.status not in (ToolCallStatus.PENDING, ToolCallStatus.RUNNING):
            raise InvalidToolTransitionError(f"Tool call {self.id} is already {self.status.value}")
        self.status = ToolCallStatus.ERROR
        self.error = error

    def _advance(self, expected: ToolCallStatus, target: ToolCallStatus):
        if self.status != expected:
            raise InvalidToolTransitionError(
                f"Tool call {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def to_request(self) -> Dict[str, Any]:
        """Body for the function-calling execute endpoint"""
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


class Detection(BaseModel):
    """Classification of accumulated assistant text"""
    kind: DetectionKind = DetectionKind.PLAIN
    payload: Any = None


# ============================================================================
# Backend Requests
# ============================================================================

class ChatMessage(BaseModel):
    """Outbound {role, content} pair"""
    role: str
    content: str


class CreateConversationRequest(BaseModel):
    user_id: str
    title: str
    mode: ConversationMode = ConversationMode.CHAT


class CreateMessageRequest(BaseModel):
    conversation_id: str
    role: str
    content: str
    provider_model: str = ""
    attachment_id: Optional[str] = None
    raw_output: Optional[str] = None
    usage_stats: Optional[Dict[str, Any]] = None


class StreamChatRequest(BaseModel):
    user_llm_config_id: str
    provider_id: str
    conversation_id: str
    messages: List[ChatMessage]


# ============================================================================
# Bridge API Models
# ============================================================================

class ChatRequest(BaseModel):
    """Body of POST /conversations/{id}/chat"""
    input: str
    config_ids: List[str]
    mode: ConversationMode = ConversationMode.CHAT
    stream: Optional[bool] = True


class ToolExecuteRequest(BaseModel):
    """Body of POST /tools/execute"""
    name: str
    arguments: Any = Field(default_factory=dict)
    id: Optional[str] = None


class ExchangeResult(BaseModel):
    """Outcome of one user turn, keyed by config id"""
    conversation_id: str
    user_message: Optional[Message] = None
    messages: Dict[str, Message] = Field(default_factory=dict)
    detections: Dict[str, Detection] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)
    attempts: int = 0
    follow_ups: int = 0
    cancelled: bool = False


class SessionEvent(BaseModel):
    """Transcript change pushed to whoever renders the conversation"""
    type: str  # user, delta, committed, failed, retry, detection, tool; the bridge adds error
    conversation_id: str
    config_id: Optional[str] = None
    delta: Optional[str] = None
    message: Optional[Message] = None
    data: Optional[Dict[str, Any]] = None


# ============================================================================
# Custom Exceptions
# ============================================================================

class ChatBridgeError(Exception):
    """Base class for session engine errors."""
    pass


class SessionValidationError(ChatBridgeError):
    """Raised before any network call when a send request is unusable."""
    pass


class TransportError(ChatBridgeError):
    """Raised when the backend cannot be reached or answers with a failure status."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class AuthError(ChatBridgeError):
    """Raised on a 401; aborts every active session."""
    pass


class PersistError(ChatBridgeError):
    """Raised when the backend rejects the final save of an assistant message."""

    def __init__(self, message: str, draft: Optional[Message] = None):
        super().__init__(message)
        self.draft = draft


class RetryExhaustedError(ChatBridgeError):
    """Raised when an exchange keeps failing after every allowed retry."""

    def __init__(self, message: str, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class InvalidToolTransitionError(ChatBridgeError):
    """Raised when a tool call would move backwards or be revived."""
    pass
