"""Shared fixtures: an in-memory stand-in for the chat backend."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from models import (  # noqa: E402
    Conversation, LLMProvider, Message, Tool, ToolResult, TransportError, UserLLMConfig
)


def sse(*payloads: Any, done: bool = True) -> List[bytes]:
    """Build `data:` frames; dicts are JSON-encoded, strings sent verbatim."""
    frames = []
    for payload in payloads:
        body = json.dumps(payload) if isinstance(payload, (dict, list)) else payload
        frames.append(f"data: {body}\n\n".encode("utf-8"))
    if done:
        frames.append(b"data: [DONE]\n\n")
    return frames


class _FakeBackend:
    """Records every call; streams are scripted per config id.

    A script item may be bytes/str (yielded), an exception (raised), or an
    asyncio.Event (awaited before continuing).
    """

    def __init__(self) -> None:
        self.configs: List[UserLLMConfig] = [
            UserLLMConfig(id="cfg-1", provider_id="prov-openai"),
            UserLLMConfig(id="cfg-2", provider_id="prov-claude"),
            UserLLMConfig(id="cfg-3", provider_id="prov-openai"),
        ]
        self.providers: Dict[str, LLMProvider] = {
            "prov-openai": LLMProvider(id="prov-openai", name="gpt-4o"),
            "prov-claude": LLMProvider(id="prov-claude", name="claude-3"),
        }
        self.scripts: Dict[str, List[List[Any]]] = {}
        self.stream_requests = []
        self.created = []
        self.stored: Dict[str, List[Message]] = {}
        self.persist_errors: Dict[str, Exception] = {}
        self.tools = [Tool(name="get_weather", description="Weather lookup")]
        self.tool_results: Dict[str, Any] = {}
        self.tool_requests = []
        self.provider_lookups = 0
        self.conversations: Dict[str, Conversation] = {}
        self._next_id = 0

    def script(self, config_id: str, *attempts: List[Any]) -> None:
        self.scripts.setdefault(config_id, []).extend(attempts)

    async def list_user_configs(self) -> List[UserLLMConfig]:
        return list(self.configs)

    async def get_provider(self, provider_id: str) -> LLMProvider:
        self.provider_lookups += 1
        if provider_id not in self.providers:
            raise TransportError(f"provider {provider_id} not found", status_code=404, retryable=False)
        return self.providers[provider_id]

    async def stream_chat(self, request, trace=None):
        self.stream_requests.append(request)
        script = self.scripts[request.user_llm_config_id].pop(0)
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item.encode("utf-8") if isinstance(item, str) else item
            await asyncio.sleep(0)

    async def create_message(self, request) -> Message:
        self.created.append(request)
        error = self.persist_errors.get(request.role)
        if error is not None:
            raise error
        self._next_id += 1
        message = Message(
            id=f"m{self._next_id}",
            conversation_id=request.conversation_id,
            role=request.role,
            content=request.content,
            provider_model=request.provider_model,
            raw_output=request.raw_output,
        )
        self.stored.setdefault(request.conversation_id, []).append(message)
        return message

    async def create_conversation(self, user_id, title, mode) -> Conversation:
        conversation = Conversation(id=f"c{len(self.conversations) + 1}", user_id=user_id, title=title, mode=mode)
        self.conversations[conversation.id] = conversation
        return conversation

    async def list_conversations(self) -> List[Conversation]:
        return list(self.conversations.values())

    async def get_conversation(self, conversation_id: str) -> Conversation:
        if conversation_id not in self.conversations:
            raise TransportError(f"GET /conversations/{conversation_id} returned 404: missing", status_code=404, retryable=False)
        return self.conversations[conversation_id]

    async def delete_conversation(self, conversation_id: str) -> None:
        self.conversations.pop(conversation_id, None)
        self.stored.pop(conversation_id, None)

    async def list_messages(self, conversation_id: str) -> List[Message]:
        return [m.model_copy() for m in self.stored.get(conversation_id, [])]

    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        self.stored[conversation_id] = [m for m in self.stored.get(conversation_id, []) if m.id != message_id]

    async def list_tools(self) -> List[Tool]:
        return list(self.tools)

    async def execute_tool(self, call) -> ToolResult:
        self.tool_requests.append(call.to_request())
        outcome = self.tool_results.get(call.name)
        if isinstance(outcome, BaseException):
            raise outcome
        return ToolResult(tool_call_id=call.id, result=outcome)

    def persisted(self, role: Optional[str] = None):
        return [r for r in self.created if role is None or r.role == role]


@pytest.fixture
def backend() -> _FakeBackend:
    return _FakeBackend()

