#!/usr/bin/env python3
"""
Tool Executor
Dispatches detected tool calls to the backend's function-calling endpoint
and tracks their status
"""

import logging
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from config import TOOL_CALL_HISTORY
from models import AuthError, Tool, ToolCall
from utils.helpers import emit_log as _emit_log, truncate as _truncate

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Tool registry plus pending -> running -> completed | error bookkeeping."""

    def __init__(self, backend, history_size: int = TOOL_CALL_HISTORY):
        self.backend = backend
        self.tools: List[Tool] = []
        self.active_calls: Dict[str, ToolCall] = {}
        # Finished calls move here; oldest fall off
        self.recent_calls: Deque[ToolCall] = deque(maxlen=history_size)
        self._loaded = False

    async def list_tools(self, refresh: bool = False) -> List[Tool]:
        if refresh or not self._loaded:
            self.tools = await self.backend.list_tools()
            self._loaded = True
            logger.info(f"Loaded {len(self.tools)} tool(s): {', '.join(t.name for t in self.tools)}")
        return self.tools

    async def get_tool(self, name: str) -> Optional[Tool]:
        for tool in await self.list_tools():
            if tool.name == name:
                return tool
        return None

    async def execute(self, call: ToolCall, trace: Optional[Callable] = None) -> ToolCall:
        """Execute a tool call and return it with its result or error filled in."""
        call.mark_running()
        self.active_calls[call.id] = call
        _emit_log(trace, f"tool.{call.name}", f"id={call.id} arguments={_truncate(str(call.arguments))}")

        try:
            result = await self.backend.execute_tool(call)
        except AuthError:
            call.fail("unauthorized")
            raise
        except Exception as e:
            call.fail(str(e))
            _emit_log(trace, f"tool.{call.name}.error", str(e), level=logging.ERROR)
            raise
        finally:
            self._retire(call)

        call.complete(result.result)
        _emit_log(trace, f"tool.{call.name}.done", f"id={call.id} result={_truncate(str(result.result))}")
        return call

    def _retire(self, call: ToolCall):
        if self.active_calls.pop(call.id, None) is not None:
            self.recent_calls.append(call)

    def get_call(self, call_id: str) -> Optional[ToolCall]:
        call = self.active_calls.get(call_id)
        if call is not None:
            return call
        for finished in reversed(self.recent_calls):
            if finished.id == call_id:
                return finished
        return None
