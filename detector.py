#!/usr/bin/env python3
"""
Tool/Continuation Detector
Classifies accumulated assistant text by the structured markers it embeds
"""

import json
import logging
import re
import uuid
from typing import Any, Dict, Iterator, List, Optional

from models import Detection, DetectionKind, ToolCall

logger = logging.getLogger(__name__)

CONTINUE_MARKER = "<continue>true</continue>"
TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"

_TOOL_CALL_BLOCK = re.compile(re.escape(TOOL_CALL_OPEN) + r"(.*?)" + re.escape(TOOL_CALL_CLOSE), re.DOTALL)


def should_continue(text: str) -> bool:
    return CONTINUE_MARKER in text


def iter_json_objects(text: str) -> Iterator[Dict[str, Any]]:
    """Yield every well-formed top-level JSON object embedded in text, in order."""
    decoder = json.JSONDecoder()
    position = text.find("{")
    while position != -1:
        try:
            value, end = decoder.raw_decode(text, position)
        except json.JSONDecodeError:
            # Stray brace or partial object; try the next opening brace
            position = text.find("{", position + 1)
            continue
        if isinstance(value, dict):
            yield value
        position = text.find("{", end)


def _is_tool_result(candidate: Dict[str, Any]) -> bool:
    return candidate.get("type") == "tool_result" or bool(candidate.get("tool_use_id")) or bool(candidate.get("action"))


def parse_tool_result(text: str) -> Optional[Dict[str, Any]]:
    """Return the last embedded object shaped like a tool result, if any."""
    candidates: List[Dict[str, Any]] = list(iter_json_objects(text))
    for candidate in reversed(candidates):
        content = candidate.get("content")
        if isinstance(content, str):
            # Tool results often wrap their output as JSON inside content
            nested = next(iter_json_objects(content), None)
            if nested is not None:
                candidate = {**candidate, **nested}

        if _is_tool_result(candidate):
            return candidate
    return None


def parse_tool_call(text: str) -> Optional[ToolCall]:
    """Return the last well-formed <tool_call> block as a pending ToolCall."""
    for body in reversed(_TOOL_CALL_BLOCK.findall(text)):
        try:
            data = json.loads(body.strip())
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict) or not isinstance(data.get("name"), str) or not data["name"]:
            continue

        arguments = data.get("arguments", data.get("parameters", {}))
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                pass
        return ToolCall(
            id=str(data.get("id") or f"call_{uuid.uuid4().hex[:12]}"),
            name=data["name"],
            arguments=arguments if arguments is not None else {},
        )
    return None


def detect(text: str) -> Detection:
    """Classify text as continue, tool_call, tool_result or plain."""
    if not text:
        return Detection(kind=DetectionKind.PLAIN)

    if should_continue(text):
        return Detection(kind=DetectionKind.CONTINUE)

    if TOOL_CALL_OPEN in text:
        call = parse_tool_call(text)
        if call is not None:
            return Detection(kind=DetectionKind.TOOL_CALL, payload=call)

    result = parse_tool_result(text)
    if result is not None:
        return Detection(kind=DetectionKind.TOOL_RESULT, payload=result)

    return Detection(kind=DetectionKind.PLAIN)


def tool_error(result: Optional[Dict[str, Any]]) -> Optional[str]:
    """Extract an error message from a tool result payload."""
    if not result:
        return None

    if result.get("error"):
        return str(result["error"])

    output = result.get("output")
    if isinstance(output, dict) and output.get("error"):
        return str(output["error"])

    content = result.get("content")
    if isinstance(content, str):
        try:
            content_obj = json.loads(content)
        except json.JSONDecodeError:
            content_obj = None
        if isinstance(content_obj, dict):
            nested_output = content_obj.get("output")
            if isinstance(nested_output, dict) and nested_output.get("error"):
                return str(nested_output["error"])

    if result.get("action") == "mouse_move":
        has_coordinate = result.get("coordinate") or (isinstance(output, dict) and output.get("coordinate"))
        if not has_coordinate:
            return "Missing coordinates for mouse movement"

    return None
