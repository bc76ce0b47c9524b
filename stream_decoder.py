#!/usr/bin/env python3
"""
Stream Decoder
Turns the backend's raw byte stream into a sequence of assistant text deltas.

Handles both `data: <payload>` framed streams (OpenAI-style chunks, plain
text frames, `[DONE]` terminator) and providers that emit unframed text.
Reads may split UTF-8 sequences, lines and JSON payloads at any position.
"""

import codecs
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator, List, Optional, Union

from config import STREAM_MAX_PENDING_FRAME
from utils.helpers import emit_log as _emit_log, truncate as _truncate

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"
SSE_FIELDS = ("data:", "event:", "id:", "retry:", ":")


def is_incomplete_json(text: str) -> bool:
    """True when text is a JSON prefix cut off mid-object, mid-array or mid-string."""
    depth = 0
    in_string = False
    escape = False
    for ch in text:
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth < 0:
                return False
    return in_string or depth > 0


def extract_delta(data: Any) -> Optional[str]:
    """Pull the assistant text increment out of one parsed frame."""
    if isinstance(data, str):
        return data or None
    if not isinstance(data, dict):
        return None

    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if not isinstance(first, dict):
            return None
        for key in ("delta", "message"):
            part = first.get(key)
            if isinstance(part, dict) and isinstance(part.get("content"), str):
                return part["content"] or None
        if isinstance(first.get("text"), str):
            return first["text"] or None
        return None

    # Anthropic-style content_block_delta
    delta = data.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("text"), str):
        return delta["text"] or None

    for key in ("content", "text", "response"):
        if isinstance(data.get(key), str):
            return data[key] or None
    return None


class StreamDecoder:
    """Incremental decoder; feed() raw chunks, close() when the source ends."""

    def __init__(self, trace=None, max_pending: int = STREAM_MAX_PENDING_FRAME):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending = ""
        self._max_pending = max_pending
        self._trace = trace
        self.framed: Optional[bool] = None
        self.done = False
        self.frames = 0
        self.skipped = 0

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        if self.done:
            return []
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        return self._consume(self._utf8.decode(chunk), final=False)

    def close(self) -> List[str]:
        if self.done:
            return []
        deltas = self._consume(self._utf8.decode(b"", final=True), final=True)
        if self._pending:
            _emit_log(
                self._trace,
                "stream.decode.truncated",
                f"dropping incomplete frame at close len={len(self._pending)}",
                level=logging.WARNING,
            )
            self._pending = ""
            self.skipped += 1
        self.done = True
        return deltas

    def _consume(self, text: str, final: bool) -> List[str]:
        self._buffer += text

        if self.framed is None:
            self.framed = self._detect_framing(final)
            if self.framed is None:
                return []
            _emit_log(self._trace, "stream.decode.mode", "framed" if self.framed else "raw", level=logging.DEBUG)

        if not self.framed:
            text, self._buffer = self._buffer, ""
            return [text] if text else []

        deltas = []
        while not self.done:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            delta = self._handle_line(line)
            if delta:
                deltas.append(delta)

        if final and not self.done and self._buffer:
            line, self._buffer = self._buffer, ""
            delta = self._handle_line(line)
            if delta:
                deltas.append(delta)
        return deltas

    def _detect_framing(self, final: bool) -> Optional[bool]:
        head = self._buffer.lstrip()
        if not head:
            return False if final else None
        if head.startswith("data:"):
            return True
        if not final and any(field.startswith(head) for field in SSE_FIELDS):
            # Too short to tell yet
            return None
        if not head.startswith(SSE_FIELDS):
            return False

        # A comment or field line may open a framed stream, but only a data line settles it
        lines = head.split("\n")
        if not final:
            lines = lines[:-1]
        for line in lines:
            line = line.rstrip("\r")
            if line.startswith("data:"):
                return True
            if line.strip() and not line.startswith(SSE_FIELDS):
                return False
        if final or len(self._buffer) > self._max_pending:
            return False
        return None

    def _handle_line(self, line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line.strip() or not line.startswith("data:"):
            # Blank separators, comments and other SSE fields carry no text
            return None
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        self.frames += 1
        return self._handle_payload(payload)

    def _handle_payload(self, payload: str) -> Optional[str]:
        stripped = payload.strip()

        if stripped == DONE_MARKER:
            if self._pending:
                _emit_log(self._trace, "stream.decode.truncated", "incomplete frame before [DONE]", level=logging.WARNING)
                self._pending = ""
                self.skipped += 1
            self.done = True
            return None

        if not self._pending:
            if not stripped:
                # A whitespace-only text frame is still a token
                return payload or None
            if stripped[0] == '"':
                try:
                    value = json.loads(stripped)
                except json.JSONDecodeError:
                    return payload
                return value if isinstance(value, str) and value else None
            if stripped[0] not in "{[":
                return payload
            return self._parse(stripped)

        # A fresh complete frame supersedes a pending fragment that never closed
        if stripped[:1] in ("{", "["):
            try:
                data = json.loads(stripped)
            except json.JSONDecodeError:
                pass
            else:
                _emit_log(
                    self._trace,
                    "stream.decode.skip",
                    f"abandoning incomplete frame len={len(self._pending)}",
                    level=logging.WARNING,
                )
                self._pending = ""
                self.skipped += 1
                return extract_delta(data)

        candidate = self._pending + stripped
        self._pending = ""
        return self._parse(candidate)

    def _parse(self, candidate: str) -> Optional[str]:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as e:
            if is_incomplete_json(candidate):
                if len(candidate) > self._max_pending:
                    _emit_log(
                        self._trace,
                        "stream.decode.skip",
                        f"incomplete frame exceeds {self._max_pending} chars",
                        level=logging.WARNING,
                    )
                    self.skipped += 1
                    return None
                self._pending = candidate
                _emit_log(self._trace, "stream.decode.buffer", f"len={len(candidate)}", level=logging.DEBUG)
                return None
            self.skipped += 1
            _emit_log(
                self._trace,
                "stream.decode.skip",
                f"malformed frame error={e} frame={_truncate(candidate, 100)}",
                level=logging.WARNING,
            )
            return None

        if isinstance(data, dict) and data.get("error"):
            _emit_log(self._trace, "stream.decode.error_frame", _truncate(str(data["error"])), level=logging.WARNING)
        return extract_delta(data)


async def iter_deltas(
    chunks: AsyncIterator[Union[bytes, str]],
    trace=None,
    decoder: Optional[StreamDecoder] = None,
) -> AsyncGenerator[str, None]:
    """Lazily decode an async byte stream into text deltas; stops at [DONE] or close."""
    decoder = decoder or StreamDecoder(trace=trace)
    emitted = 0
    try:
        async for chunk in chunks:
            for delta in decoder.feed(chunk):
                emitted += 1
                yield delta
            if decoder.done:
                break
        for delta in decoder.close():
            emitted += 1
            yield delta
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
        _emit_log(
            trace,
            "stream.decode.done",
            f"frames={decoder.frames} deltas={emitted} skipped={decoder.skipped}",
            level=logging.DEBUG,
        )
