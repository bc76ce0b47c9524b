#!/usr/bin/env python3
"""
History Filter
Builds the outbound {role, content} list sent with every stream request
"""

import logging
import re
from typing import Any, Iterable, List, Mapping, Optional, Union

from models import ChatMessage, Message

logger = logging.getLogger(__name__)

HistoryItem = Union[Message, Mapping[str, Any], ChatMessage]

IMAGE_OMITTED = "[image omitted]"

# Markdown image whose target is an inline data URI
_MARKDOWN_IMAGE = re.compile(r"!\[([^\]]*)\]\(\s*data:image/[^)]*\)")
# Bare inline image data URI
_DATA_URI = re.compile(r"data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=\s]+")


def has_artifact(content: str) -> bool:
    """Return True if content embeds an inline image body."""
    return bool(_MARKDOWN_IMAGE.search(content) or _DATA_URI.search(content))


def strip_artifacts(content: str) -> str:
    """Replace inline image bodies with a short reference marker."""
    def _markdown_ref(match: re.Match) -> str:
        alt = match.group(1).strip()
        return f"[image omitted: {alt}]" if alt else IMAGE_OMITTED

    content = _MARKDOWN_IMAGE.sub(_markdown_ref, content)
    return _DATA_URI.sub(IMAGE_OMITTED, content)


def _role_and_content(item: HistoryItem) -> Optional[tuple[str, str]]:
    """Extract (role, content); None when the item must not be sent."""
    if isinstance(item, Message):
        # Drafts are not backend-confirmed and never go out as history
        if item.is_draft:
            return None
        role, content = item.role, item.content
    elif isinstance(item, ChatMessage):
        role, content = item.role, item.content
    elif isinstance(item, Mapping):
        role, content = item.get("role"), item.get("content")
    else:
        return None

    if not role or not content or not isinstance(content, str):
        return None
    return role, content


def build_outbound_messages(history: Iterable[HistoryItem], new_input: Optional[str] = None) -> List[ChatMessage]:
    """
    Prepare the message list for the backend.

    Drops invalid entries and drafts, keeps only the most recent inline image
    body, collapses consecutive duplicates, and preserves chronological order.
    """
    pairs = []
    dropped = 0
    for item in history:
        pair = _role_and_content(item)
        if pair is None:
            dropped += 1
            continue
        pairs.append(pair)

    if new_input:
        pairs.append(("user", new_input))

    latest_artifact = None
    for index in range(len(pairs) - 1, -1, -1):
        if has_artifact(pairs[index][1]):
            latest_artifact = index
            break

    outbound: List[ChatMessage] = []
    for index, (role, content) in enumerate(pairs):
        if latest_artifact is not None and index < latest_artifact and has_artifact(content):
            content = strip_artifacts(content)
        if outbound and outbound[-1].role == role and outbound[-1].content == content:
            continue
        outbound.append(ChatMessage(role=role, content=content))

    if dropped:
        logger.debug(f"history.filter | dropped={dropped} kept={len(outbound)}")
    return outbound
