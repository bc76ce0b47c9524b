#!/usr/bin/env python3
"""
Helper Utilities
Trace logging and log-formatting helpers shared by the session engine
"""

import logging
import uuid
from typing import Callable, Optional

logger = logging.getLogger(__name__)

TraceFn = Callable[..., None]


def make_trace_logger(scope: str = "") -> tuple[str, TraceFn]:
    """Create a per-exchange trace logger with a short id."""
    trace_id = uuid.uuid4().hex[:8]
    tag = f"{scope}:{trace_id}" if scope else trace_id

    def log(stage: str, message: str, level: int = logging.INFO):
        logger.log(level, f"[{tag}] {stage} | {message}")

    return trace_id, log


def emit_log(log_fn: Optional[TraceFn], stage: str, message: str, level: int = logging.INFO):
    """Emit a log line using the trace logger if provided."""
    if log_fn:
        log_fn(stage, message, level)
    else:
        logger.log(level, f"{stage} | {message}")


def truncate(text: str, limit: int = 200) -> str:
    """Truncate long text for logs."""
    if len(text) <= limit:
        return text
    return text[:limit] + "... [truncated]"


def mask_token(token: Optional[str]) -> str:
    """Show only the tail of a bearer token."""
    if not token:
        return "<none>"
    if len(token) <= 8:
        return "***"
    return f"***{token[-4:]}"
