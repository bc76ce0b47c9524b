#!/usr/bin/env python3
"""
Configuration and Constants for the Chat Stream Bridge
Centralizes all environment variables, backend endpoints, and retry settings
"""

import os
import logging

# ============================================================================
# Version and Basic Configuration
# ============================================================================

VERSION = "0.4.0"
BRIDGE_PORT = int(os.getenv("CHAT_BRIDGE_PORT", "8100"))

# ============================================================================
# Backend Connection
# ============================================================================

# Base URL of the REST+SSE job/LLM backend
BACKEND_URL = os.getenv("CHAT_BACKEND_URL", "http://localhost:8000").rstrip("/")
BACKEND_TOKEN = os.getenv("CHAT_BACKEND_TOKEN", "")
BACKEND_TIMEOUT = float(os.getenv("CHAT_BACKEND_TIMEOUT", "30"))
# Streams stay open for the whole generation, so only connect/write are bounded
BACKEND_STREAM_CONNECT_TIMEOUT = float(os.getenv("CHAT_BACKEND_STREAM_CONNECT_TIMEOUT", "10"))

STREAM_PATH = os.getenv("CHAT_STREAM_PATH", "/chat/stream")

# ============================================================================
# Session Policy
# ============================================================================

MAX_RETRIES = int(os.getenv("CHAT_MAX_RETRIES", "3"))
RETRY_BASE_DELAY = float(os.getenv("CHAT_RETRY_BASE_DELAY", "1.0"))  # seconds, multiplied by attempt
MAX_FOLLOW_UPS = int(os.getenv("CHAT_MAX_FOLLOW_UPS", "3"))

# Largest incomplete JSON frame kept across reads before it is dropped
STREAM_MAX_PENDING_FRAME = int(os.getenv("CHAT_STREAM_MAX_PENDING_FRAME", str(1024 * 1024)))

# Finished tool calls kept for lookup after they leave the in-flight map
TOOL_CALL_HISTORY = int(os.getenv("CHAT_TOOL_CALL_HISTORY", "50"))

# ============================================================================
# Supported Conversation Modes
# ============================================================================

SUPPORTED_MODES = {
    "chat": {"max_configs": 1},
    "arena": {"max_configs": 8},
}

# ============================================================================
# Logging Configuration
# ============================================================================

LOG_LEVEL = os.getenv("CHAT_BRIDGE_LOG_LEVEL", "DEBUG").upper()

# Default to DEBUG so per-frame stream tracing is visible when tailing logs
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.DEBUG),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
