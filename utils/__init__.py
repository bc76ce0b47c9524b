"""Utility functions package"""
from .helpers import make_trace_logger, emit_log, truncate, mask_token

__all__ = ['make_trace_logger', 'emit_log', 'truncate', 'mask_token']
