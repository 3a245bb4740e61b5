"""
Structured logging for Backend Dustwatch.

JSON logs with timestamp, event_type and address context.
Use get_logger() in every module for aggregation-friendly output.
"""

from backend_dustwatch.dustwatch_logging.logger import bind_address, get_logger

__all__ = ["bind_address", "get_logger"]
