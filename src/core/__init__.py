"""
Shared infrastructure: structured logging and PostgreSQL connection handling.
"""

from .database import PostgresConnection
from .logger import json_logs_enabled, level_from_env, setup_logging

__all__ = ["PostgresConnection", "json_logs_enabled", "level_from_env", "setup_logging"]
