from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from psycopg import OperationalError
from psycopg_pool import PoolTimeout
from redis.exceptions import RedisError


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


# Failures that mean "dependency down" rather than "bad request"
TRANSIENT_STORE_ERRORS = (
    OperationalError,
    PoolTimeout,
    RedisError,
    OSError,
    asyncio.TimeoutError,
)


__all__ = ["ConstraintViolation", "TRANSIENT_STORE_ERRORS"]
