"""Helpers shared by services that talk to the durable store.

Store implementations are synchronous; services run them on a worker
thread with an upper bound so a stalled database cannot hang a request.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from authcore.logging import get_logger
from authcore.service.errors import DependencyUnavailableError
from authcore.storage.errors import TRANSIENT_STORE_ERRORS

logger = get_logger(__name__)


async def run_store_call(
    func: Callable[..., Any],
    *args: Any,
    timeout: float,
    component: str = "store",
    **kwargs: Any,
) -> Any:
    """Run ``func`` off the event loop, mapping outages to ``DependencyUnavailableError``."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except TRANSIENT_STORE_ERRORS as exc:
        logger.error(
            f"{component}_unavailable",
            operation=getattr(func, "__name__", "call"),
            error=str(exc) or type(exc).__name__,
        )
        raise DependencyUnavailableError(f"{component.replace('_', ' ').capitalize()} unavailable") from exc
