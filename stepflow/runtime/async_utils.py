"""
async_utils.py - Helpers for calling hooks that may or may not be async.

Step authors supply plain functions or coroutine functions for conditions,
lifecycle hooks, persistence handlers and listeners. The engine awaits the
result only when one is returned.
"""

from __future__ import annotations

import inspect
from typing import Any, Callable


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


async def call_hook(hook: Callable[..., Any], *args: Any) -> Any:
    """Invoke a sync or async hook and return its (awaited) result."""
    return await maybe_await(hook(*args))
