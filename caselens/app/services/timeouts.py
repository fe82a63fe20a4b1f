from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, TypeVar

from .errors import RequestTimeoutError, ServiceComponent

T = TypeVar("T")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float | None,
    *,
    component: ServiceComponent,
    operation: str,
) -> T:
    """Await ``awaitable`` within ``timeout`` seconds or raise ``RequestTimeoutError``."""

    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise RequestTimeoutError.build(
            component,
            f"{component.value.upper()}_TIMEOUT",
            f"{operation} exceeded {timeout:.3f}s",
            retryable=True,
            operation=operation,
            timeout=timeout,
        ) from exc


async def run_blocking(
    func: Callable[..., T],
    *args: Any,
    timeout: float | None,
    component: ServiceComponent,
    operation: str,
    **kwargs: Any,
) -> T:
    """Run a blocking store call in the default executor, bounded by ``timeout``."""

    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
    return await with_timeout(future, timeout, component=component, operation=operation)


__all__ = ["with_timeout", "run_blocking"]
