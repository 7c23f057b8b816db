"""Decorator utilities for cross-cutting concerns."""
import functools
import logging
import time
from typing import Any, Callable, TypeVar, cast

# Setup logging
logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


def log_command_duration(command: str) -> Callable[[F], F]:
    """Decorator to log how long a finder command took and how it ended.

    Args:
        command: Command name as it appears in the `q` query parameter

    Returns:
        Decorator for an async command handler taking a `CommandContext` first
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(ctx, *args, **kwargs):
            start_time = time.time()
            try:
                result = await func(ctx, *args, **kwargs)
                duration = time.time() - start_time
                logger.info(f"{command} on {ctx.directory} completed in {duration:.2f}s")
                return result
            except Exception as e:
                duration = time.time() - start_time
                logger.warning(f"{command} on {ctx.directory} failed after {duration:.2f}s: {str(e)}")
                raise
        return cast(F, wrapper)
    return decorator
