"""Stage wrappers used by the assembler and the chat service."""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from .exceptions import StageFailure

T = TypeVar("T")


def with_stage_name(
    stage: str, fn: Callable[..., Awaitable[T]]
) -> Callable[..., Awaitable[T]]:
    """Wrap ``fn`` so any failure propagates as :class:`StageFailure`.

    Cancellation and failures that already carry a stage pass through
    untouched.
    """

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await fn(*args, **kwargs)
        except (asyncio.CancelledError, StageFailure):
            raise
        except Exception as e:
            raise StageFailure(stage, e) from e

    return wrapper


async def safe_invoke(
    stage: str,
    fn: Callable[..., Awaitable[T]],
    default: T,
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run ``fn`` and return ``default`` when it fails.

    The failure is logged as a warning tagged with ``stage``. Cancellation is
    never swallowed.
    """
    try:
        return await with_stage_name(stage, fn)(*args, **kwargs)
    except StageFailure as e:
        logger.warning(f"Stage '{e.stage}' failed, using default: {e.cause}")
        return default
