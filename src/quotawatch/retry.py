from typing import Awaitable, Callable, Sequence, TypeVar

import structlog

from quotawatch.errors import NoCandidates

logger = structlog.get_logger()

C = TypeVar("C")
T = TypeVar("T")


async def run_candidates(
    candidates: "Sequence[C]",
    attempt: "Callable[[C], Awaitable[T]]",
    should_retry: "Callable[[Exception], bool]",
    on_retry: "Callable[[C, Exception], None] | None" = None,
) -> "T":
    """
    tries each candidate in order and returns the first
    successful output. A failure is handed to the next
    candidate only when one exists and should_retry() agrees,
    otherwise that failure is raised as-is.

    Only Exception subclasses are considered, so cancellation
    propagates without reaching should_retry().
    """
    if not candidates:
        raise NoCandidates()

    last_index = len(candidates) - 1
    for index, candidate in enumerate(candidates):
        try:
            return await attempt(candidate)
        except Exception as err:
            if index == last_index or not should_retry(err):
                raise
            if on_retry is not None:
                try:
                    on_retry(candidate, err)
                except Exception:
                    logger.warning("retry_hook_failed", exc_info=True)

    # unreachable: the last candidate either returns or raises
    raise NoCandidates()
