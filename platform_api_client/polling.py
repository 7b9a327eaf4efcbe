import asyncio
from typing import Any, Awaitable, Callable, Sequence

from loguru import logger

from platform_api_client.errors import APITimeoutError
from platform_api_client.models import WaitConfig


async def wait_for_condition(
    condition: Callable[..., Awaitable[Any]],
    args: Sequence[Any] = (),
    poll_interval: float = 5.0,
    max_wait: float = 600.0,
) -> Any:
    """Waits until an async condition returns a truthy value.

    The condition is evaluated immediately and then once every
    ``poll_interval`` seconds, never concurrently with itself. The deadline
    is only checked between evaluations, so the total wait may overrun
    ``max_wait`` by up to one evaluation plus one ``poll_interval``.

    Args:
        condition: async callable invoked as ``condition(*args)`` on each tick
        args: arguments passed to every invocation of ``condition``
        poll_interval: seconds to sleep between evaluations
        max_wait: total time budget in seconds, measured from the first
            evaluation

    Returns:
        the first truthy value returned by ``condition``

    Raises:
        APITimeoutError: if the deadline passes without a truthy result
        ValueError: if ``poll_interval``/``max_wait`` are invalid
        Exception: whatever ``condition`` raises, unchanged
    """
    config = WaitConfig(poll_interval=poll_interval, max_wait=max_wait)
    loop = asyncio.get_event_loop()
    deadline = loop.time() + config.max_wait
    attempt = 0

    while True:
        attempt += 1
        result = await condition(*args)
        if result:
            return result

        if loop.time() > deadline:
            raise APITimeoutError(
                f"Maximum wait time of {config.max_wait}s exceeded after {attempt} checks"
            )

        logger.debug(
            f"Condition not met after {attempt} checks, waiting {config.poll_interval:.2f}s"
        )
        await asyncio.sleep(config.poll_interval)
