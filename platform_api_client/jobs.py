from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from platform_api_client.models import Job, JobState
from platform_api_client.polling import wait_for_condition


async def wait_for_job(
    fetch_job: Callable[[str], Awaitable[Job]],
    job_id: str,
    poll_interval: float = 5.0,
    max_wait: float = 600.0,
    on_state_change: Optional[Callable[[Job], Awaitable[Any]]] = None,
) -> None:
    """Waits until the given job completes.

    ``fetch_job`` is called once per tick to get a fresh snapshot of the job.
    A FAILED job raises JobExecutionError straight away, regardless of the
    remaining budget. Errors from ``fetch_job`` are not retried.
    """
    if not job_id:
        raise ValueError("job_id must not be empty")

    last_state: Optional[JobState] = None

    async def is_complete(job_id: str) -> bool:
        nonlocal last_state
        job = await fetch_job(job_id)
        if job.state != last_state:
            logger.debug(f"Job {job_id} state changed to {job.state.value}")
            last_state = job.state
            if on_state_change is not None:
                await on_state_change(job)

        job.raise_for_failure()
        return job.is_complete

    await wait_for_condition(is_complete, [job_id], poll_interval, max_wait)
    logger.info(f"Job {job_id} completed")
