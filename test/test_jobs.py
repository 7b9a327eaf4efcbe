import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from platform_api_client.errors import APIError, APITimeoutError, JobExecutionError
from platform_api_client.jobs import wait_for_job
from platform_api_client.models import (
    Job,
    JobFailureType,
    JobState,
    is_failure,
    is_success,
    is_terminal,
)
from pydantic import ValidationError


class ScriptedJobs:
    """Fake job status accessor that replays a sequence of states."""

    def __init__(self, states, failure_type=None, error_on=None):
        self.states = list(states)
        self.failure_type = failure_type
        self.error_on = error_on
        self.fetches = 0

    async def __call__(self, job_id):
        self.fetches += 1
        if self.error_on == self.fetches:
            raise APIError("Internal server error", 500)
        state = self.states[min(self.fetches, len(self.states)) - 1]
        failure_type = self.failure_type if state == "FAILED" else None
        return Job(id=job_id, state=state, failure_type=failure_type)


@pytest.mark.parametrize(
    "state, terminal, success, failure",
    [
        (JobState.READY, False, False, False),
        (JobState.QUEUED, False, False, False),
        (JobState.SCHEDULED, False, False, False),
        (JobState.RUNNING, False, False, False),
        (JobState.COMPLETE, True, True, False),
        (JobState.FAILED, True, False, True),
    ],
)
def test_state_predicates(state, terminal, success, failure):
    assert is_terminal(state) is terminal
    assert is_success(state.value) is success
    assert is_failure(state) is failure


def test_job_defaults_failure_type_to_none():
    job = Job.model_validate({"id": "job-1", "state": "RUNNING", "failure_type": None})

    assert job.failure_type is JobFailureType.NONE
    assert not job.is_terminal


def test_job_keeps_unknown_fields():
    job = Job.model_validate({"id": "job-1", "state": "READY", "priority": 3})

    assert job.model_extra == {"priority": 3}


def test_failure_type_requires_failed_state():
    with pytest.raises(ValidationError):
        Job(id="job-1", state="RUNNING", failure_type="ANALYTIC")


def test_failed_job_raises_with_attribution():
    job = Job(id="job-1", state="FAILED", failure_type="PLATFORM")

    with pytest.raises(JobExecutionError, match="Job job-1 failed") as exc_info:
        job.raise_for_failure()

    assert exc_info.value.job_id == "job-1"
    assert exc_info.value.failure_type is JobFailureType.PLATFORM
    assert not job.is_complete


def test_job_execution_error_message_names_failure_type():
    assert str(JobExecutionError("job-1", JobFailureType.USER)) == (
        "Job job-1 failed (failure type: USER)"
    )
    assert str(JobExecutionError("job-1", JobFailureType.NONE)) == "Job job-1 failed"
    assert str(JobExecutionError("job-1")) == "Job job-1 failed"


def test_completed_job_does_not_raise():
    job = Job(id="job-1", state="COMPLETE")

    job.raise_for_failure()
    assert job.is_complete and job.is_terminal


def test_job_expiration():
    now = datetime(2020, 1, 1, tzinfo=timezone.utc)
    job = Job(id="job-1", state="COMPLETE", expiration_date=now + timedelta(days=1))

    assert not job.is_expired(now)
    assert job.is_expired(now + timedelta(days=2))
    assert not Job(id="job-2", state="COMPLETE").is_expired()


@pytest.mark.asyncio
async def test_wait_for_job_succeeds_after_expected_fetches():
    fetch = ScriptedJobs(["QUEUED", "QUEUED", "RUNNING", "COMPLETE"])

    result = await wait_for_job(fetch, "job-1", poll_interval=0.01, max_wait=1.0)

    assert result is None
    assert fetch.fetches == 4


@pytest.mark.asyncio
async def test_wait_for_job_fails_immediately_on_failed_state():
    fetch = ScriptedJobs(["FAILED"], failure_type="USER")
    loop = asyncio.get_event_loop()
    start = loop.time()

    with pytest.raises(JobExecutionError) as exc_info:
        await wait_for_job(fetch, "job-2", poll_interval=5.0, max_wait=600.0)

    assert exc_info.value.failure_type is JobFailureType.USER
    assert fetch.fetches == 1
    assert loop.time() - start < 1.0


@pytest.mark.asyncio
async def test_wait_for_job_failure_after_running():
    fetch = ScriptedJobs(["QUEUED", "RUNNING", "FAILED"])

    with pytest.raises(JobExecutionError):
        await wait_for_job(fetch, "job-3", poll_interval=0.01, max_wait=60.0)

    assert fetch.fetches == 3


@pytest.mark.asyncio
async def test_wait_for_job_times_out_while_pending():
    fetch = ScriptedJobs(["RUNNING"])

    with pytest.raises(APITimeoutError):
        await wait_for_job(fetch, "job-4", poll_interval=0.01, max_wait=0.05)


@pytest.mark.asyncio
async def test_wait_for_job_does_not_retry_fetch_errors():
    fetch = ScriptedJobs(["QUEUED", "RUNNING", "COMPLETE"], error_on=2)

    with pytest.raises(APIError, match="500"):
        await wait_for_job(fetch, "job-5", poll_interval=0.01, max_wait=60.0)

    assert fetch.fetches == 2


@pytest.mark.asyncio
async def test_wait_for_job_reports_state_changes_once():
    fetch = ScriptedJobs(["QUEUED", "QUEUED", "SCHEDULED", "RUNNING", "RUNNING", "COMPLETE"])
    seen = []

    async def on_state_change(job):
        seen.append(job.state)

    await wait_for_job(
        fetch, "job-6", poll_interval=0.01, max_wait=1.0, on_state_change=on_state_change
    )

    assert seen == [
        JobState.QUEUED,
        JobState.SCHEDULED,
        JobState.RUNNING,
        JobState.COMPLETE,
    ]


@pytest.mark.asyncio
async def test_wait_for_job_requires_job_id():
    with pytest.raises(ValueError):
        await wait_for_job(ScriptedJobs(["COMPLETE"]), "", poll_interval=0.01, max_wait=1.0)
