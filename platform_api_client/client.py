import asyncio
import json
import os
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import aiohttp
from loguru import logger
from pydantic import ValidationError

from platform_api_client.auth import Token, load_token
from platform_api_client.config import Settings
from platform_api_client.errors import APIError
from platform_api_client.jobs import wait_for_job
from platform_api_client.models import (
    AnalyticType,
    Job,
    JobRequest,
    JobState,
    WaitConfig,
)
from platform_api_client.query import AnalyticsQuery, DataQuery, JobsQuery
from platform_api_client.utils import ensure_base_dir, parse_date

DateLike = Union[datetime, str]

DOWNLOAD_CHUNK_SIZE = 64 * 1024


class PlatformClient:
    """Async session with the analytics platform API.

    A single aiohttp session is opened lazily and reused for every request;
    use the client as an async context manager or call ``close()`` when done.
    """

    def __init__(
        self,
        token: Token,
        wait_config: Optional[WaitConfig] = None,
        request_timeout: float = 60.0,
        on_job_state_change: Optional[Callable[[Job], Awaitable[Any]]] = None,
    ):
        self.token = token
        self.base_url = f"{token.base_api_url.rstrip('/')}/v1"
        self.wait_config = wait_config or WaitConfig()
        self.request_timeout = request_timeout
        self.on_job_state_change = on_job_state_change
        self.logger = logger
        self._header = token.get_header()
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_json(cls, token_path: str, **kwargs) -> "PlatformClient":
        return cls(load_token(token_path), **kwargs)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "PlatformClient":
        settings = settings or Settings()
        kwargs.setdefault(
            "wait_config",
            WaitConfig(poll_interval=settings.poll_interval, max_wait=settings.max_wait),
        )
        kwargs.setdefault("request_timeout", settings.request_timeout)
        return cls(load_token(settings=settings), **kwargs)

    async def __aenter__(self) -> "PlatformClient":
        self._get_session()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
        return self._session

    def _url(self, *parts: Any) -> str:
        return "/".join([self.base_url, *(str(part).strip("/") for part in parts)])

    async def _raise_for_status(self, response: aiohttp.ClientResponse, url: str) -> None:
        if response.status < 300:
            return
        error = APIError.from_response(response.status, await response.read())
        self.logger.error(f"HTTP error {response.status} at {url}: {error.message}")
        raise error

    async def _request(
        self,
        method: str,
        *parts: Any,
        params: Any = None,
        json_body: Any = None,
        data: Any = None,
    ) -> Any:
        """Performs a request and returns the decoded JSON body, if any"""
        url = self._url(*parts)
        session = self._get_session()
        try:
            async with session.request(
                method, url, headers=self._header, params=params, json=json_body, data=data
            ) as response:
                await self._raise_for_status(response, url)
                body = await response.read()
        except aiohttp.ClientError as e:
            self.logger.error(f"{method} {url} failed: {e}")
            raise

        if not body:
            return None
        return json.loads(body)

    async def _download(self, output_path: str, *parts: Any) -> str:
        url = self._url(*parts)
        session = self._get_session()
        try:
            async with session.get(url, headers=self._header) as response:
                await self._raise_for_status(response, url)
                ensure_base_dir(output_path)
                try:
                    with open(output_path, "wb") as f:
                        async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                            f.write(chunk)
                except (aiohttp.ClientError, asyncio.CancelledError, OSError):
                    # a partial download is never left on disk
                    if os.path.exists(output_path):
                        os.remove(output_path)
                    raise
        except aiohttp.ClientError as e:
            self.logger.error(f"Download from {url} failed: {e}")
            raise

        self.logger.debug(f"Downloaded {url} to {output_path}")
        return output_path

    def _parse_job(self, payload: Any) -> Job:
        try:
            return Job.model_validate(payload)
        except ValidationError as e:
            self.logger.error(f"Invalid job payload: {e}")
            raise APIError(f"Invalid job payload: {e}") from e

    async def _upload_file(
        self,
        path: str,
        *parts: Any,
        fields: Optional[Dict[str, str]] = None,
        params: Any = None,
    ) -> Any:
        with open(path, "rb") as f:
            form = aiohttp.FormData()
            form.add_field("file", f, filename=os.path.basename(path))
            for name, value in (fields or {}).items():
                form.add_field(name, value)
            return await self._request("POST", *parts, data=form, params=params)

    @staticmethod
    def _ttl_fields(days: Optional[int], expiration_date: Optional[DateLike]) -> Dict[str, str]:
        fields = {}
        if days:
            fields["days"] = str(days)
        if expiration_date:
            fields["expiration_date"] = parse_date(expiration_date)
        if len(fields) != 1:
            raise ValueError("Exactly one of `days` or `expiration_date` must be provided")
        return fields

    async def _batch_request(
        self, kind: str, action: str, ids: Sequence[str], params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Dict[str, Any]]:
        body = {**(params or {}), "action": action, "ids": list(ids)}
        responses = (await self._request("POST", kind, "batch", json_body=body))["responses"]
        for status in responses.values():
            status["success"] = not status.get("error")
        return responses

    # Analytics

    async def list_analytics(self, all_versions: bool = False) -> List[Dict[str, Any]]:
        params = {"all_versions": "true" if all_versions else "false"}
        return (await self._request("GET", "analytics", "list", params=params))["analytics"]

    async def query_analytics(self, analytics_query: AnalyticsQuery) -> Dict[str, Any]:
        return await self._request("GET", "analytics", params=analytics_query.to_params())

    async def get_analytic_details(self, analytic_id: str) -> Dict[str, Any]:
        return (await self._request("GET", "analytics", analytic_id))["analytic"]

    async def get_analytic_doc(self, analytic_id: str) -> Dict[str, Any]:
        return await self._request("GET", "analytics", analytic_id, "doc")

    async def upload_analytic(
        self, doc_json_path: str, analytic_type: Optional[AnalyticType] = None
    ) -> Dict[str, Any]:
        fields = {}
        if analytic_type:
            fields["analytic_type"] = AnalyticType(analytic_type).value
        body = await self._upload_file(doc_json_path, "analytics", fields=fields)
        return body["analytic"]

    async def upload_analytic_image(
        self, analytic_id: str, image_tar_path: str, image_type: str
    ) -> None:
        """Uploads a docker image (.tar, .tar.gz or .tar.bz) of type 'cpu' or 'gpu'"""
        await self._upload_file(
            image_tar_path,
            "analytics",
            analytic_id,
            "images",
            params={"type": image_type.lower()},
        )

    async def delete_analytic(self, analytic_id: str) -> None:
        await self._request("DELETE", "analytics", analytic_id)

    # Data

    async def list_data(self) -> List[Dict[str, Any]]:
        return (await self._request("GET", "data", "list"))["data"]

    async def query_data(self, data_query: DataQuery) -> Dict[str, Any]:
        return await self._request("GET", "data", params=data_query.to_params())

    async def upload_data(self, path: str, ttl: Optional[DateLike] = None) -> Dict[str, Any]:
        fields = {"data_ttl": parse_date(ttl)} if ttl else None
        return (await self._upload_file(path, "data", fields=fields))["data"]

    async def post_data_as_url(
        self,
        url: str,
        filename: str,
        mime_type: str,
        size: int,
        ttl: DateLike,
        encoding: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Registers data that lives at a signed URL instead of uploading it"""
        body = {
            "signed_url": url,
            "filename": filename,
            "mimetype": mime_type,
            "size": int(size),
            "data_ttl": parse_date(ttl),
        }
        if encoding:
            body["encoding"] = encoding
        return (await self._request("POST", "data", "url", json_body=body))["data"]

    async def get_data_details(self, data_id: str) -> Dict[str, Any]:
        return (await self._request("GET", "data", data_id))["data"]

    async def download_data(self, data_id: str, output_path: Optional[str] = None) -> str:
        if not output_path:
            output_path = (await self.get_data_details(data_id))["name"]
        return await self._download(output_path, "data", data_id, "download")

    async def get_data_download_url(self, data_id: str) -> str:
        return (await self._request("GET", "data", data_id, "download-url"))["url"]

    async def update_data_ttl(
        self,
        data_id: str,
        days: Optional[int] = None,
        expiration_date: Optional[DateLike] = None,
    ) -> None:
        fields = self._ttl_fields(days, expiration_date)
        await self._request("PUT", "data", data_id, "ttl", data=fields)

    async def delete_data(self, data_id: str) -> None:
        await self._request("DELETE", "data", data_id)

    async def batch_update_data_ttl(
        self,
        data_ids: Sequence[str],
        days: Optional[int] = None,
        expiration_date: Optional[DateLike] = None,
    ) -> Dict[str, Dict[str, Any]]:
        fields = self._ttl_fields(days, expiration_date)
        return await self._batch_request("data", "ttl", data_ids, fields)

    async def batch_delete_data(self, data_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        return await self._batch_request("data", "delete", data_ids)

    # Jobs

    async def list_jobs(self) -> List[Dict[str, Any]]:
        return (await self._request("GET", "jobs", "list"))["jobs"]

    async def query_jobs(self, jobs_query: JobsQuery) -> Dict[str, Any]:
        return await self._request("GET", "jobs", params=jobs_query.to_params())

    async def upload_job_request(
        self,
        job_request: JobRequest,
        job_name: str,
        auto_start: bool = False,
        ttl: Optional[DateLike] = None,
    ) -> Job:
        form = aiohttp.FormData()
        form.add_field(
            "file", job_request.to_str(), filename="job.json", content_type="application/json"
        )
        form.add_field("job_name", job_name)
        form.add_field("auto_start", "true" if auto_start else "false")
        if ttl:
            form.add_field("job_ttl", parse_date(ttl))
        body = await self._request("POST", "jobs", data=form)
        job = self._parse_job(body["job"])
        self.logger.info(f"Uploaded job request '{job_name}' as job {job.id}")
        return job

    async def get_job_details(self, job_id: str) -> Job:
        body = await self._request("GET", "jobs", job_id)
        return self._parse_job(body["job"])

    async def get_job_request(self, job_id: str) -> JobRequest:
        return JobRequest.from_dict(await self._request("GET", "jobs", job_id, "request"))

    async def start_job(self, job_id: str) -> None:
        await self._request("PUT", "jobs", job_id, "start")

    async def update_job_ttl(
        self,
        job_id: str,
        days: Optional[int] = None,
        expiration_date: Optional[DateLike] = None,
    ) -> None:
        fields = self._ttl_fields(days, expiration_date)
        await self._request("PUT", "jobs", job_id, "ttl", data=fields)

    async def archive_job(self, job_id: str) -> None:
        await self._request("PUT", "jobs", job_id, "archive")

    async def unarchive_job(self, job_id: str) -> None:
        await self._request("PUT", "jobs", job_id, "unarchive")

    async def get_job_state(
        self, job_id: Optional[str] = None, job: Optional[Job] = None
    ) -> JobState:
        """Returns the state of a job, fetching it if only the ID is given"""
        if job_id:
            return (await self.get_job_details(job_id)).state
        if job is not None:
            return job.state
        raise ValueError("Either `job_id` or `job` must be provided")

    async def is_job_complete(
        self, job_id: Optional[str] = None, job: Optional[Job] = None
    ) -> bool:
        """Whether the job is complete. Raises JobExecutionError if it has failed"""
        if job_id:
            job = await self.get_job_details(job_id)
        if job is None:
            raise ValueError("Either `job_id` or `job` must be provided")
        job.raise_for_failure()
        return job.is_complete

    async def wait_until_job_completes(
        self,
        job_id: str,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ) -> None:
        """Polls the job until it completes.

        Raises:
            JobExecutionError: if the job fails
            APITimeoutError: if the job is still pending after ``max_wait`` seconds
            APIError: if a status request is rejected or returns an invalid job
        """
        await wait_for_job(
            self.get_job_details,
            job_id,
            poll_interval if poll_interval is not None else self.wait_config.poll_interval,
            max_wait if max_wait is not None else self.wait_config.max_wait,
            on_state_change=self.on_job_state_change,
        )

    async def is_job_expired(
        self, job_id: Optional[str] = None, job: Optional[Job] = None
    ) -> bool:
        if job_id:
            job = await self.get_job_details(job_id)
        if job is None:
            raise ValueError("Either `job_id` or `job` must be provided")
        return job.is_expired()

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        return await self._request("GET", "jobs", job_id, "status")

    async def download_job_output(self, job_id: str, output_path: Optional[str] = None) -> str:
        if not output_path:
            job = await self.get_job_details(job_id)
            output_path = job.output_filename or f"{job_id}-output"
        return await self._download(output_path, "jobs", job_id, "output")

    async def get_job_output_download_url(self, job_id: str) -> str:
        return (await self._request("GET", "jobs", job_id, "output-url"))["url"]

    async def download_job_logfile(self, job_id: str, output_path: Optional[str] = None) -> str:
        return await self._download(output_path or f"{job_id}.log", "jobs", job_id, "log")

    async def get_job_logfile_download_url(self, job_id: str) -> str:
        return (await self._request("GET", "jobs", job_id, "log-url"))["url"]

    async def delete_job(self, job_id: str) -> None:
        await self._request("DELETE", "jobs", job_id)

    async def kill_job(self, job_id: str) -> None:
        await self._request("PUT", "jobs", job_id, "kill")

    async def batch_start_jobs(self, job_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        return await self._batch_request("jobs", "start", job_ids)

    async def batch_archive_jobs(self, job_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        return await self._batch_request("jobs", "archive", job_ids)

    async def batch_unarchive_jobs(self, job_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        return await self._batch_request("jobs", "unarchive", job_ids)

    async def batch_update_jobs_ttl(
        self,
        job_ids: Sequence[str],
        days: Optional[int] = None,
        expiration_date: Optional[DateLike] = None,
    ) -> Dict[str, Dict[str, Any]]:
        fields = self._ttl_fields(days, expiration_date)
        return await self._batch_request("jobs", "ttl", job_ids, fields)

    async def batch_delete_jobs(self, job_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        return await self._batch_request("jobs", "delete", job_ids)

    async def batch_kill_jobs(self, job_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        return await self._batch_request("jobs", "kill", job_ids)

    # Status

    async def get_platform_status(self) -> Dict[str, Any]:
        return (await self._request("GET", "status", "all"))["statuses"]
