import asyncio
import json
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from aiohttp import web
from loguru import logger

TEST_PRIVATE_KEY = "test-private-key"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": {"code": status, "message": message}}, status=status)


class PlatformServer:
    """In-memory stand-in for the platform API.

    Job states can be scripted per job with ``script_job_states``; each
    ``GET /v1/jobs/{id}`` advances the script by one step and the last state
    sticks. Fetches are counted and concurrent fetches of the same job are
    tracked in ``max_in_flight``.
    """

    def __init__(self, private_key: str = TEST_PRIVATE_KEY, latency: float = 0.0):
        self.private_key = private_key
        self.latency = latency
        self.analytics: Dict[str, dict] = {}
        self.data: Dict[str, dict] = {}
        self.data_contents: Dict[str, bytes] = {}
        self.jobs: Dict[str, dict] = {}
        self.job_requests: Dict[str, dict] = {}
        self.job_outputs: Dict[str, bytes] = {}
        self.job_scripts: Dict[str, List[str]] = {}
        self.job_errors: Dict[str, int] = {}
        self.truncated_outputs: Set[str] = set()
        self.users: List[str] = []
        self.requests: List[web.Request] = []
        self.fetch_counts: Counter = Counter()
        self.in_flight: Counter = Counter()
        self.max_in_flight: Counter = Counter()
        self.runner: Optional[web.AppRunner] = None
        self.logger = logger

        self.app = web.Application(middlewares=[self.auth_middleware])
        self.app.router.add_get("/v1/analytics/list", self.handle_list_analytics)
        self.app.router.add_get("/v1/analytics", self.handle_query_analytics)
        self.app.router.add_post("/v1/analytics", self.handle_upload_analytic)
        self.app.router.add_get("/v1/analytics/{analytic_id}", self.handle_get_analytic)
        self.app.router.add_get("/v1/analytics/{analytic_id}/doc", self.handle_get_analytic_doc)
        self.app.router.add_post("/v1/analytics/{analytic_id}/images", self.handle_upload_image)
        self.app.router.add_delete("/v1/analytics/{analytic_id}", self.handle_delete_analytic)

        self.app.router.add_get("/v1/data/list", self.handle_list_data)
        self.app.router.add_get("/v1/data", self.handle_query_data)
        self.app.router.add_post("/v1/data", self.handle_upload_data)
        self.app.router.add_post("/v1/data/url", self.handle_post_data_url)
        self.app.router.add_post("/v1/data/batch", self.handle_batch_data)
        self.app.router.add_get("/v1/data/{data_id}", self.handle_get_data)
        self.app.router.add_get("/v1/data/{data_id}/download", self.handle_download_data)
        self.app.router.add_get("/v1/data/{data_id}/download-url", self.handle_data_url)
        self.app.router.add_put("/v1/data/{data_id}/ttl", self.handle_data_ttl)
        self.app.router.add_delete("/v1/data/{data_id}", self.handle_delete_data)

        self.app.router.add_get("/v1/jobs/list", self.handle_list_jobs)
        self.app.router.add_get("/v1/jobs", self.handle_query_jobs)
        self.app.router.add_post("/v1/jobs", self.handle_upload_job)
        self.app.router.add_post("/v1/jobs/batch", self.handle_batch_jobs)
        self.app.router.add_get("/v1/jobs/{job_id}", self.handle_get_job)
        self.app.router.add_get("/v1/jobs/{job_id}/request", self.handle_get_job_request)
        self.app.router.add_get("/v1/jobs/{job_id}/status", self.handle_get_job_status)
        self.app.router.add_get("/v1/jobs/{job_id}/output", self.handle_download_output)
        self.app.router.add_get("/v1/jobs/{job_id}/output-url", self.handle_output_url)
        self.app.router.add_get("/v1/jobs/{job_id}/log", self.handle_download_log)
        self.app.router.add_get("/v1/jobs/{job_id}/log-url", self.handle_log_url)
        self.app.router.add_put("/v1/jobs/{job_id}/{action}", self.handle_job_action)
        self.app.router.add_delete("/v1/jobs/{job_id}", self.handle_delete_job)

        self.app.router.add_get("/v1/status/all", self.handle_platform_status)
        self.app.router.add_post("/v1/apps/users", self.handle_create_user)
        self.app.router.add_get("/v1/apps/users/list", self.handle_list_users)

    # Test helpers

    def add_job(self, state: str = "READY", **fields) -> str:
        job_id = fields.pop("id", None) or str(uuid.uuid4())
        self.jobs[job_id] = {
            "id": job_id,
            "name": fields.pop("name", job_id),
            "state": state,
            "archived": False,
            "upload_date": _now(),
            "failure_type": None,
            **fields,
        }
        return job_id

    def script_job_states(self, job_id: str, states: List[str], failure_type: str = "ANALYTIC"):
        if job_id not in self.jobs:
            self.add_job(id=job_id)
        self.jobs[job_id]["scripted_failure_type"] = failure_type
        self.job_scripts[job_id] = list(states)

    def add_analytic(self, name: str, **fields) -> str:
        analytic_id = str(uuid.uuid4())
        self.analytics[analytic_id] = {"id": analytic_id, "name": name, **fields}
        return analytic_id

    def add_data(self, name: str, content: bytes = b"data") -> str:
        data_id = str(uuid.uuid4())
        self.data[data_id] = {
            "id": data_id,
            "name": name,
            "size": len(content),
            "upload_date": _now(),
            "expiration_date": None,
        }
        self.data_contents[data_id] = content
        return data_id

    # Server

    @web.middleware
    async def auth_middleware(self, request: web.Request, handler):
        self.requests.append(request)
        header = request.headers.get("Authorization", "")
        app_key = request.headers.get("x-voxel51-application")
        if header != f"Bearer {self.private_key}" and app_key != self.private_key:
            self.logger.info(f"Rejecting unauthenticated request to {request.path}")
            return _error(401, "Invalid token")
        return await handler(request)

    async def handle_list_analytics(self, request):
        return web.json_response({"analytics": list(self.analytics.values())})

    async def handle_query_analytics(self, request):
        return web.json_response(
            {
                "analytics": list(self.analytics.values()),
                "count": len(self.analytics),
                "query": list(request.query.items()),
            }
        )

    async def handle_upload_analytic(self, request):
        form = await request.post()
        doc = json.loads(form["file"].file.read())
        analytic_id = self.add_analytic(
            doc.get("name", "analytic"), analytic_type=form.get("analytic_type", "PLATFORM")
        )
        self.analytics[analytic_id]["doc"] = doc
        return web.json_response({"analytic": self.analytics[analytic_id]})

    async def handle_get_analytic(self, request):
        analytic = self.analytics.get(request.match_info["analytic_id"])
        if analytic is None:
            return _error(404, "Analytic not found")
        return web.json_response({"analytic": analytic})

    async def handle_get_analytic_doc(self, request):
        analytic = self.analytics.get(request.match_info["analytic_id"])
        if analytic is None:
            return _error(404, "Analytic not found")
        return web.json_response(analytic.get("doc", {"name": analytic["name"]}))

    async def handle_upload_image(self, request):
        analytic = self.analytics.get(request.match_info["analytic_id"])
        if analytic is None:
            return _error(404, "Analytic not found")
        form = await request.post()
        analytic.setdefault("images", []).append(
            {"type": request.query.get("type"), "filename": form["file"].filename}
        )
        return web.json_response({})

    async def handle_delete_analytic(self, request):
        if self.analytics.pop(request.match_info["analytic_id"], None) is None:
            return _error(404, "Analytic not found")
        return web.Response(status=204)

    async def handle_list_data(self, request):
        return web.json_response({"data": list(self.data.values())})

    async def handle_query_data(self, request):
        return web.json_response(
            {
                "data": list(self.data.values()),
                "count": len(self.data),
                "query": list(request.query.items()),
            }
        )

    async def handle_upload_data(self, request):
        form = await request.post()
        field = form["file"]
        data_id = self.add_data(field.filename, field.file.read())
        self.data[data_id]["expiration_date"] = form.get("data_ttl")
        return web.json_response({"data": self.data[data_id]})

    async def handle_post_data_url(self, request):
        body = await request.json()
        data_id = str(uuid.uuid4())
        self.data[data_id] = {
            "id": data_id,
            "name": body["filename"],
            "size": body["size"],
            "type": body["mimetype"],
            "expiration_date": body["data_ttl"],
            "encoding": body.get("encoding"),
        }
        return web.json_response({"data": self.data[data_id]})

    async def handle_get_data(self, request):
        data = self.data.get(request.match_info["data_id"])
        if data is None:
            return _error(404, "Data not found")
        return web.json_response({"data": data})

    async def handle_download_data(self, request):
        data_id = request.match_info["data_id"]
        if data_id not in self.data:
            return _error(404, "Data not found")
        return web.Response(body=self.data_contents[data_id])

    async def handle_data_url(self, request):
        data_id = request.match_info["data_id"]
        if data_id not in self.data:
            return _error(404, "Data not found")
        return web.json_response({"url": f"https://storage.test/data/{data_id}"})

    async def handle_data_ttl(self, request):
        data = self.data.get(request.match_info["data_id"])
        if data is None:
            return _error(404, "Data not found")
        form = await request.post()
        data["expiration_date"] = form.get("expiration_date") or f"+{form.get('days')}d"
        return web.json_response({})

    async def handle_delete_data(self, request):
        if self.data.pop(request.match_info["data_id"], None) is None:
            return _error(404, "Data not found")
        return web.Response(status=204)

    async def handle_batch_data(self, request):
        return await self._handle_batch(request, self.data)

    async def handle_list_jobs(self, request):
        return web.json_response({"jobs": list(self.jobs.values())})

    async def handle_query_jobs(self, request):
        return web.json_response(
            {
                "jobs": list(self.jobs.values()),
                "count": len(self.jobs),
                "query": list(request.query.items()),
            }
        )

    async def handle_upload_job(self, request):
        form = await request.post()
        job_request = json.loads(form["file"].file.read())
        auto_start = form.get("auto_start") == "true"
        job_id = self.add_job(
            state="QUEUED" if auto_start else "READY",
            name=form["job_name"],
            analytic_id=job_request["analytic"],
            auto_start=auto_start,
            expiration_date=form.get("job_ttl"),
        )
        self.job_requests[job_id] = job_request
        return web.json_response({"job": self.jobs[job_id]})

    async def handle_get_job(self, request):
        job_id = request.match_info["job_id"]
        job = self.jobs.get(job_id)
        if job is None:
            return _error(404, "Job not found")

        self.fetch_counts[job_id] += 1
        self.in_flight[job_id] += 1
        self.max_in_flight[job_id] = max(self.max_in_flight[job_id], self.in_flight[job_id])
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            if job_id in self.job_errors:
                return _error(self.job_errors[job_id], "Internal server error")
            self._advance_job(job)
        finally:
            self.in_flight[job_id] -= 1

        self.logger.info(f"Returning state {job['state']} for job {job_id}")
        return web.json_response(
            {"job": {k: v for k, v in job.items() if k != "scripted_failure_type"}}
        )

    def _advance_job(self, job: dict) -> None:
        script = self.job_scripts.get(job["id"])
        if not script:
            return
        job["state"] = script.pop(0) if len(script) > 1 else script[0]
        if job["state"] == "FAILED":
            job["failure_type"] = job.get("scripted_failure_type")
            job["fail_date"] = _now()
        elif job["state"] == "COMPLETE":
            job["completion_date"] = _now()
            job.setdefault("output_filename", f"{job['id']}-output.zip")

    async def handle_get_job_request(self, request):
        job_request = self.job_requests.get(request.match_info["job_id"])
        if job_request is None:
            return _error(404, "Job not found")
        return web.json_response(job_request)

    async def handle_get_job_status(self, request):
        job = self.jobs.get(request.match_info["job_id"])
        if job is None:
            return _error(404, "Job not found")
        return web.json_response({"state": job["state"], "status": {"messages": []}})

    async def handle_download_output(self, request):
        job_id = request.match_info["job_id"]
        if job_id not in self.jobs:
            return _error(404, "Job not found")
        body = self.job_outputs.get(job_id, b"output")
        if job_id in self.truncated_outputs:
            # advertise the full body, send half of it, then drop the connection
            response = web.StreamResponse()
            response.content_length = len(body)
            await response.prepare(request)
            await response.write(body[: len(body) // 2])
            request.transport.close()
            return response
        return web.Response(body=body)

    async def handle_output_url(self, request):
        return web.json_response(
            {"url": f"https://storage.test/jobs/{request.match_info['job_id']}/output"}
        )

    async def handle_download_log(self, request):
        job_id = request.match_info["job_id"]
        if job_id not in self.jobs:
            return _error(404, "Job not found")
        return web.Response(text=f"log for {job_id}\n")

    async def handle_log_url(self, request):
        return web.json_response(
            {"url": f"https://storage.test/jobs/{request.match_info['job_id']}/log"}
        )

    async def handle_job_action(self, request):
        job = self.jobs.get(request.match_info["job_id"])
        if job is None:
            return _error(404, "Job not found")
        action = request.match_info["action"]
        if action == "start":
            if job["state"] != "READY":
                return _error(400, "Job has already been started")
            job["state"] = "QUEUED"
        elif action == "kill":
            job["state"] = "FAILED"
            job["failure_type"] = "USER"
        elif action in ("archive", "unarchive"):
            job["archived"] = action == "archive"
        elif action == "ttl":
            form = await request.post()
            job["expiration_date"] = form.get("expiration_date") or f"+{form.get('days')}d"
        else:
            return _error(404, f"Unknown action '{action}'")
        return web.json_response({})

    async def handle_delete_job(self, request):
        if self.jobs.pop(request.match_info["job_id"], None) is None:
            return _error(404, "Job not found")
        return web.Response(status=204)

    async def handle_batch_jobs(self, request):
        return await self._handle_batch(request, self.jobs)

    async def _handle_batch(self, request, records: Dict[str, dict]):
        body = await request.json()
        responses = {}
        for record_id in body["ids"]:
            if record_id in records:
                responses[record_id] = {}
            else:
                responses[record_id] = {"error": {"code": 404, "message": "Not found"}}
        return web.json_response({"action": body["action"], "responses": responses})

    async def handle_platform_status(self, request):
        return web.json_response({"statuses": {"api": "OK", "compute": "OK"}})

    async def handle_create_user(self, request):
        body = await request.json()
        if body["username"] in self.users:
            return _error(409, "User already exists")
        self.users.append(body["username"])
        return web.json_response({})

    async def handle_list_users(self, request):
        return web.json_response({"users": self.users})

    async def start(self, port: int = 8080) -> web.TCPSite:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
