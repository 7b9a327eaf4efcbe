import asyncio

from platform_api_client.auth import AccessToken, Token
from platform_api_client.client import PlatformClient
from platform_api_client.errors import JobExecutionError
from platform_api_client.models import JobRequest, RemoteDataPath, WaitConfig
from platform_server import TEST_PRIVATE_KEY, PlatformServer


async def state_changed(job):
    print(f"Job {job.id} is now {job.state.value}")


async def main():
    PORT = 8000
    server = PlatformServer()
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    token = Token(
        access_token=AccessToken(token_id="example", private_key=TEST_PRIVATE_KEY),
        base_api_url=f"http://localhost:{PORT}",
    )
    config = WaitConfig(poll_interval=1.0, max_wait=30.0)

    async with PlatformClient(
        token, wait_config=config, on_job_state_change=state_changed
    ) as client:
        data_id = server.add_data("video.mp4", b"frames")
        job_request = JobRequest(analytic="vehicle-sense")
        job_request.set_input("video", RemoteDataPath.from_data_id(data_id))
        job_request.set_parameter("fps", 5)

        job = await client.upload_job_request(job_request, "example-job", auto_start=True)
        server.script_job_states(job.id, ["QUEUED", "SCHEDULED", "RUNNING", "RUNNING", "COMPLETE"])

        try:
            await client.wait_until_job_completes(job.id)
            output_path = await client.download_job_output(job.id, "output.zip")
            print(f"Job output written to {output_path}")
        except TimeoutError as e:
            print(f"Polling timed out: {e}")
        except JobExecutionError as e:
            print(f"Job failed: {e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
