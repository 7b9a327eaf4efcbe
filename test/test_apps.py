import pytest
from platform_api_client.apps import ApplicationClient
from platform_api_client.errors import APIError


@pytest.mark.asyncio
async def test_create_and_list_users(server, app_token_factory):
    server_instance, port = server

    async with ApplicationClient(app_token_factory(port)) as app_client:
        await app_client.create_user("alice")
        await app_client.create_user("bob")
        users = await app_client.list_users()

        with pytest.raises(APIError) as exc_info:
            await app_client.create_user("alice")

    assert users == ["alice", "bob"]
    assert exc_info.value.code == 409
    assert server_instance.requests[-1].headers["x-voxel51-application"] == (
        server_instance.private_key
    )


@pytest.mark.asyncio
async def test_acting_as_user_sets_user_header(server, app_token_factory):
    server_instance, port = server
    server_instance.script_job_states("job-1", ["COMPLETE"])

    async with ApplicationClient(app_token_factory(port)) as app_client:
        with app_client.as_user("alice"):
            assert app_client.active_user == "alice"
            await app_client.wait_until_job_completes("job-1", poll_interval=0.01, max_wait=1.0)
            user_header = server_instance.requests[-1].headers.get("x-voxel51-application-user")

        assert app_client.active_user is None
        await app_client.get_platform_status()

    assert user_header == "alice"
    assert "x-voxel51-application-user" not in server_instance.requests[-1].headers


def test_with_user_and_exit_user(app_token_factory):
    app_client = ApplicationClient(app_token_factory(8080))

    app_client.with_user("carol")
    assert app_client._header["x-voxel51-application-user"] == "carol"

    app_client.exit_user()
    assert app_client.active_user is None
    assert "x-voxel51-application-user" not in app_client._header
