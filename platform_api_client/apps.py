from contextlib import contextmanager
from typing import Iterator, List, Optional

from platform_api_client.auth import ApplicationToken, load_application_token
from platform_api_client.client import PlatformClient
from platform_api_client.config import Settings
from platform_api_client.models import WaitConfig


class ApplicationClient(PlatformClient):
    """Platform session authenticated as an application.

    Every PlatformClient method is available; to act on behalf of one of the
    application's users, activate the user first with ``with_user`` (or the
    ``as_user`` context manager).
    """

    token: ApplicationToken

    def __init__(self, token: ApplicationToken, **kwargs):
        super().__init__(token, **kwargs)
        self.active_user: Optional[str] = None

    @classmethod
    def from_json(cls, token_path: str, **kwargs) -> "ApplicationClient":
        return cls(load_application_token(token_path), **kwargs)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "ApplicationClient":
        settings = settings or Settings()
        kwargs.setdefault(
            "wait_config",
            WaitConfig(poll_interval=settings.poll_interval, max_wait=settings.max_wait),
        )
        kwargs.setdefault("request_timeout", settings.request_timeout)
        return cls(load_application_token(settings=settings), **kwargs)

    def with_user(self, username: str) -> None:
        self.active_user = username
        self._header = self.token.get_header(username)
        self.logger.debug(f"Acting as application user '{username}'")

    def exit_user(self) -> None:
        self.active_user = None
        self._header = self.token.get_header()

    @contextmanager
    def as_user(self, username: str) -> Iterator["ApplicationClient"]:
        previous = self.active_user
        self.with_user(username)
        try:
            yield self
        finally:
            if previous is None:
                self.exit_user()
            else:
                self.with_user(previous)

    async def create_user(self, username: str) -> None:
        await self._request("POST", "apps", "users", json_body={"username": username})
        self.logger.info(f"Created application user '{username}'")

    async def list_users(self) -> List[str]:
        return (await self._request("GET", "apps", "users", "list"))["users"]
