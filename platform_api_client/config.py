from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BASE_API_URL = "https://api.voxel51.com"
API_TOKEN_FILENAME = "api-token.json"
APP_TOKEN_FILENAME = "app-token.json"


class Settings(BaseSettings):
    """Client settings, read from ``VOXEL51_*`` environment variables.

    Only the explicit constructors (``PlatformClient.from_settings`` and the
    token helpers in ``auth``) consult these; nothing reads them implicitly.
    """

    api_token: Optional[Path] = None
    app_token: Optional[Path] = None
    token_dir: Path = Path.home() / ".voxel51"
    poll_interval: float = 5.0
    max_wait: float = 600.0
    request_timeout: float = 60.0

    model_config = SettingsConfigDict(env_prefix="VOXEL51_", extra="ignore")

    @property
    def default_api_token_path(self) -> Path:
        return self.token_dir / API_TOKEN_FILENAME

    @property
    def default_app_token_path(self) -> Path:
        return self.token_dir / APP_TOKEN_FILENAME
