import json
import os
from pathlib import Path
from typing import Dict, Optional, Type, TypeVar, Union

from loguru import logger
from pydantic import BaseModel, ValidationError

from platform_api_client.config import DEFAULT_BASE_API_URL, Settings
from platform_api_client.errors import ApplicationTokenError, TokenError
from platform_api_client.utils import copy_file, read_json

APP_KEY_HEADER = "x-voxel51-application"
APP_USER_HEADER = "x-voxel51-application-user"

PathLike = Union[str, Path]
T = TypeVar("T", bound="Token")


class AccessToken(BaseModel):
    token_id: str
    private_key: str
    created_at: Optional[str] = None


class Token(BaseModel):
    access_token: AccessToken
    base_api_url: str = DEFAULT_BASE_API_URL

    @property
    def id(self) -> str:
        return self.access_token.token_id

    @property
    def creation_date(self) -> Optional[str]:
        return self.access_token.created_at

    def get_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token.private_key}"}

    @classmethod
    def from_json(cls: Type[T], path: PathLike) -> T:
        return cls.model_validate(read_json(path))

    def __str__(self) -> str:
        return json.dumps(self.model_dump(), indent=4)


class ApplicationToken(Token):
    def get_header(self, username: Optional[str] = None) -> Dict[str, str]:
        header = {APP_KEY_HEADER: self.access_token.private_key}
        if username:
            header[APP_USER_HEADER] = username
        return header


def _load(
    token_cls: Type[T],
    error_cls: Type[TokenError],
    token_path: Path,
    kind: str,
) -> T:
    if not token_path.is_file():
        raise error_cls(f"No {kind} found at '{token_path}'")
    try:
        return token_cls.from_json(token_path)
    except (OSError, ValueError, ValidationError) as e:
        raise error_cls(f"File '{token_path}' is not a valid {kind}") from e


def _active_path(
    configured: Optional[Path],
    default: Path,
    env_var: str,
    error_cls: Type[TokenError],
    kind: str,
) -> Path:
    if configured is not None:
        if not configured.is_file():
            raise error_cls(f"No {kind} found at '{env_var}={configured}'")
        return configured
    if default.is_file():
        return default
    raise error_cls(f"No {kind} found")


def get_active_token_path(settings: Optional[Settings] = None) -> Path:
    """Returns the path of the active API token.

    The ``VOXEL51_API_TOKEN`` setting takes precedence; otherwise the token
    activated in ``token_dir`` is used.
    """
    settings = settings or Settings()
    return _active_path(
        settings.api_token,
        settings.default_api_token_path,
        "VOXEL51_API_TOKEN",
        TokenError,
        "API token",
    )


def load_token(
    token_path: Optional[PathLike] = None, settings: Optional[Settings] = None
) -> Token:
    if token_path is None:
        token_path = get_active_token_path(settings)
    return _load(Token, TokenError, Path(token_path), "API token")


def activate_token(token_path: PathLike, settings: Optional[Settings] = None) -> Path:
    """Copies the given token into ``token_dir`` so later clients use it"""
    settings = settings or Settings()
    load_token(token_path)
    copy_file(os.fspath(token_path), os.fspath(settings.default_api_token_path))
    logger.info("API token successfully activated")
    return settings.default_api_token_path


def deactivate_token(settings: Optional[Settings] = None) -> bool:
    settings = settings or Settings()
    path = settings.default_api_token_path
    if path.is_file():
        path.unlink()
        logger.info(f"API token '{path}' successfully deactivated")
        return True
    logger.info("No API token to deactivate")
    return False


def get_active_application_token_path(settings: Optional[Settings] = None) -> Path:
    settings = settings or Settings()
    return _active_path(
        settings.app_token,
        settings.default_app_token_path,
        "VOXEL51_APP_TOKEN",
        ApplicationTokenError,
        "application token",
    )


def load_application_token(
    token_path: Optional[PathLike] = None, settings: Optional[Settings] = None
) -> ApplicationToken:
    if token_path is None:
        token_path = get_active_application_token_path(settings)
    return _load(
        ApplicationToken, ApplicationTokenError, Path(token_path), "application token"
    )


def activate_application_token(
    token_path: PathLike, settings: Optional[Settings] = None
) -> Path:
    settings = settings or Settings()
    load_application_token(token_path)
    copy_file(os.fspath(token_path), os.fspath(settings.default_app_token_path))
    logger.info("Application token successfully activated")
    return settings.default_app_token_path


def deactivate_application_token(settings: Optional[Settings] = None) -> bool:
    settings = settings or Settings()
    path = settings.default_app_token_path
    if path.is_file():
        path.unlink()
        logger.info(f"Application token '{path}' successfully deactivated")
        return True
    logger.info("No application token to deactivate")
    return False
