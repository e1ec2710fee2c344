"""
Per-repository configuration.

Stored as ``config.json`` inside the repository directory. The author identity
can be overridden from the environment with ``GIMARK_AUTHOR_NAME`` and
``GIMARK_AUTHOR_EMAIL``. Credentials are never part of the configuration.
"""

from __future__ import annotations

import logging
import os

from pydantic import BaseModel, Field, ValidationError

from gimark import data
from gimark.errors import StorageError
from gimark.types import Identity

logger = logging.getLogger(__name__)

CONFIG_FILE = 'config.json'
DEFAULT_AUTHOR_NAME = 'Gimark'
DEFAULT_AUTHOR_EMAIL = 'gimark@example.com'


class RepoConfig(BaseModel):
    """Settings recorded in a repository, e.g. by ``clone``."""

    remote_url: str | None = Field(
        default=None,
        description="URL or path of the remote to push to and pull from",
    )

    author_name: str = Field(default=DEFAULT_AUTHOR_NAME, min_length=1)

    author_email: str = Field(default=DEFAULT_AUTHOR_EMAIL, min_length=1)

    @property
    def identity(self) -> Identity:
        name = os.environ.get('GIMARK_AUTHOR_NAME') or self.author_name
        email = os.environ.get('GIMARK_AUTHOR_EMAIL') or self.author_email
        return Identity(name, email)


def _config_path(handle: data.RepositoryHandle) -> str:
    return os.path.join(handle.git_dir, CONFIG_FILE)


def load_config(handle: data.RepositoryHandle) -> RepoConfig:
    path = _config_path(handle)
    if not os.path.isfile(path):
        return RepoConfig()
    try:
        with open(path) as f:
            return RepoConfig.model_validate_json(f.read())
    except (OSError, ValidationError) as e:
        raise StorageError('Repository configuration is unreadable', operation='load-config', cause=str(e)) from e


def save_config(handle: data.RepositoryHandle, config: RepoConfig) -> None:
    data.write_atomic(_config_path(handle), config.model_dump_json(indent=2).encode())
    logger.debug('Saved configuration to %s', _config_path(handle))
