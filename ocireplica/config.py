"""Runtime configuration, env-driven.

Settings come from ``OCIREPLICA_*`` environment variables or a ``.env``
file.  CLI options default to these values.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ocireplica import __version__


class ReplicaSettings(BaseSettings):
    """Settings shared by every command.

    Examples
    --------
    Override via environment::

        export OCIREPLICA_CONCURRENCY=8
        export OCIREPLICA_PLAIN_HTTP=true
        export OCIREPLICA_USERNAME=robot
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="OCIREPLICA_",
        env_file_encoding="utf-8",
    )

    log_level: str = "WARNING"
    debug: bool = False

    # Transfer
    concurrency: int = Field(3, ge=1)

    # Registry access
    plain_http: bool = False
    insecure: bool = False
    username: str | None = None
    password: str | None = None
    request_timeout: float = 30.0
    user_agent: str = f"ocireplica/{__version__}"

    # Staging for tar backups; None uses the system temp dir
    temp_dir: Path | None = None

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level.upper()


settings = ReplicaSettings()
