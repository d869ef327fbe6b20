"""Process-scope settings using pydantic-settings."""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings

from src.compose_env.constants import DOCKER_BINARY_ENV, UNDER_COMPOSE_ENV


class RuntimeSettings(BaseSettings):
    """Settings read from the process environment.

    Construct with explicit values (``RuntimeSettings(under_compose="1")``)
    to detect the run mode without touching ``os.environ``.
    """
    under_compose: str = Field(default="", validation_alias=UNDER_COMPOSE_ENV)
    docker_binary: str = Field(default="docker", validation_alias=DOCKER_BINARY_ENV)
    log_level: str = Field(default="info", validation_alias="LOG_LEVEL")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }

    @property
    def is_under_compose(self) -> bool:
        """True when the tests themselves run as a compose service."""
        return bool(self.under_compose.strip())
