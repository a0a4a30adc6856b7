"""
timewarp configuration

Environment-based configuration for the timewarp engines and CLI.  Every
field can be overridden with a ``TIMEWARP_``-prefixed environment variable
or a ``.env`` file in the working directory.
"""
import logging
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version

from pydantic_settings import BaseSettings, SettingsConfigDict


def _app_version_from_package() -> str:
    """Read version from the installed distribution metadata."""
    try:
        return version("git-timewarp")
    except PackageNotFoundError:
        return "0.0.0-unknown"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = "timewarp"
    app_version: str = _app_version_from_package()
    debug: bool = False
    log_level: str = "WARNING"

    # Git backend
    git_executable: str = "git"
    git_timeout: float = 120.0
    # Directory under the git dir holding timewarp's own files
    # (bisect session, reword message files).
    state_dir_name: str = "timewarp"

    # Engine defaults
    short_id_length: int = 7
    default_list_count: int = 10
    bisect_max_steps: int = 50

    model_config = SettingsConfigDict(
        env_prefix="TIMEWARP_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    def resolved_log_level(self) -> int:
        """Numeric logging level; ``debug`` wins over ``log_level``."""
        if self.debug:
            return logging.DEBUG
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience access
settings = get_settings()
