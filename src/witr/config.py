"""Runtime settings for witr."""

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from witr.errors import ConfigurationError

ENV_PREFIX = "WITR_"

# Upper bound on the descriptor summaries kept on a Process.
MAX_FD_SAMPLES = 10


class Settings(BaseModel):
    """Tunables for one inspection run."""

    model_config = ConfigDict(frozen=True)

    tool_timeout: float = Field(default=5.0, gt=0, le=120)
    git_search_depth: int = Field(default=5, ge=1, le=64)
    fd_sample_limit: int = Field(default=MAX_FD_SAMPLES, ge=0, le=MAX_FD_SAMPLES)
    resolve_container_names: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from ``WITR_*`` environment variables.

        Args:
            environ: Mapping to read from. Defaults to ``os.environ``.

        Raises:
            ConfigurationError: If a variable holds an invalid value.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in environ:
                values[name] = environ[key]
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigurationError(f"invalid witr settings: {exc}") from exc
