"""Tests for witr settings."""

import pytest
from pydantic import ValidationError

from witr.config import MAX_FD_SAMPLES, Settings
from witr.errors import ConfigurationError


def test_defaults():
    """Test the default tunables."""
    settings = Settings()

    assert settings.tool_timeout == 5.0
    assert settings.git_search_depth == 5
    assert settings.fd_sample_limit == MAX_FD_SAMPLES == 10
    assert settings.resolve_container_names is True


def test_from_env():
    """Test WITR_* variables override defaults."""
    settings = Settings.from_env(
        {
            "WITR_TOOL_TIMEOUT": "2.5",
            "WITR_FD_SAMPLE_LIMIT": "3",
            "WITR_RESOLVE_CONTAINER_NAMES": "false",
            "HOME": "/root",
        }
    )

    assert settings.tool_timeout == 2.5
    assert settings.fd_sample_limit == 3
    assert settings.resolve_container_names is False
    assert settings.git_search_depth == 5


def test_from_env_invalid_value():
    """Test bad values surface as ConfigurationError."""
    with pytest.raises(ConfigurationError, match="invalid witr settings"):
        Settings.from_env({"WITR_TOOL_TIMEOUT": "soon"})


def test_fd_sample_limit_capped():
    """Test the descriptor sample can never exceed ten entries."""
    with pytest.raises(ValidationError):
        Settings(fd_sample_limit=11)


def test_frozen():
    """Test settings cannot be changed after creation."""
    settings = Settings()

    with pytest.raises(ValidationError):
        settings.tool_timeout = 1.0
