"""Host platform detection and backend selection."""

import sys

from witr.backends.base import PlatformBackend
from witr.config import Settings
from witr.errors import ConfigurationError
from witr.tools import ToolRunner


def select_backend(
    settings: Settings | None = None,
    runner: ToolRunner | None = None,
    platform: str | None = None,
) -> PlatformBackend:
    """
    Return the backend for the host (or the given ``platform`` string).

    Raises:
        ConfigurationError: No backend exists for the platform.
    """
    platform = platform or sys.platform
    if platform.startswith("linux"):
        from witr.backends.linux import LinuxBackend

        return LinuxBackend(settings, runner)
    if platform == "darwin":
        from witr.backends.darwin import DarwinBackend

        return DarwinBackend(settings, runner)
    if platform in ("win32", "cygwin"):
        from witr.backends.win32 import NativeLibraries
        from witr.backends.windows import WindowsBackend

        return WindowsBackend(settings, runner, libraries=NativeLibraries())
    raise ConfigurationError(f"unsupported platform: {platform}")
