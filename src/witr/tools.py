"""Bounded invocation of external utilities (ps, lsof, pgrep, ...)."""

import os
import subprocess
from collections.abc import Sequence

import structlog

from witr.errors import ToolUnavailableError

log = structlog.get_logger()


class ToolRunner:
    """
    Runs external commands synchronously with a timeout.

    Missing binaries, timeouts and non-zero exits all raise
    ToolUnavailableError so callers can treat them the same way.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout
        self._env = {**os.environ, "LC_ALL": "C", "LANG": "C"}

    @property
    def timeout(self) -> float:
        return self._timeout

    def run(self, args: Sequence[str]) -> str:
        """
        Run ``args`` and return its stdout.

        Raises:
            ToolUnavailableError: The tool is missing, hung past the timeout,
                or exited with a non-zero status (``returncode`` is set).
        """
        tool = args[0]
        try:
            completed = subprocess.run(
                list(args),
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self._timeout,
                env=self._env,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ToolUnavailableError(tool, "command not found") from exc
        except PermissionError as exc:
            raise ToolUnavailableError(tool, "not executable") from exc
        except subprocess.TimeoutExpired as exc:
            log.debug("tool_timeout", tool=tool, timeout=self._timeout)
            raise ToolUnavailableError(tool, f"timed out after {self._timeout:g}s") from exc

        if completed.returncode != 0:
            detail = completed.stderr.strip().splitlines()
            message = detail[0] if detail else f"exit status {completed.returncode}"
            raise ToolUnavailableError(tool, message, returncode=completed.returncode)
        return completed.stdout
