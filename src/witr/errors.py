"""Error types for witr.

Only ``ProcessNotFoundError`` (and a bad configuration) ever escapes an
inspection. Everything else is turned into a ``Failure`` record and then into
one warning on the result.
"""

from dataclasses import dataclass
from enum import Enum


class FailureKind(Enum):
    """Classification of a non-fatal failure."""

    PERMISSION_DENIED = "permission-denied"
    TOOL_UNAVAILABLE = "tool-unavailable"
    PARSE_ERROR = "parse-error"


class WitrError(Exception):
    """Base class for all witr errors."""

    kind: FailureKind = FailureKind.PERMISSION_DENIED


class ProcessNotFoundError(WitrError):
    """The PID does not exist in the process table."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"process {pid} not found")
        self.pid = pid


class ConfigurationError(WitrError):
    """Settings could not be loaded or validated."""


class PermissionDeniedError(WitrError):
    """A handle, memory read or attribute was refused by the OS."""

    kind = FailureKind.PERMISSION_DENIED


class ToolUnavailableError(WitrError):
    """An external utility is missing, timed out, or exited non-zero."""

    kind = FailureKind.TOOL_UNAVAILABLE

    def __init__(self, tool: str, message: str, returncode: int | None = None) -> None:
        super().__init__(f"{tool}: {message}")
        self.tool = tool
        self.returncode = returncode


class ParseError(WitrError):
    """An external utility produced output of an unexpected shape."""

    kind = FailureKind.PARSE_ERROR


@dataclass(slots=True, frozen=True)
class Failure:
    """One degraded fact group: what failed, how, and why."""

    kind: FailureKind
    fact: str
    message: str

    @classmethod
    def from_error(cls, fact: str, error: WitrError) -> "Failure":
        return cls(kind=error.kind, fact=fact, message=str(error))

    def __str__(self) -> str:
        return f"{self.fact} unavailable: {self.message}"


class SamplingErrors(WitrError):
    """Several independent failures from one sampling pass."""

    def __init__(self, failures: list[Failure]) -> None:
        super().__init__("; ".join(str(f) for f in failures))
        self.failures = list(failures)

    def kinds(self) -> set[FailureKind]:
        """Return the distinct failure kinds contained in this error."""
        return {f.kind for f in self.failures}

    def facts(self) -> list[str]:
        return [f.fact for f in self.failures]
