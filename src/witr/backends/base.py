"""Platform backend interface and shared psutil helpers."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TypeVar

import psutil

from witr.config import Settings
from witr.models import ProcessRef
from witr.sampler import ResourceSampler
from witr.tiers import PORTS, Acquisition, PartialFacts
from witr.tools import ToolRunner

T = TypeVar("T")


class PlatformBackend(ABC):
    """
    Raw accessor of process facts for one operating system.

    Exactly one implementation is selected per host at startup; the
    inspector only talks to this interface.
    """

    name: str = "unknown"
    service_manager: str = ""

    def __init__(self, settings: Settings | None = None, runner: ToolRunner | None = None) -> None:
        self.settings = settings or Settings()
        self.runner = runner or ToolRunner(timeout=self.settings.tool_timeout)

    @abstractmethod
    def exists(self, pid: int) -> bool:
        """Whether ``pid`` is in the process table."""

    @abstractmethod
    def acquire(self, pid: int) -> Acquisition:
        """
        Gather identity, invocation and context facts for ``pid``.

        Raises:
            ProcessNotFoundError: The PID is not in the process table.
        """

    @abstractmethod
    def lookup(self, pid: int) -> ProcessRef | None:
        """Identity of ``pid`` for ancestry display, None if unresolvable."""

    @abstractmethod
    def sampler(self) -> ResourceSampler:
        """Resource sampler for this platform."""


def read_attribute(facts: PartialFacts, fact: str, getter: Callable[[], T]) -> T | None:
    """
    Call a psutil getter, recording a degraded fact instead of raising.

    NoSuchProcess propagates so the caller can report the PID as gone.
    """
    try:
        return getter()
    except psutil.ZombieProcess:
        facts.mark_degraded(fact, "process is a zombie")
    except psutil.AccessDenied:
        facts.mark_degraded(fact, "permission denied")
    return None


def listening_sockets(proc: psutil.Process) -> tuple[list[int], list[str]]:
    """
    Listening ports of ``proc`` and the address each one is bound to.

    Both lists have the same length; entry i of one pairs with entry i of
    the other.
    """
    pairs = set()
    for conn in proc.net_connections(kind="inet"):
        if conn.status == psutil.CONN_LISTEN and conn.laddr:
            pairs.add((conn.laddr.port, conn.laddr.ip))
    ordered = sorted(pairs)
    return [port for port, _ in ordered], [addr for _, addr in ordered]


def fill_listening(facts: PartialFacts, proc: psutil.Process) -> None:
    sockets = read_attribute(facts, PORTS, lambda: listening_sockets(proc))
    if sockets is not None:
        facts.listening_ports, facts.bind_addresses = sockets
