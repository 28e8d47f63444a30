"""Privilege-tiered acquisition of raw process facts.

A backend hands the acquirer an ordered list of tiers, most privileged
first. Tiers run one at a time; the first one that succeeds wins and
nothing after it is attempted. Fields a failed tier managed to read are
kept and used to fill blanks left by the winner.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import structlog

from witr.errors import ProcessNotFoundError
from witr.models import Forked

log = structlog.get_logger()

# Human-readable fact names, used as keys of PartialFacts.degraded.
PARENT = "parent process"
CMDLINE = "command line"
EXE = "executable path"
CWD = "working directory"
ENV = "environment"
STARTED = "start time"
USER = "user"
PORTS = "listening ports"

# fact name -> PartialFacts attribute, for facts every tier tries to fill
CORE_FACTS = {
    PARENT: "ppid",
    CMDLINE: "cmdline",
    EXE: "exe",
    CWD: "cwd",
    ENV: "env",
    STARTED: "started_at",
}


@dataclass(slots=True)
class PartialFacts:
    """
    Best-effort facts gathered by a tier.

    ``degraded`` maps a fact name to the reason it is missing or was
    reduced; each entry becomes exactly one warning on the final result.
    """

    ppid: int = 0
    command: str = ""
    cmdline: str = ""
    exe: str = ""
    cwd: str = ""
    env: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    user: str = ""
    listening_ports: list[int] = field(default_factory=list)
    bind_addresses: list[str] = field(default_factory=list)
    health: str = ""
    forked: Forked = Forked.UNKNOWN
    exe_deleted: bool = False
    cgroup: str = ""
    degraded: dict[str, str] = field(default_factory=dict)

    def mark_degraded(self, fact: str, reason: str) -> None:
        # First reason wins so a fact never yields two warnings.
        self.degraded.setdefault(fact, reason)

    def is_blank(self, fact: str) -> bool:
        return not getattr(self, CORE_FACTS[fact])

    def fill_from(self, other: "PartialFacts") -> None:
        """Copy core facts that are blank here but present in ``other``."""
        for fact, attr in CORE_FACTS.items():
            value = getattr(other, attr)
            if value and not getattr(self, attr):
                setattr(self, attr, value)
                self.degraded.pop(fact, None)

    def mark_blank_degraded(self, reason: str) -> None:
        for fact in CORE_FACTS:
            if self.is_blank(fact):
                self.mark_degraded(fact, reason)


class TierFailed(Exception):
    """Raised by a tier that could not complete; carries what it did read."""

    def __init__(self, message: str, partial: PartialFacts | None = None) -> None:
        super().__init__(message)
        self.partial = partial if partial is not None else PartialFacts()


class TierState(Enum):
    """States of the tier state machine."""

    NOT_ATTEMPTED = "not-attempted"
    IN_PROGRESS = "in-progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


class Tier(ABC):
    """One privilege-bounded strategy for reading process facts."""

    name: str = "tier"

    @abstractmethod
    def acquire(self, pid: int) -> PartialFacts:
        """
        Read whatever this tier can for ``pid``.

        Raises:
            TierFailed: The tier could not complete.
            ProcessNotFoundError: The PID is not in the process table.
        """


@dataclass(slots=True)
class Acquisition:
    """Result of running the tier sequence for one PID."""

    facts: PartialFacts
    tier: str | None  # Winning tier, None when every tier failed
    transitions: list[tuple[TierState, str | None]] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.tier is None

    def attempted(self) -> list[str]:
        """Names of the tiers that were started, in order."""
        return [name for state, name in self.transitions if state is TierState.IN_PROGRESS]


class PrivilegeTierAcquirer:
    """Runs tiers in order until one succeeds."""

    def __init__(self, tiers: list[Tier]) -> None:
        if not tiers:
            raise ValueError("at least one tier is required")
        self._tiers = list(tiers)

    @property
    def tiers(self) -> list[Tier]:
        return list(self._tiers)

    def acquire(self, pid: int) -> Acquisition:
        transitions: list[tuple[TierState, str | None]] = [(TierState.NOT_ATTEMPTED, None)]
        partials: list[PartialFacts] = []
        last_error = ""

        for tier in self._tiers:
            transitions.append((TierState.IN_PROGRESS, tier.name))
            try:
                facts = tier.acquire(pid)
            except ProcessNotFoundError:
                raise
            except TierFailed as exc:
                transitions.append((TierState.FAILED, tier.name))
                log.debug("tier_failed", pid=pid, tier=tier.name, error=str(exc))
                partials.append(exc.partial)
                last_error = f"{tier.name} tier: {exc}"
                continue

            transitions.append((TierState.SUCCEEDED, tier.name))
            transitions.append((TierState.RESOLVED, None))
            for partial in partials:
                facts.fill_from(partial)
            log.debug("tier_resolved", pid=pid, tier=tier.name)
            return Acquisition(facts=facts, tier=tier.name, transitions=transitions)

        merged = PartialFacts()
        for partial in partials:
            merged.fill_from(partial)
        for partial in partials:
            for fact, reason in partial.degraded.items():
                if fact not in CORE_FACTS or merged.is_blank(fact):
                    merged.mark_degraded(fact, reason)
        merged.mark_blank_degraded(f"all access tiers failed ({last_error})")
        transitions.append((TierState.EXHAUSTED, None))
        log.debug("tiers_exhausted", pid=pid, error=last_error)
        return Acquisition(facts=merged, tier=None, transitions=transitions)
