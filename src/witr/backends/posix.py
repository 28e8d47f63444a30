"""Shared single-tier acquisition for Linux and macOS, built on psutil."""

import os
from datetime import datetime

import psutil
import structlog

from witr.backends.base import PlatformBackend, fill_listening, read_attribute
from witr.config import Settings
from witr.errors import ProcessNotFoundError
from witr.models import Forked, ProcessRef
from witr.tiers import CMDLINE, CWD, ENV, EXE, STARTED, USER, Acquisition, PartialFacts, PrivilegeTierAcquirer, Tier
from witr.tools import ToolRunner

log = structlog.get_logger()

_HEALTH_BY_STATUS = {
    psutil.STATUS_ZOMBIE: "zombie",
    psutil.STATUS_STOPPED: "stopped",
    psutil.STATUS_TRACING_STOP: "stopped",
    psutil.STATUS_DEAD: "dead",
}


class PosixTier(Tier):
    """
    Reads everything psutil exposes for the PID.

    Each attribute is read on its own; a refused attribute is marked
    degraded and the tier still succeeds.
    """

    name = "psutil"

    def __init__(self, backend: "PosixBackend") -> None:
        self._backend = backend

    def acquire(self, pid: int) -> PartialFacts:
        facts = PartialFacts()
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                self._read_identity(proc, facts)
                fill_listening(facts, proc)
        except psutil.ZombieProcess:
            facts.health = "zombie"
        except psutil.NoSuchProcess as exc:
            raise ProcessNotFoundError(pid) from exc

        facts.exe_deleted = self._backend.exe_deleted(pid, facts.exe)
        facts.forked = self._forked(facts)
        facts.cgroup = self._backend.cgroup(pid)
        return facts

    def _read_identity(self, proc: psutil.Process, facts: PartialFacts) -> None:
        facts.ppid = proc.ppid()
        facts.command = proc.name()

        cmdline = read_attribute(facts, CMDLINE, proc.cmdline)
        if cmdline:
            facts.cmdline = " ".join(cmdline)
        facts.exe = read_attribute(facts, EXE, proc.exe) or ""
        facts.cwd = read_attribute(facts, CWD, proc.cwd) or ""

        environ = read_attribute(facts, ENV, proc.environ)
        if environ:
            facts.env = [f"{key}={value}" for key, value in environ.items()]

        created = read_attribute(facts, STARTED, proc.create_time)
        if created:
            facts.started_at = datetime.fromtimestamp(created).astimezone()
        facts.user = read_attribute(facts, USER, proc.username) or ""

        status = read_attribute(facts, "status", proc.status)
        facts.health = _HEALTH_BY_STATUS.get(status, "healthy") if status else "unknown"

    def _forked(self, facts: PartialFacts) -> Forked:
        """A child running its parent's binary looks like a fork without exec."""
        if facts.ppid <= 0:
            return Forked.NO
        if not facts.exe:
            return Forked.UNKNOWN
        try:
            parent_exe = psutil.Process(facts.ppid).exe()
        except psutil.Error:
            return Forked.UNKNOWN
        if not parent_exe:
            return Forked.UNKNOWN
        return Forked.YES if parent_exe == facts.exe else Forked.NO


class PosixBackend(PlatformBackend):
    """Backend for POSIX hosts; subclasses pick the sampler and extras."""

    def __init__(self, settings: Settings | None = None, runner: ToolRunner | None = None) -> None:
        super().__init__(settings, runner)
        self._acquirer = PrivilegeTierAcquirer([PosixTier(self)])

    def exists(self, pid: int) -> bool:
        return psutil.pid_exists(pid)

    def acquire(self, pid: int) -> Acquisition:
        return self._acquirer.acquire(pid)

    def lookup(self, pid: int) -> ProcessRef | None:
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                return ProcessRef(pid=pid, ppid=proc.ppid(), command=proc.name())
        except psutil.Error as exc:
            log.debug("lookup_failed", pid=pid, error=str(exc))
            return None

    def exe_deleted(self, pid: int, exe: str) -> bool:
        return bool(exe) and not os.path.exists(exe)

    def cgroup(self, pid: int) -> str:
        """Control group listing used for container detection, "" if none."""
        return ""
