"""Windows backend: three privilege tiers over the native API."""

import ntpath
import os

import psutil
import structlog

from witr.backends.base import PlatformBackend, fill_listening, read_attribute
from witr.backends.win32 import (
    PROCESS_QUERY_INFORMATION,
    PROCESS_QUERY_LIMITED_INFORMATION,
    PROCESS_VM_READ,
    NativeLibraries,
    ProcessParametersLayout,
    SnapshotEntry,
    Win32Api,
)
from witr.config import Settings
from witr.errors import ProcessNotFoundError, WitrError
from witr.models import Forked, ProcessRef
from witr.sampler import ResourceSampler, WindowsSampler
from witr.tiers import (
    CMDLINE,
    CWD,
    ENV,
    PARENT,
    STARTED,
    USER,
    Acquisition,
    PartialFacts,
    PrivilegeTierAcquirer,
    Tier,
    TierFailed,
)
from witr.tools import ToolRunner

log = structlog.get_logger()


def find_in_snapshot(api: Win32Api, pid: int) -> SnapshotEntry | None:
    """Linear scan of a Toolhelp snapshot for ``pid``."""
    with api.snapshot() as entries:
        for entry in entries:
            if entry.pid == pid:
                return entry
    return None


class FullAccessTier(Tier):
    """
    Reads the command line, image path and working directory straight out
    of the target's process parameters block.

    Needs PROCESS_QUERY_INFORMATION | PROCESS_VM_READ.
    """

    name = "full-access"

    def __init__(self, api: Win32Api) -> None:
        self._api = api

    def acquire(self, pid: int) -> PartialFacts:
        facts = PartialFacts()
        try:
            with self._api.open_process(pid, PROCESS_QUERY_INFORMATION | PROCESS_VM_READ) as handle:
                facts.started_at = self._api.start_time(handle)
                facts.ppid, peb_address = self._api.basic_information(handle)
                if peb_address == 0:
                    raise TierFailed("PEB base address is 0", facts)

                layout = ProcessParametersLayout.for_pointer_size(self._api.pointer_size)
                memory = self._api.remote_memory(handle)
                params_address = memory.read_pointer(peb_address + layout.peb_parameters_offset)
                block = memory.read(params_address, layout.size)

                cwd = memory.read_unicode_string(layout.unicode_string_at(block, layout.current_directory_offset))
                cmdline = memory.read_unicode_string(layout.unicode_string_at(block, layout.command_line_offset))
                exe = memory.read_unicode_string(layout.unicode_string_at(block, layout.image_path_offset))
        except ProcessNotFoundError:
            raise
        except WitrError as exc:
            raise TierFailed(str(exc), facts) from exc

        facts.cwd = cwd
        facts.cmdline = cmdline
        facts.exe = exe
        return facts


class LimitedAccessTier(Tier):
    """
    Start time and image path from a query-only handle; parent from the
    process snapshot. Working directory and environment cannot be read at
    this level.
    """

    name = "limited-access"

    def __init__(self, api: Win32Api) -> None:
        self._api = api

    def acquire(self, pid: int) -> PartialFacts:
        facts = PartialFacts()
        try:
            with self._api.open_process(pid, PROCESS_QUERY_LIMITED_INFORMATION) as handle:
                facts.started_at = self._api.start_time(handle)
                facts.exe = self._api.image_name(handle)
        except ProcessNotFoundError:
            raise
        except WitrError as exc:
            raise TierFailed(str(exc), facts) from exc

        if facts.exe:
            facts.cmdline = ntpath.basename(facts.exe)
        facts.mark_degraded(CMDLINE, "needs memory-read access; showing image name only")

        try:
            entry = find_in_snapshot(self._api, pid)
        except WitrError as exc:
            log.debug("snapshot_failed", pid=pid, error=str(exc))
            entry = None
        if entry is not None:
            facts.ppid = entry.ppid
        else:
            facts.mark_degraded(PARENT, "not found in process snapshot")

        facts.cwd = ""
        facts.env = []
        facts.mark_degraded(CWD, "needs memory-read access")
        facts.mark_degraded(ENV, "needs memory-read access")
        return facts


class SnapshotTier(Tier):
    """Parent PID and image file name from the process snapshot only."""

    name = "snapshot"

    def __init__(self, api: Win32Api) -> None:
        self._api = api

    def acquire(self, pid: int) -> PartialFacts:
        try:
            entry = find_in_snapshot(self._api, pid)
        except WitrError as exc:
            raise TierFailed(str(exc)) from exc
        if entry is None:
            raise ProcessNotFoundError(pid)

        facts = PartialFacts(ppid=entry.ppid, exe=entry.exe_file)
        reason = "process handle could not be opened"
        for fact in (CMDLINE, CWD, ENV, STARTED):
            facts.mark_degraded(fact, reason)
        return facts


class WindowsBackend(PlatformBackend):
    name = "windows"
    service_manager = "scm"

    def __init__(
        self,
        settings: Settings | None = None,
        runner: ToolRunner | None = None,
        libraries: NativeLibraries | None = None,
        api: Win32Api | None = None,
    ) -> None:
        super().__init__(settings, runner)
        self._api = api or Win32Api(libraries or NativeLibraries())
        self._acquirer = PrivilegeTierAcquirer(
            [FullAccessTier(self._api), LimitedAccessTier(self._api), SnapshotTier(self._api)]
        )

    def exists(self, pid: int) -> bool:
        return psutil.pid_exists(pid)

    def acquire(self, pid: int) -> Acquisition:
        acquisition = self._acquirer.acquire(pid)
        facts = acquisition.facts
        facts.command = ntpath.basename(facts.exe) if facts.exe else ""
        self._fill_auxiliary(pid, facts)
        facts.health = "healthy"
        facts.forked = Forked.UNKNOWN
        facts.exe_deleted = bool(facts.exe) and ntpath.isabs(facts.exe) and not os.path.exists(facts.exe)
        return acquisition

    def _fill_auxiliary(self, pid: int, facts: PartialFacts) -> None:
        """Best-effort psutil lookups for fields the tiers left blank."""
        try:
            proc = psutil.Process(pid)
            facts.user = read_attribute(facts, USER, proc.username) or ""
            if not facts.env and ENV not in facts.degraded:
                environ = read_attribute(facts, ENV, proc.environ)
                if environ:
                    facts.env = [f"{key}={value}" for key, value in environ.items()]
            fill_listening(facts, proc)
        except psutil.NoSuchProcess as exc:
            raise ProcessNotFoundError(pid) from exc

    def lookup(self, pid: int) -> ProcessRef | None:
        try:
            entry = find_in_snapshot(self._api, pid)
        except WitrError as exc:
            log.debug("lookup_failed", pid=pid, error=str(exc))
            return None
        if entry is None:
            return None
        return ProcessRef(pid=entry.pid, ppid=entry.ppid, command=entry.exe_file)

    def sampler(self) -> ResourceSampler:
        return WindowsSampler(self.runner, self.settings.fd_sample_limit)
