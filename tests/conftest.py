"""Shared fakes for witr tests."""

import struct
from collections.abc import Sequence
from contextlib import contextmanager

import pytest
import structlog

from witr.backends.base import PlatformBackend
from witr.backends.win32 import RemoteMemory, SnapshotEntry
from witr.config import Settings
from witr.errors import PermissionDeniedError, ProcessNotFoundError, ToolUnavailableError
from witr.models import ProcessRef
from witr.sampler import ResourceSampler
from witr.tiers import Acquisition, PartialFacts
from witr.tools import ToolRunner


class FakeRunner(ToolRunner):
    """ToolRunner that answers from a table keyed by the tool name."""

    def __init__(self, responses: dict | None = None) -> None:
        super().__init__(timeout=1.0)
        self.responses = responses or {}
        self.calls: list[list[str]] = []

    def run(self, args: Sequence[str]) -> str:
        self.calls.append(list(args))
        response = self.responses.get(args[0])
        if response is None:
            raise ToolUnavailableError(args[0], "command not found")
        if isinstance(response, Exception):
            raise response
        return response

    def tools_called(self) -> list[str]:
        return [call[0] for call in self.calls]


class FakeBackend(PlatformBackend):
    """Backend serving canned facts, a fixed process table and a given sampler."""

    name = "fake"
    service_manager = "systemd"

    def __init__(
        self,
        table: dict[int, ProcessRef],
        facts: PartialFacts,
        sampler: ResourceSampler,
        runner: FakeRunner,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(settings or Settings(), runner)
        self.table = table
        self.facts = facts
        self._sampler = sampler

    def exists(self, pid: int) -> bool:
        return pid in self.table

    def acquire(self, pid: int) -> Acquisition:
        return Acquisition(facts=self.facts, tier="fake")

    def lookup(self, pid: int) -> ProcessRef | None:
        return self.table.get(pid)

    def sampler(self) -> ResourceSampler:
        return self._sampler


class FakeMemory(RemoteMemory):
    """RemoteMemory over a dict of base address -> bytes."""

    def __init__(self, regions: dict[int, bytes], pointer_size: int = 8) -> None:
        super().__init__(pointer_size)
        self.regions = regions
        self.reads: list[tuple[int, int]] = []

    def _read(self, address: int, size: int) -> bytes:
        self.reads.append((address, size))
        for base, data in self.regions.items():
            if base <= address and address + size <= base + len(data):
                offset = address - base
                return data[offset : offset + size]
        raise PermissionDeniedError(f"unmapped address {address:#x}")


PEB_ADDRESS = 0x1000
PARAMS_ADDRESS = 0x2000


def build_process_memory(cwd: str, exe: str, cmdline: str) -> FakeMemory:
    """64-bit PEB and process parameters holding the given strings."""
    block = bytearray(0x88)
    regions = {PEB_ADDRESS: bytes(0x20) + struct.pack("<Q", PARAMS_ADDRESS)}
    for offset, text, address in ((0x38, cwd, 0x3000), (0x60, exe, 0x4000), (0x70, cmdline, 0x5000)):
        data = text.encode("utf-16-le")
        block[offset : offset + 16] = struct.pack("<HH4xQ", len(data), len(data) + 2, address)
        regions[address] = data
    regions[PARAMS_ADDRESS] = bytes(block)
    return FakeMemory(regions)


class FakeWin32Api:
    """Stands in for Win32Api; access masks listed in ``denied`` are refused.

    With ``exited`` set, every OpenProcess call reports the PID as gone.
    """

    pointer_size = 8

    def __init__(
        self,
        memory: FakeMemory | None = None,
        peb_address: int = PEB_ADDRESS,
        ppid: int = 4,
        image: str = r"C:\Program Files\App\app.exe",
        entries: Sequence[SnapshotEntry] = (),
        denied: Sequence[int] = (),
        start_time=None,
        exited: bool = False,
    ) -> None:
        self.memory = memory or build_process_memory(r"C:\work", r"C:\Program Files\App\app.exe", "app.exe --serve")
        self.peb_address = peb_address
        self.ppid = ppid
        self.image = image
        self.entries = list(entries)
        self.denied = set(denied)
        self.start = start_time
        self.exited = exited
        self.opened: list[int] = []
        self.closed = 0
        self.snapshots_closed = 0

    @contextmanager
    def open_process(self, pid, access):
        self.opened.append(access)
        if self.exited:
            raise ProcessNotFoundError(pid)
        if access in self.denied:
            raise PermissionDeniedError(f"OpenProcess({pid}, {access:#x}): access denied")
        try:
            yield 42
        finally:
            self.closed += 1

    def basic_information(self, handle):
        return self.ppid, self.peb_address

    def remote_memory(self, handle):
        return self.memory

    def start_time(self, handle):
        return self.start

    def image_name(self, handle):
        return self.image

    @contextmanager
    def snapshot(self):
        try:
            yield iter(self.entries)
        finally:
            self.snapshots_closed += 1


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Keep structlog config bound to one test's captured streams from leaking."""
    yield
    structlog.reset_defaults()
