"""Memory, descriptor, thread, I/O and children sampling.

``NativeSampler`` subclasses read the kernel directly (psutil, /proc);
``ToolSampler`` shells out to ps, lsof, launchctl and pgrep. Each fact group
is sampled independently so one failure never hides another.
"""

import os
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

import psutil
import structlog

from witr.config import MAX_FD_SAMPLES
from witr.errors import (
    Failure,
    ParseError,
    PermissionDeniedError,
    ProcessNotFoundError,
    SamplingErrors,
    ToolUnavailableError,
    WitrError,
)
from witr.models import IOStats, MemoryInfo
from witr.tools import ToolRunner

log = structlog.get_logger()

T = TypeVar("T")

# Fact group names, as they appear in warnings.
MEMORY = "memory"
DESCRIPTORS = "file descriptors"
FD_LIMIT = "file descriptor limit"
IO = "io"
CHILDREN = "children"

# lsof columns before NAME: COMMAND PID USER FD TYPE DEVICE SIZE/OFF NODE
LSOF_LEADING_COLUMNS = 8


@dataclass(slots=True)
class ResourceSample:
    """Everything one sampling pass produced, including its failures."""

    memory: MemoryInfo = field(default_factory=MemoryInfo)
    io: IOStats = field(default_factory=IOStats)
    fd_count: int = 0
    fd_limit: int = 0
    file_descs: list[str] = field(default_factory=list)
    thread_count: int = 0
    children: list[int] = field(default_factory=list)
    failures: list[Failure] = field(default_factory=list)

    def error(self) -> SamplingErrors | None:
        """All failures of this pass combined, or None if there were none."""
        return SamplingErrors(self.failures) if self.failures else None


def format_descriptor(fd: str, kind: str, target: str) -> str:
    return f"{fd} {kind:<4} {target}"


def parse_ps_memory(output: str) -> tuple[MemoryInfo, int]:
    """
    Parse ``ps -o rss=,vsz=,thcount=`` output.

    Returns:
        Memory info in bytes and the thread count.

    Raises:
        ParseError: Fewer than three fields, or a non-numeric field.
    """
    fields = output.split()
    if len(fields) < 3:
        raise ParseError(f"ps output missing fields: {output.strip()!r}")
    try:
        rss_kb, vsz_kb, threads = (int(value) for value in fields[:3])
    except ValueError as exc:
        raise ParseError(f"ps output not numeric: {output.strip()!r}") from exc
    return MemoryInfo.from_kilobytes(rss_kb, vsz_kb), threads


def summarize_lsof_line(line: str) -> str:
    """Turn one lsof row into "FD TYPE TARGET", or "" for a short row."""
    parts = line.split(None, LSOF_LEADING_COLUMNS)
    if len(parts) <= LSOF_LEADING_COLUMNS:
        return ""
    return format_descriptor(parts[3], parts[4], parts[LSOF_LEADING_COLUMNS])


def parse_lsof(output: str, limit: int = MAX_FD_SAMPLES) -> tuple[int, list[str]]:
    """
    Count descriptors in ``lsof -nP -p PID`` output and keep a sample.

    The first non-blank line is always treated as lsof's header.
    """
    count = 0
    samples: list[str] = []
    header_skipped = False
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        if not header_skipped:
            header_skipped = True
            continue
        count += 1
        if len(samples) < limit:
            summary = summarize_lsof_line(line)
            if summary:
                samples.append(summary)
    return count, samples


def parse_limit_value(text: str) -> int:
    """Parse a soft limit; "unlimited" means no ceiling and maps to 0."""
    value = text.strip()
    if value.lower() in ("unlimited", "infinity"):
        return 0
    try:
        return int(value)
    except ValueError as exc:
        raise ParseError(f"unexpected limit value: {value!r}") from exc


def parse_launchctl_maxfiles(output: str) -> int | None:
    """Soft limit from ``launchctl limit maxfiles``, or None if absent."""
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[0] == "maxfiles":
            try:
                return parse_limit_value(fields[1])
            except ParseError:
                return None
    return None


def parse_pid_lines(output: str) -> list[int]:
    pids = []
    for line in output.splitlines():
        line = line.strip()
        if line.isdigit():
            pids.append(int(line))
    return pids


@contextmanager
def psutil_errors(pid: int) -> Iterator[None]:
    """Translate psutil exceptions into witr errors."""
    try:
        yield
    except psutil.ZombieProcess as exc:
        raise PermissionDeniedError(f"process {pid} is a zombie") from exc
    except psutil.NoSuchProcess as exc:
        raise ProcessNotFoundError(pid) from exc
    except psutil.AccessDenied as exc:
        raise PermissionDeniedError("permission denied") from exc


class ResourceSampler(ABC):
    """Samples resource usage for a PID, one fact group at a time."""

    def __init__(self, runner: ToolRunner, fd_sample_limit: int = MAX_FD_SAMPLES) -> None:
        self._runner = runner
        self._fd_sample_limit = min(fd_sample_limit, MAX_FD_SAMPLES)

    def sample(self, pid: int) -> ResourceSample:
        """
        Sample every fact group for ``pid``.

        A failing group is left at its zero value and recorded as one
        Failure; the remaining groups are still sampled.

        Raises:
            ProcessNotFoundError: The process exited while being sampled.
        """
        sample = ResourceSample()

        memory = self._attempt(sample, MEMORY, lambda: self.read_memory(pid))
        if memory is not None:
            sample.memory, sample.thread_count = memory

        descriptors = self._attempt(sample, DESCRIPTORS, lambda: self.read_descriptors(pid))
        if descriptors is not None:
            sample.fd_count, samples = descriptors
            sample.file_descs = samples[: self._fd_sample_limit]

        fd_limit = self._attempt(sample, FD_LIMIT, lambda: self.read_fd_limit(pid))
        if fd_limit is not None:
            sample.fd_limit = fd_limit

        io = self._attempt(sample, IO, lambda: self.read_io(pid))
        if io is not None:
            sample.io = io

        children = self._attempt(sample, CHILDREN, lambda: self.list_children(pid))
        if children is not None:
            sample.children = children

        return sample

    def _attempt(self, sample: ResourceSample, fact: str, read: Callable[[], T]) -> T | None:
        try:
            return read()
        except ProcessNotFoundError:
            raise
        except WitrError as exc:
            log.debug("sample_failed", fact=fact, error=str(exc))
            sample.failures.append(Failure.from_error(fact, exc))
            return None

    @abstractmethod
    def read_memory(self, pid: int) -> tuple[MemoryInfo, int]:
        """Return memory info and thread count."""

    @abstractmethod
    def read_descriptors(self, pid: int) -> tuple[int, list[str]]:
        """Return the open descriptor count and a bounded sample."""

    @abstractmethod
    def read_fd_limit(self, pid: int) -> int:
        """Return the open-files soft limit, 0 when unlimited."""

    @abstractmethod
    def read_io(self, pid: int) -> IOStats:
        """Return cumulative I/O counters."""

    @abstractmethod
    def list_children(self, pid: int) -> list[int]:
        """Return direct child PIDs."""

    def _shell_fd_limit(self) -> int:
        return parse_limit_value(self._runner.run(["sh", "-c", "ulimit -n"]))


class ToolSampler(ResourceSampler):
    """Sampler built on ps, lsof, launchctl and pgrep (macOS)."""

    def read_memory(self, pid: int) -> tuple[MemoryInfo, int]:
        output = self._runner.run(["ps", "-p", str(pid), "-o", "rss=,vsz=,thcount="])
        return parse_ps_memory(output)

    def read_descriptors(self, pid: int) -> tuple[int, list[str]]:
        output = self._runner.run(["lsof", "-nP", "-p", str(pid)])
        return parse_lsof(output, self._fd_sample_limit)

    def read_fd_limit(self, pid: int) -> int:
        try:
            limit = parse_launchctl_maxfiles(self._runner.run(["launchctl", "limit", "maxfiles"]))
        except ToolUnavailableError as exc:
            log.debug("launchctl_unavailable", error=str(exc))
            limit = None
        if limit is not None:
            return limit
        return self._shell_fd_limit()

    def read_io(self, pid: int) -> IOStats:
        # I/O counters need entitlements on macOS; left zeroed.
        return IOStats()

    def list_children(self, pid: int) -> list[int]:
        try:
            output = self._runner.run(["pgrep", "-P", str(pid)])
        except ToolUnavailableError as exc:
            if exc.returncode == 1:  # no matches
                return []
            raise
        return parse_pid_lines(output)


class NativeSampler(ResourceSampler):
    """Sampler reading the kernel through psutil."""

    def read_memory(self, pid: int) -> tuple[MemoryInfo, int]:
        with psutil_errors(pid):
            proc = psutil.Process(pid)
            with proc.oneshot():
                mem = proc.memory_info()
                threads = proc.num_threads()
        return MemoryInfo.from_bytes(mem.rss, mem.vms), threads

    def read_io(self, pid: int) -> IOStats:
        with psutil_errors(pid):
            counters = psutil.Process(pid).io_counters()
        return IOStats(
            read_bytes=counters.read_bytes,
            write_bytes=counters.write_bytes,
            read_ops=counters.read_count,
            write_ops=counters.write_count,
        )

    def list_children(self, pid: int) -> list[int]:
        with psutil_errors(pid):
            return sorted(child.pid for child in psutil.Process(pid).children())


def classify_fd_target(target: str) -> str:
    """lsof-style TYPE for a /proc/PID/fd link target."""
    if target.startswith("socket:"):
        return "sock"
    if target.startswith("pipe:"):
        return "FIFO"
    if target.startswith("anon_inode:"):
        return "a_inode"
    if target.startswith("/dev/"):
        return "CHR"
    if target.endswith("/") or os.path.isdir(target):
        return "DIR"
    return "REG"


class LinuxSampler(NativeSampler):
    """Native sampler listing descriptors from /proc; limits come from psutil."""

    def __init__(self, runner: ToolRunner, fd_sample_limit: int = MAX_FD_SAMPLES, proc_root: str = "/proc") -> None:
        super().__init__(runner, fd_sample_limit)
        self._proc_root = Path(proc_root)

    def read_descriptors(self, pid: int) -> tuple[int, list[str]]:
        fd_dir = self._proc_root / str(pid) / "fd"
        try:
            entries = sorted((e for e in fd_dir.iterdir() if e.name.isdigit()), key=lambda e: int(e.name))
        except PermissionError as exc:
            raise PermissionDeniedError(f"cannot list {fd_dir}") from exc
        except FileNotFoundError as exc:
            raise ProcessNotFoundError(pid) from exc

        samples: list[str] = []
        for entry in entries:
            if len(samples) >= self._fd_sample_limit:
                break
            try:
                target = os.readlink(entry)
            except OSError:
                continue  # closed since the listing
            samples.append(format_descriptor(entry.name, classify_fd_target(target), target))
        return len(entries), samples

    def read_fd_limit(self, pid: int) -> int:
        # Process.rlimit is missing on some psutil builds (e.g. Android).
        if not hasattr(psutil.Process, "rlimit"):
            return self._shell_fd_limit()
        with psutil_errors(pid):
            soft, _hard = psutil.Process(pid).rlimit(psutil.RLIMIT_NOFILE)
        return 0 if soft == psutil.RLIM_INFINITY else soft


class WindowsSampler(NativeSampler):
    """Native sampler counting handles instead of POSIX descriptors."""

    def read_descriptors(self, pid: int) -> tuple[int, list[str]]:
        with psutil_errors(pid):
            proc = psutil.Process(pid)
            count = proc.num_handles()
            files = proc.open_files()[: self._fd_sample_limit]
        samples = [
            format_descriptor(str(f.fd) if f.fd >= 0 else "-", "REG", f.path) for f in files
        ]
        return count, samples

    def read_fd_limit(self, pid: int) -> int:
        # Windows enforces no per-process soft handle limit.
        return 0
