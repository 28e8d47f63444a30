"""Data models for witr."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

_MB = 1024 * 1024


class Forked(Enum):
    """Whether the process looks like a fork of its parent without exec."""

    YES = "forked"
    NO = "not-forked"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class MemoryInfo:
    """Resident and virtual memory of a process."""

    rss: int = 0  # Bytes
    rss_mb: float = 0.0
    vms: int = 0  # Bytes
    vms_mb: float = 0.0

    @classmethod
    def from_bytes(cls, rss: int, vms: int) -> "MemoryInfo":
        return cls(rss=rss, rss_mb=rss / _MB, vms=vms, vms_mb=vms / _MB)

    @classmethod
    def from_kilobytes(cls, rss_kb: int, vms_kb: int) -> "MemoryInfo":
        return cls.from_bytes(rss_kb * 1024, vms_kb * 1024)

    def to_dict(self) -> dict[str, Any]:
        return {"RSS": self.rss, "RSSMB": self.rss_mb, "VMS": self.vms, "VMSMB": self.vms_mb}


@dataclass(slots=True, frozen=True)
class IOStats:
    """Cumulative I/O counters."""

    read_bytes: int = 0
    write_bytes: int = 0
    read_ops: int = 0
    write_ops: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ReadBytes": self.read_bytes,
            "WriteBytes": self.write_bytes,
            "ReadOps": self.read_ops,
            "WriteOps": self.write_ops,
        }


@dataclass(slots=True, frozen=True)
class ProcessRef:
    """Identity-only view of a process, used for ancestry and children."""

    pid: int
    ppid: int
    command: str

    def to_dict(self) -> dict[str, Any]:
        return {"PID": self.pid, "PPID": self.ppid, "Command": self.command}


@dataclass(slots=True, frozen=True)
class Process:
    """Immutable snapshot of everything known about one process."""

    pid: int
    ppid: int = 0
    command: str = ""
    cmdline: str = ""
    exe: str = ""
    started_at: datetime | None = None
    user: str = ""
    working_dir: str = ""
    git_repo: str = ""
    git_branch: str = ""
    listening_ports: tuple[int, ...] = ()
    bind_addresses: tuple[str, ...] = ()
    health: str = ""
    forked: Forked = Forked.UNKNOWN
    env: tuple[str, ...] = ()  # "KEY=VALUE"
    service: str = ""
    container: str = ""
    exe_deleted: bool = False
    memory: MemoryInfo = field(default_factory=MemoryInfo)
    io: IOStats = field(default_factory=IOStats)
    fd_count: int = 0
    fd_limit: int = 0  # 0 means no enforced ceiling
    file_descs: tuple[str, ...] = ()
    thread_count: int = 0
    children: tuple[int, ...] = ()

    def ref(self) -> ProcessRef:
        return ProcessRef(pid=self.pid, ppid=self.ppid, command=self.command)

    def to_dict(self) -> dict[str, Any]:
        """Return the structured form using the renderer's field names."""
        return {
            "PID": self.pid,
            "PPID": self.ppid,
            "Command": self.command,
            "Cmdline": self.cmdline,
            "Exe": self.exe,
            "StartedAt": self.started_at.isoformat() if self.started_at else None,
            "User": self.user,
            "WorkingDir": self.working_dir,
            "GitRepo": self.git_repo,
            "GitBranch": self.git_branch,
            "ListeningPorts": list(self.listening_ports),
            "BindAddresses": list(self.bind_addresses),
            "Health": self.health,
            "Forked": self.forked.value,
            "Env": list(self.env),
            "Service": self.service,
            "Container": self.container,
            "ExeDeleted": self.exe_deleted,
            "Memory": self.memory.to_dict(),
            "IO": self.io.to_dict(),
            "FileDescs": list(self.file_descs),
            "FDCount": self.fd_count,
            "FDLimit": self.fd_limit,
            "ThreadCount": self.thread_count,
            "Children": list(self.children),
        }


@dataclass(slots=True, frozen=True)
class Result:
    """Outcome of inspecting one PID."""

    process: Process
    ancestry: tuple[ProcessRef, ...] = ()  # Oldest first, immediate parent last
    children: tuple[ProcessRef, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        """Short name of the target, or "unknown" when none was resolved."""
        return self.process.command or "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "Process": self.process.to_dict(),
            "Ancestry": [ref.to_dict() for ref in self.ancestry],
            "Children": [ref.to_dict() for ref in self.children],
            "Warnings": list(self.warnings),
        }
