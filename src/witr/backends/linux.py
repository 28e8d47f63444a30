"""Linux backend: psutil plus direct reads of the /proc filesystem."""

import os
from pathlib import Path

from witr.backends.posix import PosixBackend
from witr.config import Settings
from witr.sampler import LinuxSampler, ResourceSampler
from witr.tools import ToolRunner

_DELETED_SUFFIX = " (deleted)"


class LinuxBackend(PosixBackend):
    name = "linux"
    service_manager = "systemd"

    def __init__(
        self,
        settings: Settings | None = None,
        runner: ToolRunner | None = None,
        proc_root: str = "/proc",
    ) -> None:
        super().__init__(settings, runner)
        self._proc_root = Path(proc_root)

    def sampler(self) -> ResourceSampler:
        return LinuxSampler(self.runner, self.settings.fd_sample_limit, proc_root=str(self._proc_root))

    def exe_deleted(self, pid: int, exe: str) -> bool:
        # The kernel appends " (deleted)" to the exe link once the file is unlinked.
        try:
            return os.readlink(self._proc_root / str(pid) / "exe").endswith(_DELETED_SUFFIX)
        except OSError:
            return super().exe_deleted(pid, exe)

    def cgroup(self, pid: int) -> str:
        try:
            return (self._proc_root / str(pid) / "cgroup").read_text()
        except OSError:
            return ""
