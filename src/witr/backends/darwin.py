"""macOS backend: psutil for identity, command line tools for resources."""

from witr.backends.posix import PosixBackend
from witr.sampler import ResourceSampler, ToolSampler


class DarwinBackend(PosixBackend):
    name = "darwin"
    service_manager = "launchd"

    def sampler(self) -> ResourceSampler:
        return ToolSampler(self.runner, self.settings.fd_sample_limit)
