"""Process inspection engine for witr."""

import structlog

from witr.ancestry import resolve_ancestry, resolve_children
from witr.backends.base import PlatformBackend
from witr.backends.selection import select_backend
from witr.config import Settings
from witr.detectors import ContainerNameResolver, ServiceNameDetector, detect_container, detect_git_info
from witr.errors import ProcessNotFoundError
from witr.logs import ensure_configured
from witr.models import Process, Result

log = structlog.get_logger()


class ProcessInspector:
    """
    Builds a Result for a PID using the host's platform backend.

    Every step is sequential and best-effort: only a PID that is not in the
    process table raises. Everything that degrades along the way becomes
    exactly one warning on the Result.
    """

    def __init__(self, backend: PlatformBackend | None = None, settings: Settings | None = None) -> None:
        """
        Initialize the ProcessInspector.

        Args:
            backend: Platform backend to use. Defaults to the host's.
            settings: Tunables. Defaults to the backend's settings, or the
                ``WITR_*`` environment when no backend is given.
        """
        ensure_configured()
        if settings is None:
            settings = backend.settings if backend is not None else Settings.from_env()
        self._settings = settings
        self._backend = backend or select_backend(settings)
        self._services = ServiceNameDetector(self._backend.runner, self._backend.service_manager)
        self._container_names = (
            ContainerNameResolver(self._backend.runner) if settings.resolve_container_names else None
        )

    @property
    def backend(self) -> PlatformBackend:
        return self._backend

    def inspect(self, pid: int) -> Result:
        """
        Inspect ``pid`` once and return an immutable Result.

        Raises:
            ProcessNotFoundError: ``pid`` is not in the process table.
        """
        if pid <= 0 or not self._backend.exists(pid):
            raise ProcessNotFoundError(pid)
        log.debug("inspect_start", pid=pid, backend=self._backend.name)

        acquisition = self._backend.acquire(pid)
        facts = acquisition.facts
        warnings = [f"{fact} unavailable: {reason}" for fact, reason in facts.degraded.items()]

        sample = self._backend.sampler().sample(pid)
        warnings.extend(str(failure) for failure in sample.failures)

        container = detect_container(facts.cmdline, self._container_names) or detect_container(
            facts.cgroup, self._container_names
        )
        git_repo, git_branch = detect_git_info(facts.cwd, self._settings.git_search_depth)
        service = self._services.lookup(pid)

        process = Process(
            pid=pid,
            ppid=facts.ppid,
            command=facts.command,
            cmdline=facts.cmdline,
            exe=facts.exe,
            started_at=facts.started_at,
            user=facts.user,
            working_dir=facts.cwd,
            git_repo=git_repo,
            git_branch=git_branch,
            listening_ports=tuple(facts.listening_ports),
            bind_addresses=tuple(facts.bind_addresses),
            health=facts.health,
            forked=facts.forked,
            env=tuple(facts.env),
            service=service,
            container=container,
            exe_deleted=facts.exe_deleted,
            memory=sample.memory,
            io=sample.io,
            fd_count=sample.fd_count,
            fd_limit=sample.fd_limit,
            file_descs=tuple(sample.file_descs),
            thread_count=sample.thread_count,
            children=tuple(sample.children),
        )

        ancestry = resolve_ancestry(process.ref(), self._backend.lookup)
        children = resolve_children(sample.children, self._backend.lookup)
        log.debug("inspect_done", pid=pid, tier=acquisition.tier, warnings=len(warnings))
        return Result(process=process, ancestry=ancestry, children=children, warnings=tuple(warnings))


def inspect_process(pid: int, settings: Settings | None = None) -> Result:
    """Inspect ``pid`` with the host's backend."""
    return ProcessInspector(settings=settings).inspect(pid)
