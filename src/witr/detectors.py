"""Best-effort enrichment: container, git and service context.

Nothing in here raises. A detector that cannot find anything returns an
empty value.
"""

import re
from collections.abc import Callable
from pathlib import Path

import structlog

from witr.errors import WitrError
from witr.tools import ToolRunner

log = structlog.get_logger()

_LONG_HEX_ID = re.compile(r"[0-9a-f]{32,}", re.IGNORECASE)
SHORT_ID_LENGTH = 12

# Resolves a container id to a name, "" when it cannot.
NameResolver = Callable[[str], str]


def extract_flag_value(cmdline: str, *flags: str) -> str:
    """Value after the first of ``flags``, as ``--flag value`` or ``--flag=value``."""
    tokens = cmdline.split()
    for i, token in enumerate(tokens):
        for flag in flags:
            if token == flag and i + 1 < len(tokens):
                return tokens[i + 1]
            if token.startswith(flag + "="):
                return token[len(flag) + 1:]
    return ""


def find_long_hex_id(text: str) -> str:
    """Longest run of 32+ hex characters in ``text``, lower-cased."""
    matches = _LONG_HEX_ID.findall(text)
    if not matches:
        return ""
    return max(matches, key=len).lower()


def _named(engine: str, label: str, name: str) -> str:
    return f"{label}: {name}" if name else engine


def detect_container(text: str, resolver: NameResolver | None = None) -> str:
    """
    Classify a command line or cgroup path by container engine.

    Markers are matched case-insensitively, in a fixed priority order.

    Args:
        text: Command line (or cgroup listing) to classify.
        resolver: Turns a kubepods container id into a name.

    Returns:
        e.g. "docker: web", "k8s (abcdef012345)", or "" when nothing matches.
    """
    if not text:
        return ""
    lowered = text.lower()

    if "docker" in lowered:
        return _named("docker", "docker", extract_flag_value(text, "--name"))
    if "podman" in lowered:
        return _named("podman", "podman", extract_flag_value(text, "--name"))
    if "minikube" in lowered:
        return _named("kubernetes", "k8s", extract_flag_value(text, "-p", "--profile"))
    if "kind" in lowered:
        return _named("kubernetes", "k8s", extract_flag_value(text, "--name"))
    if "kubepods" in lowered:
        container_id = find_long_hex_id(text)
        if not container_id:
            return "kubernetes"
        name = resolver(container_id) if resolver else ""
        if name:
            return f"k8s: {name}"
        return f"k8s ({container_id[:SHORT_ID_LENGTH]})"
    if "nerdctl" in lowered or "containerd" in lowered:
        return _named("containerd", "containerd", extract_flag_value(text, "--name"))
    return ""


class ContainerNameResolver:
    """Looks up a container name through the CRI command line tool."""

    def __init__(self, runner: ToolRunner, tool: str = "crictl") -> None:
        self._runner = runner
        self._tool = tool

    def __call__(self, container_id: str) -> str:
        try:
            output = self._runner.run(
                [
                    self._tool,
                    "inspect",
                    "--output",
                    "go-template",
                    "--template",
                    "{{.status.metadata.name}}",
                    container_id,
                ]
            )
        except WitrError as exc:
            log.debug("container_name_unresolved", id=container_id[:SHORT_ID_LENGTH], error=str(exc))
            return ""
        lines = output.strip().splitlines()
        return lines[0].strip() if lines else ""


def read_git_branch(head_file: Path) -> str:
    """Branch name from a HEAD file, "" when detached or unreadable."""
    try:
        head = head_file.read_text().strip()
    except (OSError, UnicodeDecodeError):
        return ""
    if not head.startswith("ref: "):
        return ""
    return head[len("ref: "):].split("/")[-1]


def detect_git_info(cwd: str, max_depth: int = 5) -> tuple[str, str]:
    """
    Find the git repository containing ``cwd``.

    Walks at most ``max_depth`` directories upward, starting with ``cwd``.

    Returns:
        (repository name, branch); empty strings when not found.
    """
    if not cwd:
        return "", ""

    search_dir = Path(cwd)
    for _ in range(max_depth):
        git_dir = search_dir / ".git"
        try:
            found = git_dir.is_dir()
        except OSError:
            found = False
        if found:
            return search_dir.name, read_git_branch(git_dir / "HEAD")
        parent = search_dir.parent
        if parent == search_dir:
            break
        search_dir = parent
    return "", ""


def parse_systemctl_status(output: str) -> str:
    """Unit name from the first line of ``systemctl status PID``."""
    for line in output.splitlines():
        line = line.strip().lstrip("●○×*").strip()
        if not line:
            continue
        unit = line.split()[0]
        return unit if unit.endswith(".service") else ""
    return ""


def parse_launchctl_list(output: str, pid: int) -> str:
    """Label of the launchd job whose PID column equals ``pid``."""
    for line in output.splitlines():
        fields = line.split(None, 2)
        if len(fields) == 3 and fields[0] == str(pid):
            return fields[2].strip()
    return ""


class ServiceNameDetector:
    """Maps a PID to the service manager unit that owns it."""

    def __init__(self, runner: ToolRunner, manager: str) -> None:
        self._runner = runner
        self._manager = manager
        self._queries: dict[str, Callable[[int], str]] = {
            "systemd": self._systemd,
            "launchd": self._launchd,
            "scm": self._windows_service,
        }

    @property
    def manager(self) -> str:
        return self._manager

    def lookup(self, pid: int) -> str:
        query = self._queries.get(self._manager)
        if query is None:
            return ""
        try:
            return query(pid)
        except WitrError as exc:
            log.debug("service_lookup_failed", pid=pid, manager=self._manager, error=str(exc))
            return ""

    def _systemd(self, pid: int) -> str:
        output = self._runner.run(["systemctl", "status", str(pid), "--no-pager", "--lines=0"])
        return parse_systemctl_status(output)

    def _launchd(self, pid: int) -> str:
        return parse_launchctl_list(self._runner.run(["launchctl", "list"]), pid)

    def _windows_service(self, pid: int) -> str:
        script = (
            f'Get-CimInstance -ClassName Win32_Service -Filter "ProcessId={pid}" '
            "| Select-Object -ExpandProperty Name"
        )
        output = self._runner.run(["powershell", "-NoProfile", "-NonInteractive", script])
        lines = output.strip().splitlines()
        return lines[0].strip() if lines else ""
