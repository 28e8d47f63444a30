"""Tests for the inspection engine."""

import os
import sys
from datetime import datetime, timezone

import pytest
import structlog
from conftest import FakeBackend, FakeRunner

from witr.config import Settings
from witr.errors import ProcessNotFoundError, ToolUnavailableError
from witr.inspector import ProcessInspector, inspect_process
from witr.models import Forked, MemoryInfo, ProcessRef
from witr.sampler import ToolSampler
from witr.tiers import CWD, ENV, PartialFacts

LSOF_OUTPUT = """\
COMMAND  PID USER  FD TYPE DEVICE SIZE/OFF NODE NAME
dockerd 4242 root cwd  DIR   8,1     4096    2 /srv/app
dockerd 4242 root   3u IPv4  1234      0t0  TCP *:8080 (LISTEN)
"""

TABLE = {
    1: ProcessRef(1, 0, "systemd"),
    700: ProcessRef(700, 1, "containerd"),
    4242: ProcessRef(4242, 700, "dockerd"),
    4300: ProcessRef(4300, 4242, "worker"),
}


@pytest.fixture
def git_repo(tmp_path):
    repo = tmp_path / "shop"
    (repo / ".git").mkdir(parents=True)
    (repo / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (repo / "deploy").mkdir()
    return repo


def make_facts(cwd: str) -> PartialFacts:
    return PartialFacts(
        ppid=700,
        command="dockerd",
        cmdline="/usr/bin/dockerd run --name mycontainer nginx",
        exe="/usr/bin/dockerd",
        cwd=cwd,
        started_at=datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc),
        user="root",
        listening_ports=[8080],
        bind_addresses=["0.0.0.0"],
        health="healthy",
        forked=Forked.NO,
    )


def make_runner(**overrides) -> FakeRunner:
    responses = {
        "ps": "  10240  204800   12\n",
        "lsof": LSOF_OUTPUT,
        "launchctl": "\tmaxfiles    256            unlimited\n",
        "pgrep": "4300\n",
        "systemctl": "● web.service - Web\n",
    }
    responses.update(overrides)
    return FakeRunner(responses)


class TestProcessInspector:
    """Tests for ProcessInspector.inspect."""

    def test_full_result(self, git_repo):
        """Test every source lands on the Result."""
        runner = make_runner()
        backend = FakeBackend(TABLE, make_facts(str(git_repo / "deploy")), ToolSampler(runner), runner)

        result = ProcessInspector(backend).inspect(4242)

        process = result.process
        assert process.pid == 4242
        assert process.container == "docker: mycontainer"
        assert (process.git_repo, process.git_branch) == ("shop", "main")
        assert process.service == "web.service"
        assert process.memory == MemoryInfo.from_kilobytes(10240, 204800)
        assert process.thread_count == 12
        assert process.fd_count == 2
        assert process.fd_limit == 256
        assert process.children == (4300,)
        assert process.listening_ports == (8080,)
        assert [ref.pid for ref in result.ancestry] == [1, 700]
        assert result.children == (TABLE[4300],)
        assert result.warnings == ()

    def test_short_ps_output_is_one_warning(self, git_repo):
        """Test malformed ps output zeroes memory but leaves everything else intact."""
        runner = make_runner(ps="10240 204800\n")
        backend = FakeBackend(TABLE, make_facts(str(git_repo)), ToolSampler(runner), runner)

        result = ProcessInspector(backend).inspect(4242)

        assert result.process.memory == MemoryInfo()
        assert result.process.thread_count == 0
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("memory unavailable:")
        assert result.process.fd_count == 2
        assert result.process.file_descs
        assert result.process.container == "docker: mycontainer"
        assert result.process.git_repo == "shop"

    def test_degraded_facts_become_warnings(self, runner):
        """Test each degraded fact yields exactly one warning."""
        facts = PartialFacts(ppid=1, command="app")
        facts.mark_degraded(ENV, "permission denied")
        facts.mark_degraded(CWD, "permission denied")
        backend = FakeBackend({1: TABLE[1], 50: ProcessRef(50, 1, "app")}, facts, ToolSampler(runner), runner)

        result = ProcessInspector(backend).inspect(50)

        assert "environment unavailable: permission denied" in result.warnings
        assert "working directory unavailable: permission denied" in result.warnings
        assert result.process.env == ()
        assert result.process.working_dir == ""

    def test_service_failure_is_silent(self, git_repo):
        """Test a failing service manager leaves Service empty without a warning."""
        runner = make_runner(systemctl=ToolUnavailableError("systemctl", "exit status 4", returncode=4))
        backend = FakeBackend(TABLE, make_facts(str(git_repo)), ToolSampler(runner), runner)

        result = ProcessInspector(backend).inspect(4242)

        assert result.process.service == ""
        assert result.warnings == ()

    def test_container_from_cgroup(self, runner):
        """Test the cgroup listing is used when the command line has no marker."""
        pod_id = "0123456789abcdef" * 4
        facts = PartialFacts(ppid=1, command="python", cmdline="python app.py")
        facts.cgroup = f"0::/kubepods.slice/kubepods-burstable.slice/cri-containerd-{pod_id}.scope\n"
        backend = FakeBackend(
            {1: TABLE[1], 60: ProcessRef(60, 1, "python")},
            facts,
            ToolSampler(runner),
            runner,
            Settings(resolve_container_names=False),
        )

        result = ProcessInspector(backend).inspect(60)

        assert result.process.container == "k8s (0123456789ab)"
        assert "crictl" not in runner.tools_called()

    @pytest.mark.parametrize("pid", [0, -1, 99999])
    def test_not_found(self, runner, pid):
        """Test PIDs that are not in the table raise NotFound."""
        backend = FakeBackend(TABLE, PartialFacts(), ToolSampler(runner), runner)

        with pytest.raises(ProcessNotFoundError):
            ProcessInspector(backend).inspect(pid)

    def test_settings_default_to_backend(self, runner):
        """Test the backend's settings are used when none are given."""
        settings = Settings(git_search_depth=2)
        backend = FakeBackend(TABLE, PartialFacts(), ToolSampler(runner), runner, settings)

        assert ProcessInspector(backend)._settings is settings


class TestLibraryLogging:
    """Tests for logging when witr is used as a library."""

    def test_debug_events_stay_off_stdout(self, runner, capsys):
        """Test an unconfigured host gets the quiet stderr default."""
        structlog.reset_defaults()
        backend = FakeBackend(TABLE, make_facts(""), ToolSampler(runner), runner)

        ProcessInspector(backend).inspect(4242)

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "inspect_start" not in captured.err
        assert structlog.is_configured()

    def test_host_configuration_is_kept(self, runner):
        """Test an application's own structlog setup is left alone."""
        structlog.reset_defaults()
        processors = [structlog.processors.JSONRenderer()]
        structlog.configure(processors=processors)
        backend = FakeBackend(TABLE, make_facts(""), ToolSampler(runner), runner)

        ProcessInspector(backend)

        assert structlog.get_config()["processors"] == processors
        structlog.reset_defaults()


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="live Linux backend")
def test_inspect_self():
    """Test inspecting the test process on the real host."""
    result = inspect_process(os.getpid(), Settings(resolve_container_names=False))

    process = result.process
    assert process.pid == os.getpid()
    assert process.ppid == os.getppid()
    assert process.cmdline
    assert process.working_dir == os.getcwd()
    assert process.started_at is not None
    assert process.memory.rss > 0
    assert process.env
    assert result.ancestry[-1].pid == os.getppid()
