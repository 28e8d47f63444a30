"""Tests for witr data models."""

from datetime import datetime, timezone

import pytest

from witr.models import Forked, IOStats, MemoryInfo, Process, ProcessRef, Result


def test_process_defaults_are_zero_values():
    """Test a bare Process has zero values everywhere but the PID."""
    process = Process(pid=42)

    assert process.pid == 42
    assert process.ppid == 0
    assert process.cmdline == ""
    assert process.started_at is None
    assert process.env == ()
    assert process.forked is Forked.UNKNOWN
    assert process.memory == MemoryInfo()
    assert process.io == IOStats()
    assert process.file_descs == ()
    assert process.children == ()


def test_process_is_frozen():
    """Test that Process is immutable (frozen)."""
    process = Process(pid=1, command="init")

    with pytest.raises(AttributeError):
        process.pid = 999


def test_process_uses_slots():
    """Test that Process uses __slots__."""
    process = Process(pid=1)

    # Slots-based dataclasses don't have __dict__
    assert not hasattr(process, "__dict__")


def test_memory_info_from_kilobytes():
    """Test kilobyte values are converted to bytes and megabytes."""
    memory = MemoryInfo.from_kilobytes(2048, 4096)

    assert memory.rss == 2048 * 1024
    assert memory.rss_mb == 2.0
    assert memory.vms == 4096 * 1024
    assert memory.vms_mb == 4.0


def test_process_ref():
    """Test ref() keeps only identity fields."""
    process = Process(pid=10, ppid=1, command="nginx", cmdline="nginx -g daemon off;")

    assert process.ref() == ProcessRef(pid=10, ppid=1, command="nginx")


class TestWireForm:
    """Tests for the structured field names."""

    def test_process_field_names(self):
        """Test every renderer-facing field name is present."""
        data = Process(pid=7).to_dict()

        assert list(data) == [
            "PID",
            "PPID",
            "Command",
            "Cmdline",
            "Exe",
            "StartedAt",
            "User",
            "WorkingDir",
            "GitRepo",
            "GitBranch",
            "ListeningPorts",
            "BindAddresses",
            "Health",
            "Forked",
            "Env",
            "Service",
            "Container",
            "ExeDeleted",
            "Memory",
            "IO",
            "FileDescs",
            "FDCount",
            "FDLimit",
            "ThreadCount",
            "Children",
        ]

    def test_empty_sequences_are_lists_not_none(self):
        """Test unavailable sequences serialise as empty lists."""
        data = Process(pid=7).to_dict()

        assert data["Env"] == []
        assert data["ListeningPorts"] == []
        assert data["FileDescs"] == []
        assert data["StartedAt"] is None

    def test_started_at_iso_format(self):
        """Test timestamps serialise as ISO-8601."""
        started = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        data = Process(pid=7, started_at=started).to_dict()

        assert data["StartedAt"] == "2024-05-01T12:30:00+00:00"

    def test_result_to_dict(self):
        """Test Result nests process, ancestry, children and warnings."""
        result = Result(
            process=Process(pid=3, ppid=2, command="app"),
            ancestry=(ProcessRef(1, 0, "init"), ProcessRef(2, 1, "sh")),
            children=(ProcessRef(4, 3, "worker"),),
            warnings=("environment unavailable: permission denied",),
        )

        data = result.to_dict()

        assert data["Process"]["PID"] == 3
        assert [a["PID"] for a in data["Ancestry"]] == [1, 2]
        assert data["Children"] == [{"PID": 4, "PPID": 3, "Command": "worker"}]
        assert data["Warnings"] == ["environment unavailable: permission denied"]


def test_result_display_name_falls_back_to_unknown():
    """Test display_name when no command was resolved."""
    assert Result(process=Process(pid=5)).display_name == "unknown"
    assert Result(process=Process(pid=5, command="redis")).display_name == "redis"
