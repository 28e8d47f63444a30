"""Tests for ancestry and children resolution."""

from witr.ancestry import resolve_ancestry, resolve_children
from witr.models import ProcessRef

TABLE = {
    1: ProcessRef(1, 0, "systemd"),
    800: ProcessRef(800, 1, "sshd"),
    900: ProcessRef(900, 800, "bash"),
    1000: ProcessRef(1000, 900, "python"),
}


def test_oldest_first():
    """Test the chain runs from init down to the direct parent."""
    ancestry = resolve_ancestry(TABLE[1000], TABLE.get)

    assert [ref.command for ref in ancestry] == ["systemd", "sshd", "bash"]


def test_init_has_no_ancestors():
    """Test PPID 0 ends the walk immediately."""
    assert resolve_ancestry(TABLE[1], TABLE.get) == ()


def test_stops_at_unresolvable_parent():
    """Test a parent that exited truncates the chain."""
    table = {900: ProcessRef(900, 850, "bash")}

    assert resolve_ancestry(ProcessRef(1000, 900, "python"), table.get) == (table[900],)


def test_cycle_terminates():
    """Test reused PIDs forming a loop do not hang the walk."""
    table = {
        20: ProcessRef(20, 30, "a"),
        30: ProcessRef(30, 20, "b"),
    }

    ancestry = resolve_ancestry(ProcessRef(10, 20, "target"), table.get)

    assert [ref.pid for ref in ancestry] == [30, 20]


def test_depth_bound():
    """Test the chain length is capped."""
    table = {pid: ProcessRef(pid, pid + 1, "p") for pid in range(2, 100)}

    assert len(resolve_ancestry(ProcessRef(1, 2, "t"), table.get, max_depth=5)) == 5


def test_children_skip_exited():
    """Test children that vanished are left out."""
    children = resolve_children([900, 4444, 1000], TABLE.get)

    assert [ref.pid for ref in children] == [900, 1000]
