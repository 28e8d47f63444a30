"""Parent chain and children resolution."""

from collections.abc import Callable, Iterable

from witr.models import ProcessRef

# Returns the identity of a PID, or None if it cannot be resolved.
Lookup = Callable[[int], ProcessRef | None]

MAX_ANCESTRY_DEPTH = 256


def resolve_ancestry(target: ProcessRef, lookup: Lookup, max_depth: int = MAX_ANCESTRY_DEPTH) -> tuple[ProcessRef, ...]:
    """
    Walk PPID links upward from ``target``.

    Stops at PID 0, at a PID already on the chain (PID reuse can produce
    cycles), or at the first parent ``lookup`` cannot resolve.

    Returns:
        Ancestors ordered oldest first; the last one is the target's parent.
    """
    chain: list[ProcessRef] = []
    seen = {target.pid}
    ppid = target.ppid
    while ppid > 0 and ppid not in seen and len(chain) < max_depth:
        parent = lookup(ppid)
        if parent is None:
            break
        chain.append(parent)
        seen.add(ppid)
        ppid = parent.ppid
    chain.reverse()
    return tuple(chain)


def resolve_children(pids: Iterable[int], lookup: Lookup) -> tuple[ProcessRef, ...]:
    """Identities of ``pids``, skipping any that exited in the meantime."""
    children = []
    for pid in pids:
        ref = lookup(pid)
        if ref is not None:
            children.append(ref)
    return tuple(children)
