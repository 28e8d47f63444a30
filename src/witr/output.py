"""Structured and plain-text output forms of a Result."""

import json
from typing import Any

from witr.models import ProcessRef, Result


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2)


def _short(refs: tuple[ProcessRef, ...]) -> list[dict[str, Any]]:
    return [{"PID": ref.pid, "Command": ref.command} for ref in refs]


def to_json(result: Result) -> str:
    """The full Result."""
    return _dump(result.to_dict())


def to_short_json(result: Result) -> str:
    """Ancestry only, as PID/Command pairs."""
    return _dump(_short(result.ancestry))


def to_tree_json(result: Result) -> str:
    """Ancestry plus children; Children is omitted when there are none."""
    tree: dict[str, Any] = {"Ancestry": _short(result.ancestry)}
    if result.children:
        tree["Children"] = _short(result.children)
    return _dump(tree)


def to_warnings_json(result: Result) -> str:
    process = result.process
    return _dump(
        {
            "PID": process.pid,
            "Process": result.display_name,
            "Command": process.cmdline or process.command,
            "Warnings": list(result.warnings),
        }
    )


def to_env_json(result: Result) -> str:
    process = result.process
    return _dump(
        {
            "PID": process.pid,
            "Process": result.display_name,
            "Command": process.cmdline,
            "Env": list(process.env),
        }
    )


def render_env_only(result: Result) -> str:
    """Command line and environment as plain text."""
    process = result.process
    lines = [
        f"Process     : {result.display_name} (pid {process.pid})",
        f"Command     : {process.cmdline}",
    ]
    if process.env:
        lines.append("Environment :")
        lines.extend(f"  {entry}" for entry in process.env)
    else:
        lines.append("Environment : No environment variables found.")
    return "\n".join(lines) + "\n"
