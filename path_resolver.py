"""
Path Resolver - keep every definition read inside its trusted root.

Names come from callers (tool arguments, front-matter lists), so each one is
resolved against its root and rejected if the canonical path lands outside.
"""

import re
from pathlib import Path

from errors import InvalidAgentName, PathTraversal

# Safe filename: no separators, must not start with a dot
AGENT_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')


def validate_agent_name(name: str) -> str:
    """Return name unchanged if it is a safe agent name, else raise InvalidAgentName"""
    if not isinstance(name, str) or not name:
        raise InvalidAgentName("Invalid agent name: name must be a non-empty string")
    if ".." in name or not AGENT_NAME_PATTERN.match(name):
        raise InvalidAgentName(f"Invalid agent name: {name!r}")
    return name


def is_within(root: Path, path: Path) -> bool:
    """True if path is a strict descendant of root (both already resolved)"""
    return root in path.parents


def resolve_within(root: Path, name: str, suffix: str = "") -> Path:
    """
    Resolve root/<name><suffix> and make sure it stays under root.

    Args:
        root: Trusted directory
        name: Logical name; may contain subpath segments (e.g. "tool/DEFINITION.md")
        suffix: Appended to the name before resolving (e.g. ".md")

    Returns:
        Absolute, canonical path

    Raises:
        PathTraversal: if the canonical path escapes root. Covers "..",
            absolute overrides and symlinks pointing outside.
    """
    root = Path(root).resolve()
    candidate = (root / f"{name}{suffix}").resolve()

    if not is_within(root, candidate):
        raise PathTraversal(f"Invalid name {name!r}: path traversal detected")

    return candidate
