"""
Node registry parsing.

The registry is a line-oriented file, one node per line:

    <fqdn> [extra-alt-name ...]

Blank lines are ignored, and so are lines whose first token starts with '#'.
Node names become directory and file names through safe_name(), which every
stage uses so that they all agree on the same on-disk node directory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

_UNSAFE = str.maketrans({"*": "_", "$": "_", "/": "_"})

# Safe names that clash with files every batch directory already holds (ca.crt).
RESERVED_NAMES = frozenset({"ca"})


def safe_name(name: str) -> str:
    """
    Map a node name onto a filesystem-safe path component.

    '*', '$' and '/' are each replaced by '_'; everything else is kept.
    """
    return name.translate(_UNSAFE)


@dataclass(frozen=True)
class NodeIdentity:
    """
    One registry entry.

    Attributes:
        name (str): Fully-qualified node name, unique within the registry.
        extra_alt_names (tuple[str, ...]): Additional hostnames, in file order.
    """
    name: str
    extra_alt_names: tuple[str, ...] = ()

    @property
    def common_name(self) -> str:
        """First label of the node name ("db1" for "db1.example.com")."""
        return self.name.split(".", 1)[0]

    @property
    def safe(self) -> str:
        return safe_name(self.name)


def parse_registry(lines: Iterable[str], source: str = "<registry>") -> list[NodeIdentity]:
    """
    Parse registry lines into node identities.

    Args:
        lines (Iterable[str]): Registry content, one entry per line.
        source (str): Name used in error messages.

    Returns:
        list[NodeIdentity]: Nodes in file order.

    Raises:
        ConfigurationError: If a node is listed twice, two different names
            collapse onto the same path-safe name, or a name is reserved.
    """
    nodes: list[NodeIdentity] = []
    seen: dict[str, str] = {}

    for lineno, line in enumerate(lines, start=1):
        tokens = line.split()
        if not tokens or tokens[0].startswith("#"):
            continue
        name, alts = tokens[0], tuple(tokens[1:])
        if not name.split(".", 1)[0]:
            LOGGER.warning("%s:%d: no identifiable node name in %r, skipping", source, lineno, line.strip())
            continue

        safe = safe_name(name)
        if safe in RESERVED_NAMES:
            raise ConfigurationError(
                f"{source}:{lineno}: node {name} uses the reserved name {safe!r} "
                f"(its certificate would overwrite {safe}.crt in the batch directory)"
            )
        if safe in seen:
            if seen[safe] == name:
                raise ConfigurationError(f"{source}:{lineno}: node {name} is listed more than once")
            raise ConfigurationError(
                f"{source}:{lineno}: node {name} collides with {seen[safe]} "
                f"(both map to directory name {safe!r})"
            )
        seen[safe] = name
        nodes.append(NodeIdentity(name=name, extra_alt_names=alts))
    return nodes


def load_registry(path: Path) -> list[NodeIdentity]:
    """
    Read and parse a registry file.

    Raises:
        ConfigurationError: If the file does not exist, or on name collisions.
    """
    if not path.is_file():
        raise ConfigurationError(f"Missing node registry file: {path}")
    return parse_registry(path.read_text().splitlines(), source=str(path))


def by_safe_name(nodes: Iterable[NodeIdentity]) -> dict[str, NodeIdentity]:
    """Index nodes by their path-safe name."""
    return {n.safe: n for n in nodes}
