"""
Filesystem helpers used by every stage that writes into the node tree or CA.

Writes go through a temporary file in the target directory followed by
os.replace(), so a later stage never reads a half-written key or certificate.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

PRIVATE_MODE = 0o600
PUBLIC_MODE = 0o644


def ensure_dir(p: Path) -> Path:
    """
    Ensure that the given directory exists, creating it if necessary.

    Args:
        p (Path): The directory path to ensure exists.

    Returns:
        Path: The same path object that was provided.
    """
    p.mkdir(parents=True, exist_ok=True)
    return p


def write_atomic(path: Path, data: bytes | str, mode: int = PUBLIC_MODE) -> None:
    """
    Write data to a file atomically, replacing any previous content.

    Args:
        path (Path): Destination file.
        data (bytes | str): Content; str is encoded as UTF-8.
        mode (int, optional): Permission bits for the new file. Defaults to 0644.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    ensure_dir(path.parent)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def write_if_changed(path: Path, data: bytes | str, mode: int = PUBLIC_MODE) -> bool:
    """
    Write data only when the file is missing or holds different bytes.

    Leaves the modification time of an up-to-date file untouched.

    Returns:
        bool: True if the file was (re)written.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    if path.is_file() and path.read_bytes() == data:
        return False
    write_atomic(path, data, mode)
    return True


def write_new(path: Path, data: bytes | str, mode: int = PUBLIC_MODE) -> None:
    """
    Write a file that must not exist yet (append-only artifacts).

    Raises:
        FileExistsError: If the path already exists.
    """
    if path.exists():
        raise FileExistsError(f"Refusing to overwrite existing file: {path}")
    write_atomic(path, data, mode)


def ensure_trailing_newline(data: bytes) -> bytes:
    """Return data terminated by exactly one newline (empty input stays empty)."""
    if not data:
        return data
    return data if data.endswith(b"\n") else data + b"\n"
