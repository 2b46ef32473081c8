"""
agency — filesystem utilities

File: src/agency/utils/fs.py

Purpose
- Provide safe, minimal filesystem helpers for atomic writes and guarded deletion.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step,
  so a reader only ever observes the previous complete file or the new complete file.
- Deletion refuses paths that are not a proper subpath of an allowed prefix; an
  unresolvable prefix fails closed.

Non-functional requirements
- Standard library only.
"""

from __future__ import annotations

import contextlib
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

PathLike = str | os.PathLike[str]

__all__ = [
    "NotUnderPrefixError",
    "atomic_write",
    "is_subpath",
    "read_json_object",
    "safe_remove_all",
    "write_json_atomic",
]


class NotUnderPrefixError(ValueError):
    """Raised when a deletion target is not strictly contained by the allowed prefix."""

    def __init__(self, target: PathLike, prefix: PathLike) -> None:
        self.target = str(target)
        self.prefix = str(prefix)
        super().__init__(f"refusing to delete {self.target!s}: not under {self.prefix!s}")


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data if isinstance(data, bytes) else data.encode(encoding)
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def write_json_atomic(path: PathLike, payload: Any) -> None:
    """Write indented, key-sorted JSON with a trailing newline, creating parents."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n"
    atomic_write(target, text)


def read_json_object(path: PathLike) -> dict[str, Any]:
    """Read a JSON file whose root must be an object.

    ``FileNotFoundError`` propagates unchanged; parse and shape problems raise
    ``ValueError``.
    """

    target = Path(path)
    raw = target.read_text(encoding="utf-8")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{target}: invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"{target}: JSON root must be an object")
    return parsed


def is_subpath(target: PathLike, prefix: PathLike) -> bool:
    """Return ``True`` if ``target`` is a proper subpath of ``prefix`` (never equal).

    Both paths are compared lexically; callers resolve symlinks first.
    """

    target_path = Path(os.path.normpath(os.fspath(target)))
    prefix_path = Path(os.path.normpath(os.fspath(prefix)))
    if target_path == prefix_path:
        return False
    return _is_relative_to(target_path, prefix_path)


def safe_remove_all(target: PathLike, allowed_prefix: PathLike) -> None:
    """
    Recursively delete ``target`` only if it resolves strictly inside ``allowed_prefix``.

    A missing target is a no-op. A prefix that cannot be resolved, a target equal to
    the prefix, or a target outside it raises ``NotUnderPrefixError``. Symlinks are
    unlinked without traversing into their targets.
    """

    clean_target = Path(os.path.normpath(os.fspath(target)))
    clean_prefix = Path(os.path.normpath(os.fspath(allowed_prefix)))

    try:
        resolved_target = clean_target.resolve(strict=True)
    except FileNotFoundError:
        if clean_target.is_symlink():
            resolved_target = clean_target.parent.resolve(strict=False) / clean_target.name
        else:
            return
    except (OSError, RuntimeError) as exc:
        raise NotUnderPrefixError(target, allowed_prefix) from exc

    try:
        resolved_prefix = clean_prefix.resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise NotUnderPrefixError(target, allowed_prefix) from exc

    if not is_subpath(resolved_target, resolved_prefix):
        raise NotUnderPrefixError(target, allowed_prefix)

    if clean_target.is_symlink() or clean_target.is_file():
        clean_target.unlink()
        return
    shutil.rmtree(clean_target)


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
