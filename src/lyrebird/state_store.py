"""Crash-safe storage for small line-oriented state files.

All state written by the manager is tiny plain text: pid files, the identity
map, the device blacklist, per-device override files and the status
snapshot. Writes go through a temp file in the target directory followed by
an atomic rename, so a reader never observes a partial file even if the
process is killed mid-write.

File Ownership:
    Each file has exactly one writer role (the identity resolver owns the
    identity map, each supervisor owns its liveness file, the orchestrator
    owns the snapshot). No in-process locking is needed for file state.

Forward Compatibility:
    key=value readers ignore blank lines, comments and malformed lines
    rather than rejecting the file.

Logging Strategy:
    DEBUG - File writes and removals
    WARN  - Malformed lines, unreadable files
    ERROR - Failed atomic writes
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable

import psutil

logger = logging.getLogger(__name__)

# ============================================================================
# Atomic Writes
# ============================================================================

def _atomic_rename(src: Path, dst: Path) -> None:
    """Rename src over dst atomically (POSIX rename semantics)."""
    os.replace(src, dst)


def atomic_write(path: Path, content: str, mode: int = 0o644) -> None:
    """Write text to path via temp file + rename.

    Args:
        path: Destination file
        content: Full file content
        mode: Permission bits for the final file

    Raises:
        OSError: If the directory cannot be created or the write fails
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        _atomic_rename(tmp_path, path)
        logger.debug(f"Wrote {path} ({len(content)} bytes)")
    except Exception as e:
        logger.error(f"Atomic write failed for {path}: {e}")
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise


def read_text(path: Path) -> str | None:
    """Read a text file, returning None if it does not exist."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def remove(path: Path) -> bool:
    """Remove a file if present.

    Returns:
        True if a file was removed
    """
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    logger.debug(f"Removed {path}")
    return True


# ============================================================================
# PID Files
# ============================================================================

def write_pid(path: Path, pid: int) -> None:
    """Atomically record a pid (one decimal pid per file)."""
    atomic_write(path, f"{pid}\n")


def read_pid(path: Path) -> int | None:
    """Read a pid file.

    Returns:
        The recorded pid, or None if missing or malformed
    """
    text = read_text(path)
    if text is None:
        return None
    text = text.strip()
    if not text.isdigit() or int(text) <= 0:
        logger.warning(f"Ignoring malformed pid file {path}: {text[:32]!r}")
        return None
    return int(text)


def pid_alive(pid: int | None) -> bool:
    """Return True if pid names a running (non-zombie) process."""
    if not pid or pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but owned by another user
        return True


def read_live_pid(path: Path) -> int | None:
    """Read a pid file and return the pid only if that process is alive."""
    pid = read_pid(path)
    return pid if pid_alive(pid) else None


# ============================================================================
# Line-Oriented Config Files
# ============================================================================

def _strip_comment(line: str) -> str:
    return line.split("#", 1)[0].strip()


def parse_key_values(text: str) -> dict[str, str]:
    """Parse key=value lines.

    Comments (#), blank lines and lines without '=' are skipped. Values may
    be wrapped in single or double quotes. Later keys win.
    """
    values: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            logger.warning(f"Skipping malformed line {lineno}: {raw!r}")
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        else:
            value = _strip_comment(value)
        values[key.strip()] = value
    return values


def read_key_values(path: Path) -> dict[str, str]:
    """Read a key=value file; a missing file yields an empty dict."""
    text = read_text(path)
    return parse_key_values(text) if text else {}


def read_lines(path: Path) -> list[str]:
    """Read non-empty, comment-stripped lines (trailing comments removed)."""
    text = read_text(path)
    if not text:
        return []
    lines = []
    for raw in text.splitlines():
        line = _strip_comment(raw)
        if line:
            lines.append(line)
    return lines


def ensure_file(path: Path, header: str, lines: Iterable[str] = ()) -> bool:
    """Create a file with a comment header and initial lines if missing.

    Returns:
        True if the file was created
    """
    if Path(path).exists():
        return False
    content = header.rstrip("\n") + "\n" + "".join(f"{line}\n" for line in lines)
    atomic_write(path, content)
    logger.info(f"Created {path}")
    return True


def append_key_value(path: Path, key: str, value: str, header: str = "") -> None:
    """Append key=value to a file, rewriting it atomically.

    Existing content (including comments and operator edits) is preserved
    verbatim.
    """
    existing = read_text(path)
    if existing is None:
        existing = header.rstrip("\n") + "\n" if header else ""
    elif existing and not existing.endswith("\n"):
        existing += "\n"
    atomic_write(path, f"{existing}{key}={value}\n")


# ============================================================================
# JSON Documents
# ============================================================================

def write_json(path: Path, data: Any) -> None:
    atomic_write(path, json.dumps(data, indent=2, default=str) + "\n")


def read_json(path: Path) -> Any | None:
    """Read a JSON document, returning None if missing or corrupt."""
    text = read_text(path)
    if text is None:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring corrupt JSON in {path}: {e}")
        return None
