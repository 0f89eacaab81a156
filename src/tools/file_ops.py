"""Repository-confined file access for agent tool calls.

Agents name files relative to the checkout being repaired. Anything that
resolves outside it, through `..`, an absolute path or a symlink, is
refused, and so is the `.git` directory.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from src.core.exceptions import ToolError

logger = logging.getLogger("repairloop.tools.file_ops")

MAX_READ_BYTES = 512_000


def resolve_in_root(root: str | Path, path: str | Path) -> Path:
    """Resolve `path` relative to `root`, refusing anything outside it.

    Raises:
        ToolError: If the path is empty, escapes the root or points into .git.
    """
    if not str(path).strip():
        raise ToolError("Empty path")
    root_resolved = Path(root).resolve()
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = root_resolved / candidate
    resolved = candidate.resolve()
    if resolved != root_resolved and root_resolved not in resolved.parents:
        raise ToolError(f"Path escapes workspace: {path}")
    if resolved.parts[len(root_resolved.parts):][:1] == (".git",):
        raise ToolError(f"Refusing to touch git metadata: {path}")
    return resolved


def read_file(root: str | Path, path: str | Path, max_bytes: int = MAX_READ_BYTES) -> str:
    """Read a text file inside `root`, refusing files larger than `max_bytes`.

    Raises:
        ToolError: If the file is missing, too large or not text.
    """
    p = resolve_in_root(root, path)
    if not p.is_file():
        raise ToolError(f"File not found: {path}")
    size = p.stat().st_size
    if size > max_bytes:
        raise ToolError(f"{path} is {size} bytes; limit is {max_bytes}")
    try:
        return p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ToolError(f"Failed to read {path}: {e}") from e


def write_file(root: str | Path, path: str | Path, content: str) -> Path:
    """Replace a file inside `root` with `content`.

    The new content goes to a temporary sibling first and is renamed over
    the target, so an interrupted run never leaves a half-written source
    file. Existing file permissions are kept.

    Raises:
        ToolError: If the path is disallowed or the write fails.
    """
    p = resolve_in_root(root, path)
    if p.is_dir():
        raise ToolError(f"{path} is a directory")
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        mode = p.stat().st_mode if p.exists() else None
        fd, tmp = tempfile.mkstemp(dir=p.parent, prefix=f".{p.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            if mode is not None:
                os.chmod(tmp, mode)
            os.replace(tmp, p)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except OSError as e:
        raise ToolError(f"Failed to write {path}: {e}") from e
    logger.debug("Wrote %d chars to %s", len(content), p)
    return p
