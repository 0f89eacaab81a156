"""Content hashing and stagnation tracking across outer iterations."""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Callable, Iterable, Optional

from src.core.models import ConvergenceState
from src.tools import git_ops

logger = logging.getLogger("repairloop.orchestrator.convergence")

STATE_FILENAME = "convergence.json"


def hash_tree(repo_path: str | Path, ignore_dirs: Iterable[str] = ()) -> str:
    """SHA-1 over sorted paths and contents, skipping state and build directories.

    Uses git's file list when the path is a repository, a directory walk
    otherwise. Each file contributes ``path\\0content\\0``.
    """
    root = Path(repo_path)
    ignored = set(ignore_dirs)
    if git_ops.is_git_repo(str(root)):
        paths = git_ops.tracked_files(str(root))
    else:
        paths = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d not in ignored]
            for name in filenames:
                paths.append(Path(dirpath, name).relative_to(root).as_posix())

    digest = hashlib.sha1()
    for rel in sorted(paths):
        if any(part in ignored for part in Path(rel).parts):
            continue
        path = root / rel
        if not path.is_file():
            continue
        digest.update(rel.encode("utf-8") + b"\0")
        digest.update(path.read_bytes() + b"\0")
    return digest.hexdigest()


def backlog_complete(path: str | Path) -> bool:
    """True when a markdown checklist has ticked items and none left open."""
    p = Path(path)
    if not p.is_file():
        return False
    text = p.read_text(encoding="utf-8", errors="ignore")
    has_open = "- [ ]" in text
    has_done = "- [x]" in text or "- [X]" in text
    return has_done and not has_open


class ConvergenceTracker:
    """Counts consecutive iterations that left the tree unchanged.

    State is persisted so a restarted process keeps counting.
    """

    def __init__(
        self,
        repo_path: str | Path,
        threshold: int,
        state_dir: Optional[Path] = None,
        ignore_dirs: Iterable[str] = (),
        hasher: Optional[Callable[[], str]] = None,
    ):
        self.repo_path = Path(repo_path)
        self.threshold = threshold
        self.ignore_dirs = list(ignore_dirs)
        self.state_path = Path(state_dir) / STATE_FILENAME if state_dir else None
        self._hasher = hasher or (lambda: hash_tree(self.repo_path, self.ignore_dirs))
        self.state = self._load()

    @property
    def stagnant_count(self) -> int:
        return self.state.stagnant_count

    @property
    def converged(self) -> bool:
        return self.state.stagnant_count >= self.threshold

    def prime(self) -> None:
        """Record the starting hash without counting it, if nothing is stored yet."""
        if self.state.last_content_hash is None:
            self.state.last_content_hash = self._hasher()
            self._save()

    def observe(self, idle: bool = False) -> int:
        """Hash the tree once for this iteration and update the stagnation count.

        An idle iteration (nothing left in the backlog) counts as stagnant
        even if the hash moved.
        """
        current = self._hasher()
        if idle or current == self.state.last_content_hash:
            self.state.stagnant_count += 1
        else:
            self.state.stagnant_count = 0
        self.state.last_content_hash = current
        self._save()
        logger.info(
            "Content hash %s; stagnant for %d/%d iteration(s)",
            current[:12], self.state.stagnant_count, self.threshold,
        )
        return self.state.stagnant_count

    def reset(self) -> None:
        self.state = ConvergenceState()
        self._save()

    def _load(self) -> ConvergenceState:
        if self.state_path is None or not self.state_path.exists():
            return ConvergenceState()
        try:
            return ConvergenceState.model_validate_json(self.state_path.read_text())
        except ValueError as e:
            logger.warning("Ignoring unreadable convergence state: %s", e)
            return ConvergenceState()

    def _save(self) -> None:
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        self.state_path.write_text(self.state.model_dump_json(indent=2))
