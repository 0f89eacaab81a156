"""Git operations for the repair loop.

Provides baseline reset, patch application, diff retrieval, commit and
the status/log snapshots used for error diagnostics. The pipeline resets
the tree before every attempt and commits only on a green build and test.
"""

from __future__ import annotations

import logging
import os
import tempfile
from typing import Optional

from src.core.exceptions import GitOperationError, PatchApplyError
from src.tools.shell import run_command

logger = logging.getLogger("repairloop.tools.git_ops")


def reset_hard(repo_path: str, ref: str = "HEAD", keep: Optional[list[str]] = None) -> None:
    """Discard tracked edits and remove untracked files.

    Ignored files and any `keep` paths (e.g. the state directory) survive.

    Raises:
        GitOperationError: If reset or clean fails.
    """
    result = run_command(["git", "reset", "--hard", ref], cwd=repo_path)
    if not result.success:
        raise GitOperationError(f"git reset --hard failed: {result.stderr}")

    clean_cmd = ["git", "clean", "-fd"]
    for path in keep or []:
        clean_cmd += ["-e", path]
    result = run_command(clean_cmd, cwd=repo_path)
    if not result.success:
        raise GitOperationError(f"git clean failed: {result.stderr}")
    logger.info("Working tree reset to %s", ref)


def apply_patch(repo_path: str, diff_text: str) -> None:
    """Apply a unified diff with `git apply`, checking it first.

    The tree is left untouched when the check fails.

    Raises:
        PatchApplyError: If git rejects the patch.
    """
    if not diff_text.endswith("\n"):
        diff_text += "\n"

    fd, patch_path = tempfile.mkstemp(suffix=".patch")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(diff_text)

        check = run_command(["git", "apply", "--check", "--whitespace=nowarn", patch_path], cwd=repo_path)
        if not check.success:
            raise PatchApplyError(f"git apply --check failed: {check.stderr.strip()}")

        result = run_command(["git", "apply", "--whitespace=nowarn", patch_path], cwd=repo_path)
        if not result.success:
            raise PatchApplyError(f"git apply failed: {result.stderr.strip()}")
    finally:
        os.unlink(patch_path)
    logger.info("Patch applied (%d bytes)", len(diff_text))


def working_diff(repo_path: str) -> str:
    """Everything that differs from HEAD, untracked files included."""
    result = run_command(["git", "diff", "HEAD"], cwd=repo_path)
    if not result.success:
        raise GitOperationError(f"git diff HEAD failed: {result.stderr}")
    parts = [result.stdout] if result.stdout else []

    untracked = run_command(["git", "ls-files", "--others", "--exclude-standard"], cwd=repo_path)
    for path in untracked.stdout.splitlines():
        if not path:
            continue
        # --no-index exits 1 when the files differ, which is always the case here
        added = run_command(["git", "diff", "--no-index", "--", "/dev/null", path], cwd=repo_path)
        if added.stdout:
            parts.append(added.stdout)
    return "".join(parts)


def diff_stat(repo_path: str) -> str:
    result = run_command(["git", "diff", "--stat"], cwd=repo_path)
    return result.stdout


def recent_log(repo_path: str, count: int = 5) -> str:
    result = run_command(["git", "log", "--oneline", f"-{count}"], cwd=repo_path)
    return result.stdout


def commit(repo_path: str, message: str, files: Optional[list[str]] = None) -> str:
    """Stage files and create a git commit.

    Args:
        repo_path: Path to the git repository.
        message: Commit message.
        files: Specific files to stage. If None, stages all changes.

    Returns:
        Commit hash, or "" when there was nothing to commit.

    Raises:
        GitOperationError: If commit fails.
    """
    if files:
        for f in files:
            result = run_command(["git", "add", f], cwd=repo_path)
            if not result.success:
                raise GitOperationError(f"git add failed for {f}: {result.stderr}")
    else:
        result = run_command(["git", "add", "-A"], cwd=repo_path)
        if not result.success:
            raise GitOperationError(f"git add -A failed: {result.stderr}")

    result = run_command(["git", "commit", "-m", message], cwd=repo_path)
    if not result.success:
        if "nothing to commit" in result.stdout or "nothing added to commit" in result.stdout:
            logger.info("Nothing to commit")
            return ""
        raise GitOperationError(f"git commit failed: {result.stderr}")

    hash_result = run_command(["git", "rev-parse", "HEAD"], cwd=repo_path)
    commit_hash = hash_result.stdout.strip()
    logger.info("Committed: %s", commit_hash[:8])
    return commit_hash


def get_status(repo_path: str) -> str:
    """Get git status output."""
    result = run_command(["git", "status", "--short"], cwd=repo_path)
    return result.stdout


def has_changes(repo_path: str) -> bool:
    return bool(get_status(repo_path).strip())


def tracked_files(repo_path: str) -> list[str]:
    """Paths known to git (tracked plus untracked-but-not-ignored)."""
    result = run_command(
        ["git", "ls-files", "--cached", "--others", "--exclude-standard"],
        cwd=repo_path,
    )
    if not result.success:
        raise GitOperationError(f"git ls-files failed: {result.stderr}")
    return sorted({line for line in result.stdout.splitlines() if line})


def current_branch(repo_path: str) -> str:
    result = run_command(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=repo_path)
    return result.stdout.strip()


def ensure_branch(repo_path: str, branch: str) -> None:
    """Check out `branch`, creating it from the current HEAD if needed."""
    if current_branch(repo_path) == branch:
        return
    exists = run_command(["git", "rev-parse", "--verify", "--quiet", branch], cwd=repo_path)
    cmd = ["git", "checkout", branch] if exists.success else ["git", "checkout", "-b", branch]
    result = run_command(cmd, cwd=repo_path)
    if not result.success:
        raise GitOperationError(f"git checkout {branch} failed: {result.stderr}")
    logger.info("On branch %s", branch)


def exclude_path(repo_path: str, pattern: str) -> None:
    """Add a pattern to .git/info/exclude so status, clean and commit skip it."""
    result = run_command(["git", "rev-parse", "--git-dir"], cwd=repo_path)
    if not result.success:
        raise GitOperationError(f"git rev-parse --git-dir failed: {result.stderr}")
    git_dir = os.path.join(repo_path, result.stdout.strip())
    exclude_file = os.path.join(git_dir, "info", "exclude")
    os.makedirs(os.path.dirname(exclude_file), exist_ok=True)

    existing = ""
    if os.path.exists(exclude_file):
        with open(exclude_file, encoding="utf-8") as handle:
            existing = handle.read()
    if pattern in existing.splitlines():
        return
    with open(exclude_file, "a", encoding="utf-8") as handle:
        if existing and not existing.endswith("\n"):
            handle.write("\n")
        handle.write(pattern + "\n")


def is_git_repo(path: str) -> bool:
    """Check if the given path is inside a git repository."""
    result = run_command(["git", "rev-parse", "--is-inside-work-tree"], cwd=path)
    return result.success and result.stdout.strip() == "true"


def head_commit(repo_path: str) -> str:
    result = run_command(["git", "rev-parse", "HEAD"], cwd=repo_path)
    if not result.success:
        raise GitOperationError(f"git rev-parse HEAD failed: {result.stderr}")
    return result.stdout.strip()


def diff_between(repo_path: str, base: str, head: str = "HEAD") -> str:
    """Committed changes from `base` to `head`."""
    result = run_command(["git", "diff", f"{base}..{head}"], cwd=repo_path)
    if not result.success:
        raise GitOperationError(f"git diff {base}..{head} failed: {result.stderr}")
    return result.stdout
