"""Iteration mode selection.

Each outer iteration runs in one mode:
    normal     default
    bughunt    every loop.bug_hunt_every iterations
    stability  every loop.stability_every iterations (0 disables; wins over bughunt)
    idle       the backlog has nothing left to do; the builder phase is skipped

A forced-mode file in the state directory overrides all of the above
until an operator removes it. The chosen mode is written to mode.txt
for whoever watches the run.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from src.core.config import LoopConfig
from src.core.models import IterationMode
from src.orchestrator.convergence import backlog_complete

logger = logging.getLogger("repairloop.orchestrator.modes")

MODE_FILENAME = "mode.txt"

MODE_FOCUS = {
    IterationMode.NORMAL: "",
    IterationMode.BUGHUNT: (
        "Bug hunt: besides the reported failures, look for latent defects in the code "
        "around them (unchecked errors, off-by-one bounds, missing null checks)."
    ),
    IterationMode.STABILITY: (
        "Stability: restore a green build and tests with the smallest possible change. "
        "No refactoring and no new features."
    ),
    IterationMode.IDLE: "",
}


def select_mode(
    iteration: int,
    config: LoopConfig,
    backlog_path: Path,
    state_dir: Optional[Path] = None,
) -> IterationMode:
    mode = IterationMode.NORMAL
    if config.bug_hunt_every > 0 and iteration % config.bug_hunt_every == 0:
        mode = IterationMode.BUGHUNT
    if config.stability_every > 0 and iteration % config.stability_every == 0:
        mode = IterationMode.STABILITY
    if backlog_complete(backlog_path):
        mode = IterationMode.IDLE
    if state_dir is not None:
        forced = read_forced_mode(Path(state_dir) / config.forced_mode_file)
        if forced is not None:
            logger.info("Forced mode: %s", forced.value)
            mode = forced
    return mode


def read_forced_mode(path: Path) -> Optional[IterationMode]:
    if not path.is_file():
        return None
    text = path.read_text().strip().lower()
    try:
        return IterationMode(text)
    except ValueError:
        logger.warning("Ignoring unknown forced mode %r in %s", text, path)
        return None


def force_mode(path: Path, mode: IterationMode) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(mode.value + "\n")


def write_mode(state_dir: Path, mode: IterationMode) -> None:
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / MODE_FILENAME).write_text(mode.value + "\n")


def mode_context(mode: IterationMode) -> str:
    """Prompt paragraph naming the mode; empty for normal iterations."""
    focus = MODE_FOCUS.get(mode, "")
    if not focus:
        return ""
    return f"Current mode: {mode.value}. {focus}"
