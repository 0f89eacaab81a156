"""Console-script entry point.

The implementation lives in the top-level `src` package, a name other
projects on the same interpreter may also use. The project root goes
first on sys.path, and the launcher refuses to run a `src.cli` that was
loaded from somewhere else.
"""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def main() -> None:
    root = str(PROJECT_ROOT)
    if sys.path[:1] != [root]:
        if root in sys.path:
            sys.path.remove(root)
        sys.path.insert(0, root)

    from src import cli

    loaded_from = Path(cli.__file__).resolve()
    if PROJECT_ROOT not in loaded_from.parents:
        raise SystemExit(
            f"repairloop: imported src.cli from {loaded_from}, not from {PROJECT_ROOT}. "
            "Another installed project also provides a top-level 'src' package."
        )
    cli.main()


if __name__ == "__main__":
    main()
