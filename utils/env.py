from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv

"""Environment helper utilities.

Loads a `.env` file from the project root so that worker settings such as
``REPRICING_MARGIN`` or ``LOG_LEVEL`` defined there become available via
``os.getenv``. Values already present in the process environment win.
"""

__all__ = ["load_project_dotenv"]


def _find_project_root(start: Path | None = None) -> Path:
    """Traverse upwards until we find a directory that contains `pyproject.toml`."""
    current = start or Path(__file__).resolve().parent
    for _ in range(10):
        if (current / "pyproject.toml").exists():
            return current
        if current.parent == current:
            break
        current = current.parent
    return Path(__file__).resolve().parent


def load_project_dotenv(start: Path | None = None) -> bool:
    """Load the project-level `.env` if present. Returns True when one was loaded."""
    dotenv_path = _find_project_root(start) / ".env"
    if not dotenv_path.exists():
        return False
    load_dotenv(dotenv_path=dotenv_path, override=False)
    return True
