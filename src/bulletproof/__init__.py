"""Always-on local SOCKS5 relay in front of interchangeable tunnel engines."""

import pathlib
import tomllib


def get_version() -> str:
    """Read version from pyproject.toml."""
    # Start from the current file's directory
    current_dir = pathlib.Path(__file__).parent
    # Look for pyproject.toml in parent directories
    for parent in [current_dir, *current_dir.parents]:
        pyproject_path = parent / "pyproject.toml"
        if pyproject_path.exists():
            with pyproject_path.open("rb") as f:
                pyproject_data = tomllib.load(f)
            project = pyproject_data.get("project", {})
            if project.get("name") == "bulletproof":
                return project["version"]

    # Fallback version if file not found
    return "0.0.0"


__version__ = get_version()
