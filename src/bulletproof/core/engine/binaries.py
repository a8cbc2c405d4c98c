"""External binary resolution.

Resolution order: explicit path, then environment override, then an
executable shipped beside the package or in the working directory, then the
bare platform default name (left to ``PATH`` lookup at spawn time).
"""

import os
import sys
from pathlib import Path
from typing import Final

IS_WINDOWS: Final = sys.platform == "win32"
PACKAGE_ROOT: Final = Path(__file__).resolve().parents[3]

WARPPLUS_ENV: Final = "WARPPLUS_BIN"
SINGBOX_ENV: Final = "SINGBOX_BIN"


def platform_name(base: str) -> str:
    return f"{base}.exe" if IS_WINDOWS else base


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def resolve_binary(explicit: str | None, env_var: str, default: str) -> str:
    """Resolve an engine binary path.

    Args:
        explicit: Path given in configuration, if any
        env_var: Environment variable consulted next
        default: Base name without platform suffix, e.g. ``"warp-plus"``

    Returns:
        str: A path or a bare name to be looked up on ``PATH``
    """
    if explicit:
        return explicit
    override = os.environ.get(env_var)
    if override:
        return override
    name = platform_name(default)
    for directory in (PACKAGE_ROOT, Path.cwd()):
        candidate = directory / name
        if _is_executable(candidate):
            return str(candidate)
    return name


def resolve_warpplus(explicit: str | None = None) -> str:
    return resolve_binary(explicit, WARPPLUS_ENV, "warp-plus")


def resolve_singbox(explicit: str | None = None) -> str:
    # sb-helper is the distributed helper name; a plain sing-box works too.
    return resolve_binary(explicit, SINGBOX_ENV, "sb-helper")
