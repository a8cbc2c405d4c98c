"""Environment-driven settings.

All knobs are read once by :func:`load_settings` into an immutable
:class:`Settings`. Components receive the settings object explicitly instead
of consulting ``os.environ`` at call sites.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final

DEFAULT_STATE_DIR: Final = Path.home() / ".bulletproof" / "state"
DEFAULT_PAC_BIND: Final = "127.0.0.1:4765"
DEFAULT_PROBE_TIMEOUT: Final = 45.0
DEFAULT_SCAN_PROBE_TIMEOUT: Final = 35.0

_FALSE_VALUES: Final = {"", "0", "false", "no", "off"}


def env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in _FALSE_VALUES


def env_float(name: str, default: float) -> float:
    value = env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def env_list(name: str) -> tuple[str, ...]:
    """Split a comma-separated variable, dropping blanks."""
    value = os.getenv(name)
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    state_dir: Path = DEFAULT_STATE_DIR
    log_level: str = "INFO"
    direct_fallback: bool = False
    pac_bind: str = DEFAULT_PAC_BIND
    warpplus_bin: str | None = None
    singbox_bin: str | None = None
    test_url: str | None = None
    test_urls: tuple[str, ...] = ()
    ipv4_only: bool = False
    ipv6_only: bool = False
    verbose: bool = False
    dns: str | None = None
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    scan_probe_timeout: float = DEFAULT_SCAN_PROBE_TIMEOUT


def load_settings() -> Settings:
    """Build :class:`Settings` from the process environment."""
    state_dir = env_str("BP_STATE_DIR")
    return Settings(
        state_dir=Path(state_dir).expanduser() if state_dir else DEFAULT_STATE_DIR,
        log_level=(env_str("BP_LOG_LEVEL", "INFO") or "INFO").upper(),
        direct_fallback=env_bool("BP_SOCKS_DIRECT_FALLBACK"),
        pac_bind=env_str("BP_PAC_BIND", DEFAULT_PAC_BIND) or DEFAULT_PAC_BIND,
        warpplus_bin=env_str("WARPPLUS_BIN"),
        singbox_bin=env_str("SINGBOX_BIN"),
        test_url=env_str("WARPPLUS_TEST_URL"),
        test_urls=env_list("WARPPLUS_TEST_URLS"),
        ipv4_only=env_bool("WARPPLUS_IPV4"),
        ipv6_only=env_bool("WARPPLUS_IPV6"),
        verbose=env_bool("WARPPLUS_VERBOSE"),
        dns=env_str("WARPPLUS_DNS"),
        probe_timeout=max(1.0, env_float("BP_PROBE_TIMEOUT", DEFAULT_PROBE_TIMEOUT)),
        scan_probe_timeout=max(1.0, env_float("BP_SCAN_PROBE_TIMEOUT", DEFAULT_SCAN_PROBE_TIMEOUT)),
    )
