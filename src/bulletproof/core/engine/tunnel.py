"""Supervision of the ``warp-plus`` tunnel engine.

The engine exposes a SOCKS5 listener on its bind address once the tunnel is
up. The command line is derived entirely from a frozen :class:`TunnelConfig`
so candidate search can cheaply derive per-attempt copies.

Example:
    engine = TunnelEngine(TunnelConfig(mode="gool", cache_dir=state_dir))
    engine.start()
    ...
    engine.stop()
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Final

from bulletproof.core.engine.base import SupervisedEngine
from bulletproof.core.engine.binaries import resolve_warpplus
from bulletproof.core.engine.process import ProcessRunner
from bulletproof.core.exceptions import UnknownMode

RESERVED_PORT: Final = 8086
INTERNAL_BIND: Final = f"127.0.0.1:{RESERVED_PORT}"


class TunnelMode(str, Enum):
    """Engine operating modes and the flags they add."""

    WARP = "warp"
    GOOL = "gool"
    PSIPHON = "psiphon"

    @classmethod
    def parse(cls, value: str | None) -> TunnelMode:
        normalized = (value or "").strip().lower()
        if normalized in ("", "warp"):
            return cls.WARP
        if normalized == "gool":
            return cls.GOOL
        if normalized in ("psiphon", "cfon"):
            return cls.PSIPHON
        raise UnknownMode(value or "")


@dataclass(frozen=True)
class TunnelConfig:
    """Everything needed to launch one engine instance.

    Attributes:
        binary: Explicit engine path (resolved from the environment if empty)
        key: WARP or WARP+ license key
        endpoint: Remote endpoint ``ip:port``; the engine picks one if empty
        bind: Local SOCKS5 listen address of the engine
        mode: ``warp``, ``gool`` or ``psiphon`` (alias ``cfon``)
        country: Exit country code for psiphon mode
        cache_dir: Engine state/cache directory
        log_path: File receiving engine stdout/stderr
        test_url: Connectivity probe URL the engine should use
        dns: DNS server handed to the engine
        ipv4_only: Restrict to IPv4 endpoints
        ipv6_only: Restrict to IPv6 endpoints
        verbose: Ask the engine for verbose logs
    """

    binary: str | None = None
    key: str | None = None
    endpoint: str | None = None
    bind: str = INTERNAL_BIND
    mode: str = TunnelMode.WARP.value
    country: str | None = None
    cache_dir: Path | None = None
    log_path: Path | None = None
    test_url: str | None = None
    dns: str | None = None
    ipv4_only: bool = False
    ipv6_only: bool = False
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.ipv4_only and self.ipv6_only:
            raise ValueError("ipv4_only and ipv6_only are mutually exclusive")


def build_tunnel_args(config: TunnelConfig) -> list[str]:
    """Translate a :class:`TunnelConfig` into engine flags.

    Raises:
        UnknownMode: If ``config.mode`` is not supported
    """
    mode = TunnelMode.parse(config.mode)
    args: list[str] = []
    if config.verbose:
        args.append("--verbose")
    args += ["--bind", config.bind or INTERNAL_BIND]
    if config.ipv4_only:
        args.append("-4")
    if config.ipv6_only:
        args.append("-6")
    if config.key:
        args += ["--key", config.key]
    if config.endpoint:
        args += ["--endpoint", config.endpoint]
    if config.cache_dir is not None:
        args += ["--cache-dir", str(config.cache_dir)]
    if config.dns:
        args += ["--dns", config.dns]
    if config.test_url:
        args += ["--test-url", config.test_url]

    if mode is TunnelMode.GOOL:
        args.append("--gool")
    elif mode is TunnelMode.PSIPHON:
        args.append("--cfon")
        if config.country:
            args += ["--country", config.country]
    return args


class TunnelEngine(SupervisedEngine):
    """Supervises one ``warp-plus`` process."""

    name = "warp-plus"

    def __init__(self, config: TunnelConfig, runner: ProcessRunner | None = None) -> None:
        super().__init__(resolve_warpplus(config.binary), runner)
        self.config = config

    @property
    def bind(self) -> str:
        return self.config.bind or INTERNAL_BIND

    @property
    def log_path(self) -> Path | None:
        return self.config.log_path

    def build_args(self) -> list[str]:
        return build_tunnel_args(self.config)
