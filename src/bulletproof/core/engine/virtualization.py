"""Supervision of the TUN virtualization engine (``sing-box`` / ``sb-helper``).

Before every spawn the engine (re)writes a routing configuration that
declares a TUN inbound and sends everything to the relay's SOCKS5 address,
so the whole system's traffic ends up in the relay.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from bulletproof.core.engine.base import SupervisedEngine
from bulletproof.core.engine.binaries import resolve_singbox
from bulletproof.core.engine.process import ProcessRunner
from bulletproof.core.network import split_host_port

CONFIG_FILENAME: Final = "singbox.json"
SOCKS_OUTBOUND_TAG: Final = "socks-out"
DEFAULT_SOCKS_ADDRESS: Final = "127.0.0.1:8086"
TUN_ADDRESS: Final = "172.19.0.1/30"
DNS_SERVERS: Final = ("https://1.1.1.1/dns-query",)


def build_routing_config(socks_address: str) -> dict[str, Any]:
    """Return the TUN -> SOCKS5 routing document for ``socks_address``."""
    try:
        host, port = split_host_port(socks_address)
    except ValueError:
        host, port = split_host_port(DEFAULT_SOCKS_ADDRESS)
    return {
        "log": {"disabled": True},
        "dns": {"servers": list(DNS_SERVERS)},
        "inbounds": [
            {
                "type": "tun",
                "inet4_address": TUN_ADDRESS,
                "auto_route": True,
                "strict_route": False,
                "stack": "gvisor",
                "sniff": True,
            }
        ],
        "outbounds": [
            {
                "type": "socks",
                "server": host,
                "server_port": port,
                "version": "5",
                "tag": SOCKS_OUTBOUND_TAG,
            },
            {"type": "direct", "tag": "direct"},
            {"type": "block", "tag": "block"},
        ],
        "route": {"auto_route": True, "final": SOCKS_OUTBOUND_TAG},
    }


def write_routing_config(path: Path, socks_address: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(build_routing_config(socks_address), indent=2), encoding="utf-8")
    return path


def read_socks_outbound(path: Path) -> tuple[str, int]:
    """Return the ``(server, server_port)`` of the SOCKS5 outbound in ``path``.

    Raises:
        ValueError: If the file has no SOCKS5 outbound
    """
    document = json.loads(path.read_text(encoding="utf-8"))
    for outbound in document.get("outbounds", []):
        if outbound.get("type") == "socks":
            return outbound["server"], int(outbound["server_port"])
    raise ValueError(f"no socks outbound in {path}")


@dataclass(frozen=True)
class VirtualizationConfig:
    state_dir: Path
    socks_address: str = DEFAULT_SOCKS_ADDRESS
    binary: str | None = None


class VirtualizationEngine(SupervisedEngine):
    """Supervises one TUN engine process running a generated config."""

    name = "sing-box"

    def __init__(self, config: VirtualizationConfig, runner: ProcessRunner | None = None) -> None:
        super().__init__(resolve_singbox(config.binary), runner)
        self.config = config

    @property
    def config_path(self) -> Path:
        return self.config.state_dir / CONFIG_FILENAME

    def prepare(self) -> None:
        write_routing_config(self.config_path, self.config.socks_address or DEFAULT_SOCKS_ADDRESS)

    def build_args(self) -> list[str]:
        # Plain sing-box needs the "run" subcommand; the helper takes -c directly.
        if Path(self.binary).name in ("sing-box", "sing-box.exe"):
            return ["run", "-c", str(self.config_path)]
        return ["-c", str(self.config_path)]
