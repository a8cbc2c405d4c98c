"""OS system-proxy control for the PAC integration.

Backends:
- macOS: ``networksetup`` on every enabled network service
- GNOME desktops: ``gsettings`` (``mode auto`` plus ``autoconfig-url``)
- anything else: :class:`UnsupportedProxy`, which raises ``SystemProxyError``

All failures surface as :class:`SystemProxyError`; callers treat them as
non-fatal.
"""

from __future__ import annotations

import shutil
import subprocess
import sys
from typing import Final, Protocol

from loguru import logger

from bulletproof.core.exceptions import SystemProxyError

COMMAND_TIMEOUT: Final = 10.0  # seconds
NETWORKSETUP_HEADER: Final = "An asterisk (*) denotes"


class SystemProxy(Protocol):
    def enable_pac(self, pac_url: str) -> None: ...

    def disable_pac(self) -> None: ...


def _run(*args: str) -> str:
    try:
        result = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise SystemProxyError(f"{args[0]} failed: {e}") from e
    return result.stdout


class NetworkSetupProxy:
    """macOS: set the automatic proxy URL on all enabled services."""

    def services(self) -> list[str]:
        output = _run("networksetup", "-listallnetworkservices")
        services = []
        for line in output.splitlines():
            line = line.strip()
            # Disabled services are prefixed with an asterisk
            if not line or line.startswith(NETWORKSETUP_HEADER) or line.startswith("*"):
                continue
            services.append(line)
        if not services:
            raise SystemProxyError("no network services found")
        return services

    def enable_pac(self, pac_url: str) -> None:
        for service in self.services():
            _run("networksetup", "-setautoproxyurl", service, pac_url)
            _run("networksetup", "-setautoproxystate", service, "on")
        logger.info(f"System proxy set to {pac_url}")

    def disable_pac(self) -> None:
        for service in self.services():
            _run("networksetup", "-setautoproxystate", service, "off")
        logger.info("System proxy disabled")


class GSettingsProxy:
    """GNOME: switch the desktop proxy to automatic configuration."""

    SCHEMA: Final = "org.gnome.system.proxy"

    def enable_pac(self, pac_url: str) -> None:
        _run("gsettings", "set", self.SCHEMA, "autoconfig-url", pac_url)
        _run("gsettings", "set", self.SCHEMA, "mode", "auto")
        logger.info(f"System proxy set to {pac_url}")

    def disable_pac(self) -> None:
        _run("gsettings", "set", self.SCHEMA, "mode", "none")
        logger.info("System proxy disabled")


class UnsupportedProxy:
    def enable_pac(self, pac_url: str) -> None:
        raise SystemProxyError(f"PAC control not implemented for {sys.platform}")

    def disable_pac(self) -> None:
        raise SystemProxyError(f"PAC control not implemented for {sys.platform}")


def get_system_proxy() -> SystemProxy:
    """Pick the backend for the running platform."""
    if sys.platform == "darwin":
        return NetworkSetupProxy()
    if sys.platform.startswith("linux") and shutil.which("gsettings"):
        return GSettingsProxy()
    return UnsupportedProxy()
