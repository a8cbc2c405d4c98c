"""Provider variants, keyed by the kind a connect request names.

- ``warp``: :class:`FallbackSearchTunnel`
- ``gool``: :class:`DualProbeTunnel`
- ``psiphon``: :class:`DirectTunnel`
"""

from __future__ import annotations

from bulletproof.core.config import Settings, load_settings
from bulletproof.core.engine.process import ProcessRunner
from bulletproof.core.system.proxy import SystemProxy
from bulletproof.core.types import Provider

from .direct import DirectTunnel
from .dual_probe import DualProbeTunnel
from .fallback import FallbackSearchTunnel

PROVIDER_CLASSES: dict[str, type[DirectTunnel | FallbackSearchTunnel]] = {
    FallbackSearchTunnel.kind: FallbackSearchTunnel,
    DualProbeTunnel.kind: DualProbeTunnel,
    DirectTunnel.kind: DirectTunnel,
}


def default_providers(
    settings: Settings | None = None,
    *,
    runner: ProcessRunner | None = None,
    system_proxy: SystemProxy | None = None,
) -> dict[str, Provider]:
    """One instance of every provider variant, sharing settings and collaborators."""
    settings = settings or load_settings()
    return {
        kind: cls(settings, runner=runner, system_proxy=system_proxy) for kind, cls in PROVIDER_CLASSES.items()
    }


__all__ = [
    "PROVIDER_CLASSES",
    "DirectTunnel",
    "DualProbeTunnel",
    "FallbackSearchTunnel",
    "default_providers",
]
