"""Collaborators that touch the host system: proxy settings, PAC, identity."""

from .identity import Identity, IdentityStore
from .pac import PacServer, pac_script
from .proxy import SystemProxy, get_system_proxy

__all__ = ["Identity", "IdentityStore", "PacServer", "SystemProxy", "get_system_proxy", "pac_script"]
