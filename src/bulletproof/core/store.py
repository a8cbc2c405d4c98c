"""State directory persistence and public bind selection.

The relay's public address should survive restarts so that client
applications keep working without reconfiguration. The chosen bind is kept in
``<state_dir>/socks-bind.json`` as ``{"bind": "host:port"}``.

Bind selection order:
1. the explicitly requested address
2. the last persisted address
3. the first free port in 8087-8090 on 127.0.0.1

Any candidate ending in the engine's reserved port is skipped.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Final

from loguru import logger

from bulletproof.core.engine.tunnel import RESERVED_PORT
from bulletproof.core.exceptions import BindUnavailable
from bulletproof.core.network import join_host_port, try_listen

BIND_FILE: Final = "socks-bind.json"
PUBLIC_HOST: Final = "127.0.0.1"
PUBLIC_PORT_RANGE: Final = range(8087, 8091)


class Store:
    """Small JSON file store rooted at the state directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path(self, name: str) -> Path:
        return self.directory / name

    def ensure(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def read_json(self, name: str) -> Any | None:
        """Return the decoded document, or None if missing or unreadable."""
        try:
            return json.loads(self.path(name).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable state file {self.path(name)}: {e}")
            return None

    def write_json(self, name: str, data: Any, *, mode: int | None = None) -> Path:
        self.ensure()
        target = self.path(name)
        target.write_text(json.dumps(data), encoding="utf-8")
        if mode is not None and os.name != "nt":
            target.chmod(mode)
        return target


def _is_reserved(address: str) -> bool:
    return address.endswith(f":{RESERVED_PORT}")


def load_bind(state_dir: Path) -> str | None:
    data = Store(state_dir).read_json(BIND_FILE)
    if not isinstance(data, dict):
        return None
    bind = data.get("bind")
    return bind if isinstance(bind, str) and bind else None


def persist_bind(state_dir: Path, bind: str) -> None:
    """Remember ``bind`` for the next session (failures are only logged)."""
    try:
        Store(state_dir).write_json(BIND_FILE, {"bind": bind})
    except OSError as e:
        logger.warning(f"Could not persist relay bind {bind}: {e}")


def choose_public_bind(state_dir: Path, requested: str | None = None) -> str:
    """Pick the relay's public listen address.

    Args:
        state_dir: Directory holding the persisted bind record
        requested: Address asked for by the caller, if any

    Returns:
        str: A ``host:port`` that could be bound just now

    Raises:
        BindUnavailable: If every candidate is taken
    """
    if requested and not _is_reserved(requested) and try_listen(requested):
        return requested

    last = load_bind(state_dir)
    if last and not _is_reserved(last) and try_listen(last):
        return last

    for port in PUBLIC_PORT_RANGE:
        candidate = join_host_port(PUBLIC_HOST, port)
        if try_listen(candidate):
            return candidate

    first, last_port = PUBLIC_PORT_RANGE[0], PUBLIC_PORT_RANGE[-1]
    raise BindUnavailable(f"no available port in {first}-{last_port}")
