"""Shared data types: connect requests, status snapshots and the provider seam.

A :class:`Status` is never mutated in place. Providers keep theirs in a
:class:`StatusHolder`, which swaps whole snapshots under a lock, so a reader
always sees one consistent transition even while a background search is
updating the session.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Protocol


def _freeze(options: Mapping[str, str] | None) -> Mapping[str, str]:
    return MappingProxyType(dict(options or {}))


@dataclass(frozen=True)
class ConnectRequest:
    """What the caller asked for.

    Attributes:
        provider_kind: ``warp``, ``gool`` or ``psiphon``
        exit_country: Optional exit country code
        server: Optional remote endpoint host
        port: Optional remote endpoint port (0 means unset)
        options: Free-form string options (``bin``, ``key``, ``bind``, ...)
    """

    provider_kind: str
    exit_country: str | None = None
    server: str | None = None
    port: int = 0
    options: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "options", _freeze(self.options))

    def option(self, key: str, default: str | None = None) -> str | None:
        value = self.options.get(key)
        return value if value else default

    def with_options(self, **extra: str) -> ConnectRequest:
        """Return a copy whose options also carry ``extra``."""
        return replace(self, options={**self.options, **extra})


@dataclass(frozen=True)
class Status:
    """Observable state of the tunnel session."""

    connected: bool = False
    provider_kind: str | None = None
    since: datetime | None = None
    exit_country: str | None = None
    message: str = ""
    integration_mode: str | None = None
    bind_address: str | None = None
    pac_enabled: bool = False
    virtualization_active: bool = False

    @classmethod
    def empty(cls) -> Status:
        return cls()

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["since"] = self.since.isoformat() if self.since else None
        return data


class StatusHolder:
    """Lock-guarded holder swapping immutable :class:`Status` snapshots."""

    def __init__(self, initial: Status | None = None) -> None:
        self._status = initial or Status.empty()
        self._lock = threading.Lock()

    def get(self) -> Status:
        with self._lock:
            return self._status

    def set(self, status: Status) -> None:
        with self._lock:
            self._status = status

    def update(self, **changes: Any) -> Status:
        """Atomically derive a new snapshot from the current one."""
        with self._lock:
            self._status = replace(self._status, **changes)
            return self._status

    def update_if(self, predicate: Callable[[Status], bool], **changes: Any) -> bool:
        """Apply ``changes`` only when ``predicate`` holds for the current snapshot."""
        with self._lock:
            if not predicate(self._status):
                return False
            self._status = replace(self._status, **changes)
            return True


class Provider(Protocol):
    """A tunnel strategy the manager can activate."""

    kind: str
    requires_identity: bool

    def connect(self, request: ConnectRequest) -> None:
        """Bring the session up or raise; may leave work running in the background."""
        ...

    def disconnect(self) -> None:
        """Tear everything down; never raises for component failures."""
        ...

    def status(self) -> Status: ...
