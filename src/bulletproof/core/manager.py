"""Session manager: at most one provider is active at a time.

The manager serializes connect, disconnect and status behind one lock, so a
connect that replaces a running session never overlaps with its teardown.

Example:
    manager = Manager(state_dir, default_providers(settings), identity=IdentityStore())
    status = manager.connect(ConnectRequest("warp", options={"integration": "pac"}))
    ...
    manager.disconnect()
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from loguru import logger

from bulletproof.core.exceptions import RegistrationFailed, UnknownProvider
from bulletproof.core.providers.common import best_effort
from bulletproof.core.store import Store
from bulletproof.core.types import ConnectRequest, Provider, Status


class IdentityCollaborator(Protocol):
    def ensure_identity(self, state_dir: Path) -> object: ...


class Manager:
    """Owns the provider registry and the single active session."""

    def __init__(
        self,
        state_dir: Path,
        providers: Mapping[str, Provider],
        identity: IdentityCollaborator | None = None,
    ) -> None:
        self.store = Store(state_dir)
        self.providers = dict(providers)
        self.identity = identity
        self._lock = threading.RLock()
        self._active: Provider | None = None
        self._status = Status.empty()
        self._since: datetime | None = None

    @property
    def state_dir(self) -> Path:
        return self.store.directory

    def _ensure_identity(self, provider: Provider, kind: str) -> None:
        if self.identity is None or not getattr(provider, "requires_identity", False):
            return
        try:
            self.identity.ensure_identity(self.state_dir)
        except Exception as e:
            error = e if isinstance(e, RegistrationFailed) else RegistrationFailed(str(e))
            self._status = Status(provider_kind=kind, message=f"registration failed: {error}")
            raise error from e

    def connect(self, request: ConnectRequest) -> Status:
        """Activate the requested provider, replacing any active session.

        Raises:
            UnknownProvider: If nothing is registered for the request's kind
            RegistrationFailed: If the identity prerequisite failed
            BulletproofError: Whatever the provider's connect raised
        """
        with self._lock:
            provider = self.providers.get(request.provider_kind)
            if provider is None:
                raise UnknownProvider(request.provider_kind)

            self._ensure_identity(provider, request.provider_kind)

            # Provider instances are reused, so even the same kind is torn down first.
            if self._active is not None:
                best_effort(f"Disconnecting {self._active.kind}", self._active.disconnect)
                self._active = None
                self._since = None

            self.store.ensure()
            derived = request.with_options(state_dir=str(self.state_dir))
            logger.info(f"Connecting {request.provider_kind}")
            try:
                provider.connect(derived)
            except Exception as e:
                self._status = Status(
                    provider_kind=request.provider_kind,
                    exit_country=request.exit_country,
                    message=str(e),
                )
                logger.error(f"{request.provider_kind} connect failed: {e}")
                raise

            self._active = provider
            self._since = datetime.now(tz=UTC)
            self._status = replace(provider.status(), connected=True, since=self._since)
            return self._status

    def disconnect(self) -> Status:
        """Tear down the active session; a no-op returning an empty status when idle."""
        with self._lock:
            if self._active is not None:
                best_effort(f"Disconnecting {self._active.kind}", self._active.disconnect)
                logger.info(f"Disconnected {self._active.kind}")
            self._active = None
            self._since = None
            self._status = Status.empty()
            return self._status

    def status(self) -> Status:
        """Live status of the active provider, or the last recorded one."""
        with self._lock:
            if self._active is not None:
                return replace(self._active.status(), since=self._since)
            return self._status

    def close(self) -> None:
        self.disconnect()
