"""Device identity persistence.

The WARP-based engines need a registered device. The identity lives in
``<state_dir>/warp_identity.json`` (owner read/write only). Registration
itself is delegated to an injected registrar callable; without one, a
missing identity is a :class:`RegistrationFailed` error.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Final

from loguru import logger

from bulletproof.core.exceptions import RegistrationFailed
from bulletproof.core.store import Store

IDENTITY_FILE: Final = "warp_identity.json"


@dataclass(frozen=True)
class Identity:
    device_id: str
    token: str = ""
    account_id: str = ""
    private_key: str = ""
    public_key: str = ""
    license: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Identity:
        data = dict(data)
        # Accept the short key used by older identity files
        if "device_id" not in data and "id" in data:
            data["device_id"] = data.pop("id")
        known = {f.name for f in fields(cls)}
        return cls(**{k: str(v) for k, v in data.items() if k in known and v is not None})


Registrar = Callable[[], Identity]


class IdentityStore:
    """Load, create and reset the device identity in a state directory."""

    def __init__(self, registrar: Registrar | None = None) -> None:
        self.registrar = registrar

    @staticmethod
    def path(state_dir: Path) -> Path:
        return Path(state_dir) / IDENTITY_FILE

    def load(self, state_dir: Path) -> Identity | None:
        """Return the saved identity, or None if missing or incomplete."""
        data = Store(state_dir).read_json(IDENTITY_FILE)
        if not isinstance(data, dict):
            return None
        try:
            identity = Identity.from_dict(data)
        except TypeError:
            return None
        return identity if identity.device_id else None

    def reset(self, state_dir: Path) -> None:
        """Remove the saved identity; the next connect registers again."""
        self.path(state_dir).unlink(missing_ok=True)
        logger.info(f"Identity reset in {state_dir}")

    def ensure_identity(self, state_dir: Path) -> Identity:
        """Return the saved identity, registering a new one if needed.

        Raises:
            RegistrationFailed: If no identity exists and registration fails
        """
        existing = self.load(state_dir)
        if existing is not None:
            return existing
        if self.registrar is None:
            raise RegistrationFailed(f"no identity in {state_dir} and no registrar configured")
        try:
            identity = self.registrar()
        except Exception as e:
            raise RegistrationFailed(str(e)) from e
        if not identity.device_id:
            raise RegistrationFailed("registrar returned an identity without a device id")
        try:
            Store(state_dir).write_json(IDENTITY_FILE, asdict(identity), mode=0o600)
        except OSError as e:
            raise RegistrationFailed(f"cannot persist identity: {e}") from e
        logger.info(f"Registered device {identity.device_id}")
        return identity
