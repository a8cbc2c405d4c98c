import json
import os
import stat

import pytest

from bulletproof.core.exceptions import RegistrationFailed
from bulletproof.core.system.identity import Identity, IdentityStore


def test_load_missing_identity(tmp_path) -> None:
    assert IdentityStore().load(tmp_path) is None


def test_load_accepts_short_id_key(tmp_path) -> None:
    (tmp_path / "warp_identity.json").write_text(json.dumps({"id": "dev-1", "token": "t", "extra": 1}))

    identity = IdentityStore().load(tmp_path)

    assert identity == Identity(device_id="dev-1", token="t")


def test_load_rejects_identity_without_device_id(tmp_path) -> None:
    (tmp_path / "warp_identity.json").write_text(json.dumps({"device_id": "", "token": "t"}))

    assert IdentityStore().load(tmp_path) is None


def test_ensure_registers_and_persists(tmp_path) -> None:
    calls = []

    def registrar() -> Identity:
        calls.append(1)
        return Identity(device_id="dev-2", private_key="secret")

    store = IdentityStore(registrar)

    first = store.ensure_identity(tmp_path / "state")
    second = store.ensure_identity(tmp_path / "state")

    assert first == second == Identity(device_id="dev-2", private_key="secret")
    assert calls == [1]
    saved = json.loads(IdentityStore.path(tmp_path / "state").read_text())
    assert saved["device_id"] == "dev-2"


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
def test_identity_file_is_private(tmp_path) -> None:
    IdentityStore(lambda: Identity(device_id="dev-3")).ensure_identity(tmp_path)

    mode = stat.S_IMODE(IdentityStore.path(tmp_path).stat().st_mode)
    assert mode == 0o600


def test_ensure_without_registrar_fails(tmp_path) -> None:
    with pytest.raises(RegistrationFailed):
        IdentityStore().ensure_identity(tmp_path)


def test_registrar_errors_become_registration_failed(tmp_path) -> None:
    def registrar() -> Identity:
        raise ConnectionError("api down")

    with pytest.raises(RegistrationFailed, match="api down"):
        IdentityStore(registrar).ensure_identity(tmp_path)

    assert not IdentityStore.path(tmp_path).exists()


def test_reset_removes_identity(tmp_path) -> None:
    store = IdentityStore(lambda: Identity(device_id="dev-4"))
    store.ensure_identity(tmp_path)

    store.reset(tmp_path)
    store.reset(tmp_path)

    assert store.load(tmp_path) is None
