import base64
import json

import pytest
import responses

from warpplus.warp import api
from warpplus.warp.account import (
    IDENTITY_FILE,
    create_identity,
    load_identity,
    load_or_create_identity,
    save_identity,
)
from warpplus.warp.keys import Key

REGISTERED = {
    "id": "device-1",
    "token": "token",
    "account": {"license": "", "id": "account-1"},
    "config": {
        "client_id": "AAAA",
        "peers": [
            {
                "public_key": "peer-public-key",
                "endpoint": {"host": "engage.example.com:2408", "ports": [2408]},
            }
        ],
        "interface": {"addresses": {"v4": "172.16.0.2", "v6": "fd01::2"}},
    },
}


@pytest.fixture
def mocked():
    with responses.RequestsMock() as rsps:
        yield rsps


def _identity(license_key=""):
    identity = api.Identity.from_dict(REGISTERED)
    identity.private_key = str(Key.generate_private())
    identity.account.license = license_key
    return identity


def test_save_and_load_round_trip(tmp_path):
    identity = _identity()
    save_identity(identity, tmp_path)
    loaded = load_identity(tmp_path)
    assert loaded == identity
    assert (tmp_path / IDENTITY_FILE).read_text(encoding="utf-8").endswith("\n")


def test_saved_file_is_indented_json(tmp_path):
    identity = _identity()
    save_identity(identity, tmp_path)
    text = (tmp_path / IDENTITY_FILE).read_text(encoding="utf-8")
    assert text.startswith('{\n  "private_key"')
    assert json.loads(text)["config"]["peers"][0]["public_key"] == "peer-public-key"


def test_load_rejects_identity_without_peers(tmp_path):
    identity = _identity()
    identity.config.peers = []
    save_identity(identity, tmp_path)
    with pytest.raises(ValueError, match="0 peers"):
        load_identity(tmp_path)


def test_load_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_identity(tmp_path / "absent")


def test_load_invalid_json_raises(tmp_path):
    (tmp_path / IDENTITY_FILE).write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        load_identity(tmp_path)


def test_create_identity_registers_public_key_of_private_key(mocked):
    mocked.add(responses.POST, api.API_BASE + "/reg", json=REGISTERED)
    identity = create_identity("")
    body = json.loads(mocked.calls[0].request.body)
    private = Key.from_bytes(base64.b64decode(identity.private_key))
    assert body["key"] == str(private.public_key())
    assert identity.id == "device-1"
    assert len(mocked.calls) == 1


def test_create_identity_with_license_updates_account(mocked):
    mocked.add(responses.POST, api.API_BASE + "/reg", json=REGISTERED)
    mocked.add(
        responses.PUT, api.API_BASE + "/reg/device-1/account", json={"license": "placeholder"}
    )
    mocked.add(
        responses.GET,
        api.API_BASE + "/reg/device-1/account",
        json={"license": "placeholder", "id": "account-1"},
    )
    identity = create_identity("placeholder")
    assert identity.account.license == "placeholder"
    assert json.loads(mocked.calls[1].request.body) == {"license": "placeholder"}
    assert mocked.calls[2].request.headers["Authorization"] == "Bearer token"


def test_load_or_create_uses_existing_identity_without_requests(tmp_path, mocked):
    identity = _identity()
    save_identity(identity, tmp_path)
    loaded = load_or_create_identity(tmp_path, "")
    assert loaded == identity
    assert len(mocked.calls) == 0


def test_load_or_create_registers_and_saves_when_missing(tmp_path, mocked):
    mocked.add(responses.POST, api.API_BASE + "/reg", json=REGISTERED)
    target = tmp_path / "primary"
    identity = load_or_create_identity(target, "")
    assert (target / IDENTITY_FILE).is_file()
    assert load_identity(target).private_key == identity.private_key


def test_load_or_create_replaces_broken_directory(tmp_path, mocked):
    mocked.add(responses.POST, api.API_BASE + "/reg", json=REGISTERED)
    (tmp_path / IDENTITY_FILE).write_text("[]", encoding="utf-8")
    (tmp_path / "stale.txt").write_text("stale", encoding="utf-8")
    load_or_create_identity(tmp_path, "")
    assert not (tmp_path / "stale.txt").exists()
    assert load_identity(tmp_path).id == "device-1"


def test_load_or_create_updates_changed_license(tmp_path, mocked):
    save_identity(_identity("old"), tmp_path)
    mocked.add(
        responses.PUT, api.API_BASE + "/reg/device-1/account", json={"license": "placeholder"}
    )
    mocked.add(
        responses.GET,
        api.API_BASE + "/reg/device-1/account",
        json={"license": "placeholder", "id": "account-1"},
    )
    identity = load_or_create_identity(tmp_path, "placeholder")
    assert identity.account.license == "placeholder"
    assert load_identity(tmp_path).account.license == "placeholder"


def test_load_or_create_propagates_api_failure(tmp_path, mocked):
    mocked.add(responses.POST, api.API_BASE + "/reg", status=500)
    with pytest.raises(api.ApiError):
        load_or_create_identity(tmp_path / "primary", "")