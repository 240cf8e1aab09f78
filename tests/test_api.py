import json

import pytest
import responses

from warpplus.warp.api import (
    API_BASE,
    ApiError,
    Identity,
    IdentityAccount,
    default_headers,
    delete_device,
    get_account,
    get_bound_devices,
    get_source_device,
    register,
    reset_account_license,
    update_account,
    update_bound_device,
    update_source_device,
)

AUTH_TOKEN = "token"
DEVICE_ID = "device-1"

IDENTITY_JSON = {
    "id": DEVICE_ID,
    "token": "token",
    "key": "placeholder",
    "type": "Android",
    "warp_enabled": True,
    "account": {"license": "placeholder", "warp_plus": True, "quota": 10},
    "config": {
        "client_id": "AAAA",
        "peers": [
            {
                "public_key": "placeholder",
                "endpoint": {"v4": "162.159.192.1:0", "host": "engage.example.com:2408", "ports": [2408, 500]},
            }
        ],
        "interface": {"addresses": {"v4": "172.16.0.2", "v6": "fd01::2"}},
        "services": {"http_proxy": "172.16.0.1:2480"},
    },
}


@pytest.fixture
def mocked():
    with responses.RequestsMock() as rsps:
        yield rsps


def test_default_headers():
    headers = default_headers()
    assert headers["User-Agent"] == "okhttp/3.12.1"
    assert headers["CF-Client-Version"] == "a-6.30-3596"
    assert headers["Content-Type"] == "application/json; charset=UTF-8"


def test_get_account(mocked):
    mocked.add(
        responses.GET,
        f"{API_BASE}/reg/{DEVICE_ID}/account",
        json={"license": "placeholder", "warp_plus": True, "quota": 7, "id": "acc"},
    )
    account = get_account(AUTH_TOKEN, DEVICE_ID)
    assert account == IdentityAccount(license="placeholder", warp_plus=True, quota=7, id="acc")
    request = mocked.calls[0].request
    assert request.headers["Authorization"] == "Bearer token"
    assert request.headers["User-Agent"] == "okhttp/3.12.1"


def test_get_account_error_status(mocked):
    mocked.add(responses.GET, f"{API_BASE}/reg/{DEVICE_ID}/account", status=403)
    with pytest.raises(ApiError) as info:
        get_account(AUTH_TOKEN, DEVICE_ID)
    assert info.value.status_code == 403
    assert "API request failed with status: 403" in str(info.value)


def test_get_bound_devices(mocked):
    mocked.add(
        responses.GET,
        f"{API_BASE}/reg/{DEVICE_ID}/account/devices",
        json=[{"id": "d1", "name": "phone", "updated": "yesterday", "active": True}],
    )
    devices = get_bound_devices(AUTH_TOKEN, DEVICE_ID)
    assert len(devices) == 1
    assert devices[0].id == "d1"
    assert devices[0].activated == "yesterday"
    assert devices[0].active is True


def test_get_source_device(mocked):
    mocked.add(responses.GET, f"{API_BASE}/reg/{DEVICE_ID}", json=IDENTITY_JSON)
    identity = get_source_device(AUTH_TOKEN, DEVICE_ID)
    assert identity.id == DEVICE_ID
    assert identity.config.peers[0].endpoint.ports == [2408, 500]
    assert identity.config.interface.addresses.v6 == "fd01::2"


def test_register(mocked):
    mocked.add(responses.POST, f"{API_BASE}/reg", json=IDENTITY_JSON)
    identity = register("placeholder")
    assert identity.account.warp_plus is True
    assert identity.config.client_id == "AAAA"
    request = mocked.calls[0].request
    body = json.loads(request.body)
    assert body["key"] == "placeholder"
    assert body["type"] == "Android"
    assert body["warp_enabled"] is True
    assert "Authorization" not in request.headers


def test_reset_account_license(mocked):
    mocked.add(
        responses.POST,
        f"{API_BASE}/reg/{DEVICE_ID}/account/license",
        json={"license": "placeholder"},
    )
    assert reset_account_license(AUTH_TOKEN, DEVICE_ID).license == "placeholder"


def test_reset_account_license_error(mocked):
    mocked.add(responses.POST, f"{API_BASE}/reg/{DEVICE_ID}/account/license", status=500)
    with pytest.raises(ApiError, match="failed with response"):
        reset_account_license(AUTH_TOKEN, DEVICE_ID)


def test_update_account(mocked):
    mocked.add(
        responses.PUT,
        f"{API_BASE}/reg/{DEVICE_ID}/account",
        json={"license": "placeholder", "account_type": "limited"},
    )
    account = update_account(AUTH_TOKEN, DEVICE_ID, "placeholder")
    assert account.account_type == "limited"
    assert json.loads(mocked.calls[0].request.body) == {"license": "placeholder"}


def test_update_bound_device(mocked):
    mocked.add(
        responses.PATCH,
        f"{API_BASE}/reg/{DEVICE_ID}/account/reg/other",
        json={"id": "other", "name": "laptop", "active": False},
    )
    device = update_bound_device(AUTH_TOKEN, DEVICE_ID, "other", "laptop", False)
    assert device.name == "laptop"
    assert json.loads(mocked.calls[0].request.body) == {"active": False, "name": "laptop"}


def test_update_source_device(mocked):
    mocked.add(responses.PATCH, f"{API_BASE}/reg/{DEVICE_ID}", json=IDENTITY_JSON)
    identity = update_source_device(AUTH_TOKEN, DEVICE_ID, "placeholder")
    assert identity.token == "token"
    assert json.loads(mocked.calls[0].request.body) == {"key": "placeholder"}


def test_delete_device(mocked):
    mocked.add(responses.DELETE, f"{API_BASE}/reg/{DEVICE_ID}", status=204)
    assert delete_device(AUTH_TOKEN, DEVICE_ID) is None
    assert mocked.calls[0].request.method == "DELETE"


def test_delete_device_error(mocked):
    mocked.add(responses.DELETE, f"{API_BASE}/reg/{DEVICE_ID}", status=404)
    with pytest.raises(ApiError):
        delete_device(AUTH_TOKEN, DEVICE_ID)


def test_identity_round_trip():
    identity = Identity.from_dict(IDENTITY_JSON)
    again = Identity.from_dict(identity.to_dict())
    assert again == identity
    assert identity.to_dict()["config"]["peers"][0]["endpoint"]["host"] == "engage.example.com:2408"


def test_identity_missing_fields_default():
    identity = Identity.from_dict({"id": "x", "config": None})
    assert identity.id == "x"
    assert identity.config.peers == []
    assert identity.account.license == ""


def test_identity_rejects_non_object():
    with pytest.raises(ValueError):
        Identity.from_dict([1, 2])