"""Client for the WARP registration API and its JSON records."""

import typing
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

API_BASE = "https://api.cloudflareclient.com/v0a4005"

_TIMEOUT = (5, None)
_session = requests.Session()


class ApiError(Exception):
    """The API answered with a status outside the 2xx range."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


def _decode(tp: Any, value: Any) -> Any:
    if isinstance(tp, type) and is_dataclass(tp):
        return _record_from_dict(tp, value)
    if typing.get_origin(tp) in (list, List):
        (item_type,) = typing.get_args(tp)
        if not isinstance(value, list):
            raise ValueError(f"expected a JSON array, got {type(value).__name__}")
        return [_decode(item_type, item) for item in value]
    return value


def _encode(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return _record_to_dict(value)
    if isinstance(value, list):
        return [_encode(item) for item in value]
    return value


def _record_from_dict(cls: Any, data: Optional[Dict[str, Any]]) -> Any:
    """Build a record from a decoded JSON object; missing keys keep defaults."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object for {cls.__name__}")
    values = {}
    for f in fields(cls):
        name = f.metadata.get("json", f.name)
        if data.get(name) is not None:
            values[f.name] = _decode(f.type, data[name])
    return cls(**values)


def _record_to_dict(record: Any) -> Dict[str, Any]:
    """Return a record as a JSON-ready dictionary."""
    return {
        f.metadata.get("json", f.name): _encode(getattr(record, f.name))
        for f in fields(record)
    }


@dataclass
class IdentityAccount:
    created: str = ""
    updated: str = ""
    license: str = ""
    premium_data: int = 0
    warp_plus: bool = False
    account_type: str = ""
    referral_renewal_countdown: int = 0
    role: str = ""
    id: str = ""
    quota: int = 0
    usage: int = 0
    referral_count: int = 0
    ttl: str = ""

    @classmethod
    def from_dict(cls, data):
        """Build an account from a decoded JSON object."""
        return _record_from_dict(cls, data)

    def to_dict(self):
        """Return the account as a JSON-ready dictionary."""
        return _record_to_dict(self)


@dataclass
class IdentityConfigPeerEndpoint:
    v4: str = ""
    v6: str = ""
    host: str = ""
    ports: List[int] = field(default_factory=list)


@dataclass
class IdentityConfigPeer:
    public_key: str = ""
    endpoint: IdentityConfigPeerEndpoint = field(default_factory=IdentityConfigPeerEndpoint)


@dataclass
class IdentityConfigInterfaceAddresses:
    v4: str = ""
    v6: str = ""


@dataclass
class IdentityConfigInterface:
    addresses: IdentityConfigInterfaceAddresses = field(
        default_factory=IdentityConfigInterfaceAddresses
    )


@dataclass
class IdentityConfigServices:
    http_proxy: str = ""


@dataclass
class IdentityConfig:
    peers: List[IdentityConfigPeer] = field(default_factory=list)
    interface: IdentityConfigInterface = field(default_factory=IdentityConfigInterface)
    services: IdentityConfigServices = field(default_factory=IdentityConfigServices)
    client_id: str = ""


@dataclass
class Identity:
    private_key: str = ""
    key: str = ""
    account: IdentityAccount = field(default_factory=IdentityAccount)
    place: int = 0
    fcm_token: str = ""
    name: str = ""
    tos: str = ""
    locale: str = ""
    install_id: str = ""
    warp_enabled: bool = False
    type: str = ""
    model: str = ""
    config: IdentityConfig = field(default_factory=IdentityConfig)
    token: str = ""
    enabled: bool = False
    id: str = ""
    created: str = ""
    updated: str = ""
    waitlist_enabled: bool = False

    @classmethod
    def from_dict(cls, data):
        """Build an identity from a decoded JSON object."""
        return _record_from_dict(cls, data)

    def to_dict(self):
        """Return the identity as a JSON-ready dictionary."""
        return _record_to_dict(self)


@dataclass
class IdentityDevice:
    id: str = ""
    name: str = ""
    type: str = ""
    model: str = ""
    created: str = ""
    activated: str = field(default="", metadata={"json": "updated"})
    active: bool = False
    role: str = ""

    @classmethod
    def from_dict(cls, data):
        """Build a device record from a decoded JSON object."""
        return _record_from_dict(cls, data)


@dataclass
class License:
    license: str = ""


def default_headers() -> Dict[str, str]:
    """Headers sent with every API request."""
    return {
        "Content-Type": "application/json; charset=UTF-8",
        "User-Agent": "okhttp/3.12.1",
        "CF-Client-Version": "a-6.30-3596",
    }


def _request(
    method: str,
    path: str,
    auth_token: Optional[str] = None,
    body: Optional[Dict[str, Any]] = None,
    failure: str = "status",
) -> requests.Response:
    headers = default_headers()
    if auth_token is not None:
        headers["Authorization"] = "Bearer " + auth_token
    response = _session.request(
        method, API_BASE + path, headers=headers, json=body, timeout=_TIMEOUT
    )
    if not 200 <= response.status_code < 300:
        raise ApiError(
            f"API request failed with {failure}: {response.status_code} {response.reason}",
            response.status_code,
        )
    return response


def get_account(auth_token: str, device_id: str) -> IdentityAccount:
    """Fetch the account bound to a device."""
    response = _request("GET", f"/reg/{device_id}/account", auth_token)
    return IdentityAccount.from_dict(response.json())


def get_bound_devices(auth_token: str, device_id: str) -> List[IdentityDevice]:
    """List the devices bound to the account of a device."""
    response = _request("GET", f"/reg/{device_id}/account/devices", auth_token)
    return _decode(List[IdentityDevice], response.json())


def get_source_device(auth_token: str, device_id: str) -> Identity:
    """Fetch the registration of a device."""
    response = _request("GET", f"/reg/{device_id}", auth_token)
    return Identity.from_dict(response.json())


def register(public_key: str) -> Identity:
    """Register a new device with the given WireGuard public key."""
    body = {
        "install_id": "",
        "fcm_token": "",
        "tos": datetime.now().astimezone().isoformat(),
        "key": public_key,
        "type": "Android",
        "model": "PC",
        "locale": "en_US",
        "warp_enabled": True,
    }
    response = _request("POST", "/reg", body=body)
    return Identity.from_dict(response.json())


def reset_account_license(auth_token: str, device_id: str) -> License:
    """Ask for a new licence key for the account of a device."""
    response = _request(
        "POST", f"/reg/{device_id}/account/license", auth_token, failure="response"
    )
    return _record_from_dict(License, response.json())


def update_account(auth_token: str, device_id: str, license: str) -> IdentityAccount:
    """Attach a licence key to the account of a device."""
    response = _request("PUT", f"/reg/{device_id}/account", auth_token, {"license": license})
    return IdentityAccount.from_dict(response.json())


def update_bound_device(
    auth_token: str, device_id: str, other_device_id: str, name: str, active: bool
) -> IdentityDevice:
    """Rename or (de)activate another device bound to the same account."""
    response = _request(
        "PATCH",
        f"/reg/{device_id}/account/reg/{other_device_id}",
        auth_token,
        {"active": active, "name": name},
    )
    return IdentityDevice.from_dict(response.json())


def update_source_device(auth_token: str, device_id: str, public_key: str) -> Identity:
    """Replace the WireGuard public key of a device."""
    response = _request("PATCH", f"/reg/{device_id}", auth_token, {"key": public_key})
    return Identity.from_dict(response.json())


def delete_device(auth_token: str, device_id: str) -> None:
    """Delete the registration of a device."""
    _request("DELETE", f"/reg/{device_id}", auth_token)