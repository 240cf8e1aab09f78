"""Loading, creating and storing the WARP identity on disk."""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Union

from warpplus.warp import api
from warpplus.warp.keys import Key

IDENTITY_FILE = "wgcf-identity.json"

PathLike = Union[str, "os.PathLike[str]"]

_log = logging.getLogger(__name__)


def save_identity(identity: api.Identity, path: PathLike) -> None:
    """Write ``identity`` as indented JSON into the directory ``path``."""
    target = Path(path) / IDENTITY_FILE
    text = json.dumps(identity.to_dict(), indent=2, ensure_ascii=False) + "\n"
    target.write_text(text, encoding="utf-8")


def load_identity(path: PathLike) -> api.Identity:
    """Read the identity stored in the directory ``path``.

    Raises OSError when the file cannot be read and ValueError when it is
    not a valid identity or holds no peers.
    """
    data = json.loads((Path(path) / IDENTITY_FILE).read_text(encoding="utf-8"))
    identity = api.Identity.from_dict(data)
    if len(identity.config.peers) < 1:
        raise ValueError("identity contains 0 peers")
    return identity


def create_identity(license: str) -> api.Identity:
    """Register a new device with a fresh key pair, applying ``license`` if given."""
    private = Key.generate_private()

    _log.info("creating new identity")
    identity = api.register(str(private.public_key()))

    if license:
        _log.info("updating account license key")
        api.update_account(identity.token, identity.id, license)
        identity.account = api.get_account(identity.token, identity.id)

    identity.private_key = str(private)
    return identity


def _remove_all(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def load_or_create_identity(path: PathLike, license: str) -> api.Identity:
    """Load the identity in ``path``, or register and store a new one.

    When ``license`` is set and differs from the stored account's licence,
    the account is updated and the identity saved again.
    """
    directory = Path(path)
    try:
        identity = load_identity(directory)
    except (OSError, ValueError, TypeError) as exc:
        _log.info("failed to load identity path=%s error=%s", directory, exc)
        _remove_all(directory)
        os.makedirs(directory, exist_ok=True)
        identity = create_identity(license)
        save_identity(identity, directory)

    if license and identity.account.license != license:
        _log.info("updating account license key")
        api.update_account(identity.token, identity.id, license)
        identity.account = api.get_account(identity.token, identity.id)
        save_identity(identity, directory)

    _log.info("successfully loaded warp identity")
    return identity