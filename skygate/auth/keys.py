"""
SKYGATE — SSH key material

Parses authorized_keys files into raw key blobs and loads the SSH host key.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from pathlib import Path

import paramiko

from skygate.shared.errors import ConfigurationError, LoadError

logger = logging.getLogger("skygate.auth.keys")

_KEY_TYPE_PREFIXES = ("ssh-", "ecdsa-sha2-", "sk-ssh-", "sk-ecdsa-")

# Tried in order when loading the host key
_HOST_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


def parse_authorized_key(line: str) -> bytes:
    """
    Parse one authorized_keys line into the key's wire-format blob.

    Leading options (``from="..."``, ``no-pty`` ...) and the trailing comment
    are ignored. Raises ValueError when no well-formed key is found.
    """
    tokens = line.split()
    for index, token in enumerate(tokens[:-1]):
        if not token.startswith(_KEY_TYPE_PREFIXES):
            continue
        try:
            blob = paramiko.PublicBlob.from_string(f"{token} {tokens[index + 1]}")
        except ValueError:
            continue
        return bytes(blob.key_blob)
    raise ValueError("no public key found")


def load_authorized_keys(path: str | Path) -> list[bytes]:
    """Read every key in an authorized_keys file. Raises LoadError."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise LoadError(str(path), str(exc)) from exc

    keys: list[bytes] = []
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            keys.append(parse_authorized_key(line))
        except ValueError as exc:
            raise LoadError(str(path), str(exc), line_number) from exc

    logger.debug("Loaded %d key(s) from %s", len(keys), path)
    return keys


def fingerprint(key_blob: bytes) -> str:
    """OpenSSH-style SHA256 fingerprint of a key blob."""
    digest = hashlib.sha256(key_blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def load_host_key(path: str | Path) -> paramiko.PKey:
    """Load an unencrypted SSH private key for the server. Raises ConfigurationError."""
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Host key not found: {path}")

    failures: list[str] = []
    for key_class in _HOST_KEY_CLASSES:
        try:
            key = key_class.from_private_key_file(str(path))
        except paramiko.PasswordRequiredException as exc:
            raise ConfigurationError(f"Host key {path} is encrypted") from exc
        except OSError as exc:
            raise ConfigurationError(f"Cannot read host key {path}: {exc}") from exc
        except (paramiko.SSHException, ValueError) as exc:
            failures.append(f"{key_class.__name__}: {exc}")
            continue
        logger.info("Loaded %s host key %s", key.get_name(), fingerprint(key.asbytes()))
        return key

    raise ConfigurationError(f"Unsupported host key {path} ({'; '.join(failures)})")
