"""Parsing and serialization of SSH public key lines."""

import base64
import binascii
import hashlib
import logging
import re
from typing import List, Optional, Tuple

from .errors import MalformedKeyError
from .models import KeyOwner, PublicKey, Unowned

logger = logging.getLogger(__name__)

KEY_TYPE_PATTERN = re.compile(r'^(?:ssh|ecdsa|sk)-[A-Za-z0-9@.+-]+$')
BASE64_PATTERN = re.compile(r'^[A-Za-z0-9+/]+={0,2}$')


def _split_options(text: str) -> Optional[Tuple[str, str]]:
    """Split an authorized_keys options prefix from the rest of the line."""
    in_quotes = False
    escaped = False
    for index, char in enumerate(text):
        if escaped:
            escaped = False
        elif char == '\\':
            escaped = True
        elif char == '"':
            in_quotes = not in_quotes
        elif char.isspace() and not in_quotes:
            options, rest = text[:index], text[index:].lstrip()
            parts = rest.split(None, 2)
            if len(parts) >= 2 and KEY_TYPE_PATTERN.match(parts[0]):
                return options, rest
            return None
    return None


def parse_key(line: str, owner: Optional[KeyOwner] = None) -> PublicKey:
    """
    Parse a single ``[options ]type base64[ comment]`` line.

    Raises:
        MalformedKeyError: the line has no type and base64 token
    """
    text = line.strip()
    parts = text.split(None, 2)
    if len(parts) < 2:
        raise MalformedKeyError(f"Failed to parse public key: {line[:40]!r}")

    options = None
    if not KEY_TYPE_PATTERN.match(parts[0]):
        split = _split_options(text)
        if split:
            options, text = split
            parts = text.split(None, 2)

    return PublicKey(
        key_type=parts[0],
        key_base64=parts[1],
        comment=parts[2] if len(parts) > 2 else None,
        owner=owner if owner is not None else Unowned(),
        options=options,
    )


def parse_keys(text: str, owner: Optional[KeyOwner] = None) -> List[PublicKey]:
    """Parse every key of a file, skipping comments and dropping malformed lines."""
    keys = []
    for number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue
        try:
            keys.append(parse_key(stripped, owner))
        except MalformedKeyError as e:
            logger.warning(f"Skipping line {number}: {e}")
    return keys


def serialize_key(key: PublicKey) -> str:
    """Render a key as an authorized_keys line."""
    line = f"{key.key_type} {key.key_base64}"
    if key.comment:
        line = f"{line} {key.comment}"
    if key.options:
        line = f"{key.options} {line}"
    return line


def validate_key_base64(key_base64: str) -> str:
    """Return the value if it is plain base64 safe to put in a command."""
    if not isinstance(key_base64, str) or not BASE64_PATTERN.fullmatch(key_base64):
        raise MalformedKeyError("Key material is not valid base64")
    return key_base64


def key_fingerprint(key_base64: str) -> str:
    """Calculate the OpenSSH SHA256 fingerprint of base64 key material."""
    try:
        raw = base64.b64decode(validate_key_base64(key_base64), validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedKeyError(f"Key material is not valid base64: {e}") from e

    digest = hashlib.sha256(raw).digest()
    return "SHA256:" + base64.b64encode(digest).decode().rstrip('=')
