"""Commands run over a session to read and change a host's keys."""

import logging
import shlex
from typing import List, Optional

from .config import Config
from .errors import MalformedKeyError
from .keys import parse_keys, serialize_key, validate_key_base64
from .logging import log_key_added, log_key_removed
from .models import HostOwner, PublicKey
from .router import Session

logger = logging.getLogger(__name__)

# Drops every line that has a field equal to k
_AWK_REMOVE = '{for (i = 1; i <= NF; i++) if ($i == k) next; print}'
# Exits 0 when a line has a field equal to k
_AWK_CONTAINS = 'BEGIN {r = 1} {for (i = 1; i <= NF; i++) if ($i == k) {r = 0; exit}} END {exit r}'


def authorized_keys_path(path: Optional[str] = None) -> str:
    """Shell expression of the login user's authorized_keys file."""
    path = path or Config.AUTHORIZED_KEYS_FILE
    if path.startswith("/"):
        return shlex.quote(path)
    return '"$HOME"/' + shlex.quote(path)


def list_server_keys_command() -> str:
    # The glob must stay unquoted
    return f"cat {Config.SERVER_KEY_GLOB}"


def list_authorized_keys_command() -> str:
    return f'f={authorized_keys_path()}; [ -f "$f" ] || exit 0; cat "$f"'


def remove_key_command(key_base64: str) -> str:
    """Rewrite authorized_keys without the key, through a temporary file."""
    k = shlex.quote(validate_key_base64(key_base64))
    return (
        f'f={authorized_keys_path()}; [ -f "$f" ] || exit 0; t="$f.keymanager.$$"; '
        f"awk -v k={k} '{_AWK_REMOVE}' \"$f\" > \"$t\" && chmod 600 \"$t\" && mv -f \"$t\" \"$f\" "
        '|| { rm -f "$t"; exit 1; }'
    )


def add_key_command(key: PublicKey) -> str:
    """Append a key unless a line already holds its base64 material."""
    k = shlex.quote(validate_key_base64(key.key_base64))
    line = serialize_key(key)
    if "\n" in line or "\r" in line:
        raise MalformedKeyError("Key line must not contain line breaks")
    return (
        f'f={authorized_keys_path()}; d=$(dirname "$f"); '
        '[ -d "$d" ] || { mkdir -p "$d" && chmod 700 "$d"; } || exit 1; '
        f"if [ -f \"$f\" ] && awk -v k={k} '{_AWK_CONTAINS}' \"$f\"; then exit 0; fi; "
        'if [ -s "$f" ] && [ -n "$(tail -c 1 "$f")" ]; then echo >> "$f"; fi; '
        f'printf \'%s\\n\' {shlex.quote(line)} >> "$f" && chmod 600 "$f"'
    )


def list_server_identity_keys(session: Session, host_id: Optional[int] = None) -> List[PublicKey]:
    """Read the host's own server keys; malformed entries are dropped."""
    owner = HostOwner(host_id) if host_id is not None else None
    return parse_keys(session.run(list_server_keys_command()), owner)


def list_authorized_keys(session: Session) -> List[PublicKey]:
    """
    Read the keys allowed to log in as the session's user.

    A missing file is an empty list; a failing command raises ExecutionError.
    """
    return parse_keys(session.run(list_authorized_keys_command()))


def remove_key(session: Session, key_base64: str):
    """Remove every line holding the key; succeeds when it is already absent."""
    session.run(remove_key_command(key_base64))
    log_key_removed(logger, session.host, key_base64)


def add_key(session: Session, key: PublicKey):
    """Grant a key; succeeds when it is already present."""
    session.run(add_key_command(key))
    log_key_added(logger, session.host, key.key_base64)
