"""Signing identity used to authenticate against managed hosts."""

import hashlib
import base64
import logging
from typing import Optional

import paramiko

from .config import Config
from .errors import SshError

logger = logging.getLogger(__name__)

# Tried in order when loading a private key of unknown type
KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def get_key_fingerprint(public_key: paramiko.PKey) -> str:
    """Calculate SHA256 fingerprint of a public key."""
    sha256_hash = hashlib.sha256(public_key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(sha256_hash).decode().rstrip('=')


class SigningCredential:
    """The single private key this process logs into every host with."""

    def __init__(self, pkey: paramiko.PKey):
        self.pkey = pkey

    @property
    def fingerprint(self) -> str:
        return get_key_fingerprint(self.pkey)

    @property
    def public_line(self) -> str:
        """The line to install in a host's authorized_keys."""
        return f"{self.pkey.get_name()} {self.pkey.get_base64()}"

    @classmethod
    def from_file(cls, key_file: Optional[str] = None,
                  passphrase: Optional[str] = None) -> "SigningCredential":
        """
        Load a private key file of any supported type.

        Args:
            key_file: path of the private key, defaults to Config.SIGNING_KEY_FILE
            passphrase: key passphrase, defaults to Config.SIGNING_KEY_PASSPHRASE

        Raises:
            SshError: the key cannot be read or decrypted
        """
        key_file = key_file or Config.SIGNING_KEY_FILE
        if passphrase is None:
            passphrase = Config.SIGNING_KEY_PASSPHRASE

        errors = []
        for key_class in KEY_CLASSES:
            try:
                pkey = key_class.from_private_key_file(key_file, password=passphrase)
            except paramiko.PasswordRequiredException as e:
                raise SshError(f"Signing key {key_file} is encrypted: {e}") from e
            except OSError as e:
                raise SshError(f"Cannot read signing key {key_file}: {e}") from e
            except (paramiko.SSHException, ValueError) as e:
                errors.append(f"{key_class.__name__}: {e}")
                continue

            credential = cls(pkey)
            logger.info(
                f"Loaded {pkey.get_name()} signing key from {key_file} "
                f"({credential.fingerprint[:16]}...)"
            )
            return credential

        raise SshError(f"Unsupported signing key {key_file}: {'; '.join(errors)}")
