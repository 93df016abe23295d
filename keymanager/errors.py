"""Exceptions raised by the SSH key manager."""

from typing import Optional


class KeyManagerError(Exception):
    """Base class for all key manager errors."""


class DatabaseError(KeyManagerError):
    """The trust store failed to read or write a record."""


class HostInUseError(DatabaseError):
    """A host cannot be deleted while other hosts jump through it."""


class NoSuchUser(DatabaseError):
    """The user doesn't exist in the database."""


class JumpChainError(KeyManagerError):
    """A jump host chain is cyclic, dangling or too deep."""


class SshError(KeyManagerError):
    """Handshake, network or authentication failure."""


class NoSuchHost(SshError):
    """The host doesn't exist in the database."""

    def __init__(self, host: str = ""):
        self.host = host
        message = f"The host {host!r} doesn't exist in the database." if host else \
            "The host doesn't exist in the database."
        super().__init__(message)


class TrustError(SshError):
    """The server host key could not be trusted."""


class TrustTimeoutError(TrustError):
    """The host key was not offered or confirmed in time."""


class JumpHostError(SshError):
    """An intermediate hop of a jump chain could not be reached."""

    def __init__(self, hop: str, cause: Exception):
        self.hop = hop
        self.cause = cause
        super().__init__(f"Jump host {hop} failed: {cause}")


class ExecutionError(KeyManagerError):
    """A remote command failed or exited with a non-zero status."""

    def __init__(self, message: str, exit_status: Optional[int] = None):
        self.exit_status = exit_status
        super().__init__(message)


class MalformedKeyError(KeyManagerError):
    """A public key line could not be parsed."""
