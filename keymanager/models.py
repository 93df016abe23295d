"""Data models for the SSH key manager."""

import enum
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union


@dataclass(frozen=True)
class HostOwner:
    """Key is one of a host's own server keys."""

    host_id: int


@dataclass(frozen=True)
class UserOwner:
    """Key is presented by a user."""

    user_id: int


@dataclass(frozen=True)
class Unowned:
    """Key was discovered on a host and awaits assignment."""


KeyOwner = Union[HostOwner, UserOwner, Unowned]


@dataclass
class PublicKey:
    """Represents an SSH public key line."""

    key_type: str
    key_base64: str
    comment: Optional[str] = None
    owner: KeyOwner = field(default_factory=Unowned)
    options: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        """Validate the public key data."""
        if not self.key_type:
            raise ValueError("Key type is required")
        if not self.key_base64:
            raise ValueError("Key material is required")
        if not isinstance(self.owner, (HostOwner, UserOwner, Unowned)):
            raise ValueError(f"Invalid key owner: {self.owner!r}")

    @property
    def identity(self) -> Tuple[str, str]:
        """Type and base64 material; comment and options are not part of it."""
        return (self.key_type, self.key_base64)

    def __eq__(self, other):
        if not isinstance(other, PublicKey):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self):
        return hash(self.identity)

    def __str__(self):
        if self.comment:
            return f"Type: {self.key_type}; Comment: {self.comment}; Base64: {self.key_base64}"
        return f"Type: {self.key_type}; Base64: {self.key_base64}"


@dataclass
class ConnectionDetails:
    """Validated network address of an SSH server."""

    hostname: str
    port: int = 22

    def __post_init__(self):
        """Validate the connection data."""
        if not isinstance(self.hostname, str) or not self.hostname.strip():
            raise ValueError("Hostname is required")
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            try:
                self.port = int(str(self.port).strip())
            except ValueError:
                raise ValueError(f"Invalid port: {self.port!r}") from None
        if self.port < 1 or self.port > 65535:
            raise ValueError("Invalid port")
        self.hostname = self.hostname.strip()

    def __str__(self):
        return f"{self.hostname}:{self.port}"


@dataclass
class Host:
    """Represents a managed host in the database."""

    name: str
    hostname: str
    username: str
    key_fingerprint: str
    port: int = 22
    jump_via: Optional[int] = None
    id: Optional[int] = None

    def __post_init__(self):
        """Validate the host data."""
        if not self.name:
            raise ValueError("Host name is required")
        if not self.username:
            raise ValueError("Login username is required")
        if not self.key_fingerprint:
            raise ValueError("Host key fingerprint is required")
        details = ConnectionDetails(self.hostname, self.port)
        self.hostname, self.port = details.hostname, details.port

    @property
    def details(self) -> ConnectionDetails:
        return ConnectionDetails(self.hostname, self.port)

    @property
    def label(self) -> str:
        return f"{self.name} ({self.username}@{self.hostname}:{self.port})"


@dataclass
class User:
    """Represents a user that presents keys."""

    username: str
    id: Optional[int] = None
    enabled: bool = True

    def __post_init__(self):
        if not self.username:
            raise ValueError("Username is required")


@dataclass
class UserAndOptions:
    """An authorized user of a host together with its options."""

    user: User
    options: Optional[str] = None


@dataclass
class HostDiff:
    """Expected versus observed keys of one host."""

    host: Host
    matching: List[PublicKey] = field(default_factory=list)
    expected_absent: List[PublicKey] = field(default_factory=list)
    unexpected: List[PublicKey] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.expected_absent and not self.unexpected


class TrustState(str, enum.Enum):
    """States of the trust-on-first-use protocol."""

    REQUESTED = "requested"
    FINGERPRINT_OFFERED = "fingerprint_offered"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


@dataclass
class PendingTrust:
    """A host key offered to the caller and awaiting confirmation."""

    token: str
    name: str
    hostname: str
    port: int
    username: str
    fingerprint: str
    expires_at: float
    jump_via: Optional[int] = None
    state: TrustState = TrustState.FINGERPRINT_OFFERED

    @property
    def details(self) -> ConnectionDetails:
        return ConnectionDetails(self.hostname, self.port)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
