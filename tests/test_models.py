"""Tests for the data model validation."""

import pytest

from fakes import ED25519_ALICE
from keymanager.models import (
    ConnectionDetails, Host, HostDiff, HostOwner, PendingTrust, PublicKey, Unowned, UserOwner,
)


@pytest.mark.parametrize("port", [0, -1, 65536, 100000, "abc", "", None, True])
def test_connection_details_rejects_bad_ports(port):
    with pytest.raises(ValueError):
        ConnectionDetails("example.com", port)


@pytest.mark.parametrize("hostname", ["", "   ", None])
def test_connection_details_rejects_empty_hostname(hostname):
    with pytest.raises(ValueError):
        ConnectionDetails(hostname, 22)


def test_connection_details_accepts_numeric_strings():
    details = ConnectionDetails(" example.com ", "2222")

    assert details.port == 2222
    assert details.hostname == "example.com"
    assert str(details) == "example.com:2222"


def test_host_validates_its_address():
    with pytest.raises(ValueError):
        Host(name="web", hostname="web.example.com", username="root",
             key_fingerprint="SHA256:x", port=70000)


def test_host_requires_fingerprint():
    with pytest.raises(ValueError):
        Host(name="web", hostname="web.example.com", username="root", key_fingerprint="")


def test_public_key_identity_ignores_comment_and_owner():
    first = PublicKey("ssh-ed25519", ED25519_ALICE, "laptop", UserOwner(1))
    second = PublicKey("ssh-ed25519", ED25519_ALICE, None, Unowned())

    assert first == second
    assert hash(first) == hash(second)
    assert first != PublicKey("ssh-rsa", ED25519_ALICE)


def test_public_key_owner_must_be_one_of_the_union():
    with pytest.raises(ValueError):
        PublicKey("ssh-ed25519", ED25519_ALICE, owner=42)


def test_owner_variants_compare_by_value():
    assert HostOwner(1) == HostOwner(1)
    assert HostOwner(1) != UserOwner(1)
    assert Unowned() == Unowned()


def test_pending_trust_expiry():
    pending = PendingTrust(token="t", name="web", hostname="web", port=22,
                           username="root", fingerprint="SHA256:x", expires_at=100.0)

    assert not pending.is_expired(99.0)
    assert pending.is_expired(100.0)


def test_host_diff_in_sync():
    host = Host(name="web", hostname="web", username="root", key_fingerprint="SHA256:x")
    key = PublicKey("ssh-ed25519", ED25519_ALICE)

    assert HostDiff(host, matching=[key]).in_sync
    assert not HostDiff(host, unexpected=[key]).in_sync
