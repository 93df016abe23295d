"""Tests for the two-phase host trust protocol."""

import asyncio
import time

import pytest

from fakes import ED25519_HOST, HOST_FINGERPRINT
from keymanager.config import Config
from keymanager.errors import (
    DatabaseError, JumpChainError, NoSuchHost, SshError, TrustError, TrustTimeoutError,
)
from keymanager.models import HostOwner, PendingTrust, PublicKey, TrustState
from keymanager.trust import HostTrustProtocol


@pytest.fixture
def protocol(database, router):
    return HostTrustProtocol(database, router)


def begin(protocol, name="web", jump_via=None):
    return asyncio.run(protocol.begin_trust(name, f"{name}.example.com", 22, "root", jump_via))


def test_begin_then_confirm_persists_host(protocol, database, router):
    router.server_keys = f"ssh-ed25519 {ED25519_HOST} root@web\n"

    fingerprint, token = begin(protocol)
    assert fingerprint == HOST_FINGERPRINT
    assert database.get_host_name("web") is None
    assert database.get_pending_trust(token).state is TrustState.FINGERPRINT_OFFERED

    host = asyncio.run(protocol.confirm_trust(token, fingerprint))

    assert host.id is not None
    assert database.get_host_name("web") == host
    assert host.key_fingerprint == HOST_FINGERPRINT
    assert database.get_pending_trust(token) is None
    assert router.connect_calls[0][3] == [HOST_FINGERPRINT]
    assert all(session.closed for session in router.sessions)

    server_keys = database.get_keys_for_owner(HostOwner(host.id))
    assert [key.key_base64 for key in server_keys] == [ED25519_HOST]


def test_confirm_claims_previously_discovered_server_key(protocol, database, router):
    database.upsert_key(PublicKey("ssh-ed25519", ED25519_HOST))
    router.server_keys = f"ssh-ed25519 {ED25519_HOST}\n"
    fingerprint, token = begin(protocol)

    host = asyncio.run(protocol.confirm_trust(token, fingerprint))

    assert database.find_key("ssh-ed25519", ED25519_HOST).owner == HostOwner(host.id)


def test_wrong_fingerprint_persists_nothing(protocol, database, router):
    _, token = begin(protocol)

    with pytest.raises(TrustError):
        asyncio.run(protocol.confirm_trust(token, "SHA256:somethingelse"))

    assert database.get_host_name("web") is None
    assert database.get_pending_trust(token) is None
    assert router.connect_calls == []


def test_token_is_single_use(protocol, database):
    fingerprint, token = begin(protocol)
    asyncio.run(protocol.confirm_trust(token, fingerprint))

    with pytest.raises(TrustError):
        asyncio.run(protocol.confirm_trust(token, fingerprint))


def test_unknown_token(protocol):
    with pytest.raises(TrustError):
        asyncio.run(protocol.confirm_trust("nope", HOST_FINGERPRINT))


def test_expired_confirmation(protocol, database, monkeypatch):
    monkeypatch.setattr(Config, "TRUST_TTL", -1)
    fingerprint, token = begin(protocol)

    with pytest.raises(TrustTimeoutError):
        asyncio.run(protocol.confirm_trust(token, fingerprint))

    assert database.get_host_name("web") is None
    assert database.get_pending_trust(token) is None


def test_confirm_before_key_offered(protocol, database):
    database.save_pending_trust(PendingTrust(
        token="early", name="web", hostname="web.example.com", port=22, username="root",
        fingerprint="", expires_at=time.time() + 60, state=TrustState.REQUESTED,
    ))

    with pytest.raises(TrustError):
        asyncio.run(protocol.confirm_trust("early", ""))

    assert database.get_host_name("web") is None


def test_host_key_fetch_timeout(protocol, database, router, monkeypatch):
    monkeypatch.setattr(Config, "TRUST_TIMEOUT", 0.05)
    router.fetch_delay = 0.5

    with pytest.raises(TrustTimeoutError):
        begin(protocol)

    assert database.get_host_name("web") is None


def test_existing_host_name_is_refused(protocol, make_host):
    make_host("web")

    with pytest.raises(DatabaseError):
        begin(protocol)


def test_invalid_address_is_refused(protocol):
    with pytest.raises(ValueError):
        asyncio.run(protocol.begin_trust("web", "web.example.com", 0, "root"))


def test_key_changed_between_phases(protocol, database, router):
    fingerprint, token = begin(protocol)
    router.fingerprint = "SHA256:swappedswappedswapped"

    with pytest.raises(TrustError):
        asyncio.run(protocol.confirm_trust(token, fingerprint))

    assert database.get_host_name("web") is None


def test_failed_login_can_be_retried(protocol, database, router):
    fingerprint, token = begin(protocol)
    router.connect_error = SshError("Authentication as root on web failed")

    with pytest.raises(SshError):
        asyncio.run(protocol.confirm_trust(token, fingerprint))

    assert database.get_host_name("web") is None
    assert database.get_pending_trust(token) is not None

    router.connect_error = None
    host = asyncio.run(protocol.confirm_trust(token, fingerprint))
    assert host.name == "web"


def test_trust_through_jump_host(protocol, database, router, make_host):
    bastion = make_host("bastion")

    fingerprint, token = begin(protocol, "inner", jump_via=bastion.id)
    host = asyncio.run(protocol.confirm_trust(token, fingerprint))

    assert host.jump_via == bastion.id
    assert router.connect_calls[0][4] == bastion
    assert [hop.name for hop in database.get_jump_chain(host)] == ["bastion", "inner"]


def test_unknown_jump_host_is_refused_before_connecting(protocol, router):
    with pytest.raises(NoSuchHost):
        begin(protocol, jump_via=999)

    assert router.connect_calls == []


def test_too_deep_jump_chain_is_refused(protocol, make_host, monkeypatch):
    monkeypatch.setattr(Config, "MAX_JUMP_DEPTH", 1)
    a = make_host("a")
    b = make_host("b", jump_via=a.id)

    with pytest.raises(JumpChainError):
        begin(protocol, jump_via=b.id)
