"""Tests for the async KeyManager facade."""

import asyncio

import pytest

from keymanager.errors import JumpChainError, NoSuchHost
from keymanager.service import KeyManager


@pytest.fixture
def manager(database, router):
    return KeyManager(database, router=router)


def test_resolve_and_authenticate_returns_open_session(manager, make_host, router):
    host = make_host("web")

    session = asyncio.run(manager.resolve_and_authenticate(host))

    assert session.host == "web"
    assert not session.closed
    session.close()


def test_get_host_by_name(manager, make_host):
    host = make_host("web")

    assert asyncio.run(manager.get_host("web")) == host
    with pytest.raises(NoSuchHost):
        asyncio.run(manager.get_host("db"))


def test_list_hosts(manager, make_host):
    make_host("web")
    make_host("db")

    assert {host.name for host in asyncio.run(manager.list_hosts())} == {"web", "db"}


def test_set_jump_via_rejects_cycle(manager, make_host):
    a = make_host("a")
    b = make_host("b", jump_via=a.id)

    with pytest.raises(JumpChainError):
        asyncio.run(manager.set_jump_via(a.id, b.id))
