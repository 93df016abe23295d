"""Shared fixtures: a temporary trust store and the router double."""

from typing import Optional

import pytest

from fakes import HOST_FINGERPRINT, FakeRouter
from keymanager.db import Database
from keymanager.models import Host, User


@pytest.fixture
def database(tmp_path) -> Database:
    """A fresh sqlite trust store in a temporary directory."""
    return Database(f"sqlite:///{tmp_path / 'keymanager.db'}")


@pytest.fixture
def router() -> FakeRouter:
    return FakeRouter()


@pytest.fixture
def make_host(database):
    """Factory storing a host, optionally behind a jump host."""

    def _make(name: str, jump_via: Optional[int] = None) -> Host:
        return database.add_host(Host(
            name=name,
            hostname=f"{name}.example.com",
            username="root",
            key_fingerprint=HOST_FINGERPRINT,
            jump_via=jump_via,
        ))

    return _make


@pytest.fixture
def alice(database) -> User:
    return database.add_user(User(username="alice"))
