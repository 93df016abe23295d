"""Tests for the command line front end."""

import sys

import pytest

from fakes import ED25519_ALICE, HOST_FINGERPRINT, RSA_STRAY
from keymanager import main as main_module
from keymanager.config import Config
from keymanager.errors import NoSuchUser
from keymanager.main import KeyManagerMain
from keymanager.models import UserOwner
from keymanager.service import KeyManager


@pytest.fixture
def app(monkeypatch, tmp_path, database, router):
    monkeypatch.setattr(Config, "LOG_FILE", str(tmp_path / "keymanager.log"))
    application = KeyManagerMain()
    application._manager = KeyManager(database, router=router)
    return application


def test_add_host_shows_fingerprint_and_stores_host(app, database, capsys):
    assert app.add_host("web", "web.example.com", "root", 22, assume_yes=True)

    assert HOST_FINGERPRINT in capsys.readouterr().out
    assert database.get_host_name("web").key_fingerprint == HOST_FINGERPRINT


def test_add_host_declined(app, database, monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "n")

    assert not app.add_host("web", "web.example.com", "root", 22)
    assert database.get_host_name("web") is None


def test_assign_key_to_user_and_list(app, database, alice, capsys):
    app.assign_key(f"ssh-ed25519 {ED25519_ALICE} alice@laptop", username="alice")
    app.list_users()

    out = capsys.readouterr().out
    assert f"ssh-ed25519 {ED25519_ALICE} alice@laptop" in out
    assert database.get_keys_for_owner(UserOwner(alice.id))[0].comment == "alice@laptop"


def test_assign_key_needs_exactly_one_owner(app):
    with pytest.raises(ValueError):
        app.assign_key(f"ssh-rsa {RSA_STRAY}")


def test_unknown_user(app):
    with pytest.raises(NoSuchUser):
        app.authorize("web", "nobody")


def test_diff_prints_each_partition(app, make_host, alice, router, capsys):
    make_host("web")
    app.authorize("web", "alice")
    router.files["web"] = [f"ssh-rsa {RSA_STRAY} stray"]

    app.diff("web")

    out = capsys.readouterr().out
    assert "Matching (0):" in out
    assert "Expected but absent (0):" in out
    assert "Present but unexpected (1):" in out
    assert "stray" in out


def test_cli_failure_exits_non_zero(monkeypatch, tmp_path):
    monkeypatch.setattr(Config, "LOG_FILE", str(tmp_path / "keymanager.log"))
    monkeypatch.setattr(Config, "DB_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setattr(sys, "argv", ["keymanager", "diff", "missing"])

    with pytest.raises(SystemExit) as excinfo:
        main_module.main()

    assert excinfo.value.code == 1


def test_revoke_removes_authorization(app, database, make_host, alice):
    host = make_host("web")
    app.authorize("web", "alice", "no-pty")

    app.revoke("web", "alice")

    assert database.get_authorized_users(host.id) == []


def test_disable_user_is_listed_and_reversible(app, database, alice, capsys):
    app.set_user_enabled("alice", False)
    app.list_users()

    assert "alice (disabled)" in capsys.readouterr().out
    assert not database.get_user_name("alice").enabled

    app.set_user_enabled("alice", True)

    assert database.get_user_name("alice").enabled
