"""Command line entry point for the SSH key manager."""

import sys
import asyncio
import argparse
from pathlib import Path

from .auth import SigningCredential
from .config import Config
from .db import Database
from .errors import KeyManagerError, NoSuchHost, NoSuchUser
from .keys import parse_key, serialize_key
from .logging import setup_logging
from .models import HostOwner, User, UserOwner
from .service import KeyManager


class KeyManagerMain:
    """Main application class for the key manager."""

    def __init__(self):
        """Initialize the key manager application."""
        self.logger = setup_logging()
        self._manager = None

    @property
    def manager(self) -> KeyManager:
        if self._manager is None:
            self._manager = KeyManager(Database())
        return self._manager

    def _user(self, username: str) -> User:
        user = self.manager.database.get_user_name(username)
        if user is None:
            raise NoSuchUser(f"User {username} doesn't exist")
        return user

    def _host_id(self, name: str) -> int:
        host = self.manager.database.get_host_name(name)
        if host is None:
            raise NoSuchHost(name)
        return host.id

    def list_hosts(self):
        hosts = asyncio.run(self.manager.list_hosts())
        names = {host.id: host.name for host in hosts}
        for host in hosts:
            via = f" via {names.get(host.jump_via, host.jump_via)}" if host.jump_via else ""
            print(f"{host.name}\t{host.username}@{host.hostname}:{host.port}{via}\t{host.key_fingerprint}")

    def add_host(self, name: str, address: str, username: str, port: int,
                 jump: str = None, assume_yes: bool = False) -> bool:
        """Run both trust phases, asking for confirmation in between."""
        jump_via = self._host_id(jump) if jump else None
        fingerprint, token = asyncio.run(
            self.manager.begin_trust(name, address, port, username, jump_via)
        )

        print()
        print("=== Please check the host key ===")
        print(f"Host: {name} ({username}@{address}:{port})")
        print(f"Fingerprint: {fingerprint}")
        print()

        if not assume_yes:
            answer = input("Trust this host key? (y/N): ").strip().lower()
            if answer != 'y':
                print("Cancelled")
                return False

        host = asyncio.run(self.manager.confirm_trust(token, fingerprint))
        self.logger.info(f"Successfully added host {host.label}")
        return True

    def set_jump(self, name: str, jump: str = None):
        jump_id = self._host_id(jump) if jump else None
        asyncio.run(self.manager.set_jump_via(self._host_id(name), jump_id))

    def delete_host(self, name: str):
        self.manager.database.delete_host(self._host_id(name))

    def add_user(self, username: str):
        self.manager.database.add_user(User(username=username))

    def set_user_enabled(self, username: str, enabled: bool):
        self.manager.database.set_user_enabled(self._user(username).id, enabled)

    def list_users(self):
        database = self.manager.database
        for user in database.get_all_users():
            print(user.username if user.enabled else f"{user.username} (disabled)")
            for key in database.get_keys_for_owner(UserOwner(user.id)):
                print(f"\t{serialize_key(key)}")

    def assign_key(self, key_line: str, username: str = None, host: str = None):
        """Give a key line to a user, or to a host as one of its server keys."""
        if bool(username) == bool(host):
            raise ValueError("Assign the key to exactly one of a user or a host")
        owner = UserOwner(self._user(username).id) if username else HostOwner(self._host_id(host))
        key = self.manager.database.assign_key(parse_key(key_line), owner)
        self.logger.info(f"Assigned key {key.id} to {username or host}")

    def authorize(self, host: str, username: str, options: str = None):
        asyncio.run(self.manager.authorize_user(
            self._host_id(host), self._user(username).id, options
        ))

    def revoke(self, host: str, username: str):
        """Stop expecting a user's keys on a host; the keys stay until removed."""
        if not self.manager.database.revoke_user(self._host_id(host), self._user(username).id):
            self.logger.warning(f"{username} wasn't authorized on {host}")

    def diff(self, name: str):
        async def run():
            return await self.manager.get_host_diff(await self.manager.get_host(name))

        diff = asyncio.run(run())
        for title, keys in (("Matching", diff.matching),
                            ("Expected but absent", diff.expected_absent),
                            ("Present but unexpected", diff.unexpected)):
            print(f"{title} ({len(keys)}):")
            for key in keys:
                print(f"\t{key}")

    def push(self, name: str):
        async def run():
            return await self.manager.push_expected_keys(await self.manager.get_host(name))

        added = asyncio.run(run())
        self.logger.info(f"Added {len(added)} keys to {name}")

    def remove_key(self, name: str, key_base64: str):
        async def run():
            await self.manager.remove_key(await self.manager.get_host(name), key_base64)

        asyncio.run(run())
        self.logger.info(f"Removed key from {name}")

    def test_config(self):
        """Test configuration, database connectivity and the signing key."""
        Config.validate()
        self.logger.info("Configuration validation passed")

        database = Database()
        database.get_all_hosts()
        self.logger.info("Database connectivity test passed")

        if Path(Config.SIGNING_KEY_FILE).exists():
            credential = SigningCredential.from_file()
            print(f"Install this key on managed hosts: {credential.public_line}")
        else:
            raise KeyManagerError(f"Signing key file {Config.SIGNING_KEY_FILE} is missing")

        self.logger.info("Configuration test completed successfully")


def main():
    """Main function with command line argument parsing."""
    parser = argparse.ArgumentParser(description="SSH authorized_keys manager")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('hosts', help='List hosts')

    add_host_parser = subparsers.add_parser('add-host', help='Trust and add a new host')
    add_host_parser.add_argument('name', help='Display name')
    add_host_parser.add_argument('address', help='Host IP/hostname')
    add_host_parser.add_argument('username', help='Login username')
    add_host_parser.add_argument('--port', type=int, default=22, help='SSH port (default: 22)')
    add_host_parser.add_argument('--jump', help='Name of the jump host to reach it through')
    add_host_parser.add_argument('--yes', action='store_true', help='Trust the offered key without asking')

    jump_parser = subparsers.add_parser('set-jump', help='Change the jump host of a host')
    jump_parser.add_argument('name', help='Host name')
    jump_parser.add_argument('jump', nargs='?', help='Jump host name (omit to connect directly)')

    delete_parser = subparsers.add_parser('delete-host', help='Delete a host')
    delete_parser.add_argument('name', help='Host name')

    add_user_parser = subparsers.add_parser('add-user', help='Add a user')
    add_user_parser.add_argument('username', help='Username')

    for name, help_text in (('enable-user', 'Expect the keys of a user again'),
                            ('disable-user', 'Stop expecting the keys of a user')):
        toggle_parser = subparsers.add_parser(name, help=help_text)
        toggle_parser.add_argument('username', help='Username')

    subparsers.add_parser('users', help='List users and their keys')

    assign_parser = subparsers.add_parser('assign-key', help='Assign a public key')
    assign_parser.add_argument('key', help='Public key line ("type base64 [comment]")')
    assign_group = assign_parser.add_mutually_exclusive_group(required=True)
    assign_group.add_argument('--user', help='Owning user')
    assign_group.add_argument('--host', help='Owning host (server key)')

    authorize_parser = subparsers.add_parser('authorize', help='Authorize a user on a host')
    authorize_parser.add_argument('host', help='Host name')
    authorize_parser.add_argument('username', help='Username')
    authorize_parser.add_argument('--options', help='authorized_keys options, e.g. no-pty')

    revoke_parser = subparsers.add_parser('revoke', help='Revoke a user on a host')
    revoke_parser.add_argument('host', help='Host name')
    revoke_parser.add_argument('username', help='Username')

    diff_parser = subparsers.add_parser('diff', help='Compare expected and present keys')
    diff_parser.add_argument('host', help='Host name')

    push_parser = subparsers.add_parser('push', help='Add missing authorized keys to a host')
    push_parser.add_argument('host', help='Host name')

    remove_parser = subparsers.add_parser('remove-key', help='Remove a key from a host')
    remove_parser.add_argument('host', help='Host name')
    remove_parser.add_argument('key_base64', help='Base64 material of the key')

    subparsers.add_parser('test', help='Test configuration and connectivity')

    args = parser.parse_args()

    app = KeyManagerMain()

    try:
        if args.command == 'hosts':
            app.list_hosts()
        elif args.command == 'add-host':
            success = app.add_host(args.name, args.address, args.username,
                                   args.port, args.jump, args.yes)
            sys.exit(0 if success else 1)
        elif args.command == 'set-jump':
            app.set_jump(args.name, args.jump)
        elif args.command == 'delete-host':
            app.delete_host(args.name)
        elif args.command == 'add-user':
            app.add_user(args.username)
        elif args.command in ('enable-user', 'disable-user'):
            app.set_user_enabled(args.username, args.command == 'enable-user')
        elif args.command == 'users':
            app.list_users()
        elif args.command == 'assign-key':
            app.assign_key(args.key, args.user, args.host)
        elif args.command == 'authorize':
            app.authorize(args.host, args.username, args.options)
        elif args.command == 'revoke':
            app.revoke(args.host, args.username)
        elif args.command == 'diff':
            app.diff(args.host)
        elif args.command == 'push':
            app.push(args.host)
        elif args.command == 'remove-key':
            app.remove_key(args.host, args.key_base64)
        elif args.command == 'test':
            app.test_config()
        else:
            parser.print_help()
            sys.exit(1)
    except (KeyManagerError, ValueError) as e:
        app.logger.error(f"{args.command} failed: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
