"""Database connection and operations for the SSH key manager."""

import sqlite3
import logging
from typing import Dict, List, Optional, Tuple
from contextlib import contextmanager

from .config import Config
from .errors import (
    DatabaseError, HostInUseError, JumpChainError, MalformedKeyError, NoSuchHost, NoSuchUser,
)
from .keys import key_fingerprint
from .models import (
    Host, HostOwner, KeyOwner, PendingTrust, PublicKey, TrustState, Unowned,
    User, UserAndOptions, UserOwner,
)


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS hosts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT UNIQUE NOT NULL,
        username TEXT NOT NULL,
        hostname TEXT NOT NULL,
        port INTEGER NOT NULL DEFAULT 22,
        key_fingerprint TEXT NOT NULL,
        jump_via INTEGER REFERENCES hosts(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT UNIQUE NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1 CHECK (enabled IN (0, 1))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS public_keys (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        key_type TEXT NOT NULL,
        key_base64 TEXT NOT NULL,
        comment TEXT,
        host_id INTEGER REFERENCES hosts(id),
        user_id INTEGER REFERENCES users(id),
        UNIQUE (key_type, key_base64),
        CHECK (host_id IS NULL OR user_id IS NULL)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS authorizations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        host_id INTEGER NOT NULL REFERENCES hosts(id),
        user_id INTEGER NOT NULL REFERENCES users(id),
        options TEXT,
        UNIQUE (host_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_trust (
        token TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        hostname TEXT NOT NULL,
        port INTEGER NOT NULL,
        username TEXT NOT NULL,
        jump_via INTEGER,
        fingerprint TEXT NOT NULL,
        state TEXT NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_public_keys_user ON public_keys(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_public_keys_host ON public_keys(host_id)",
    "CREATE INDEX IF NOT EXISTS idx_hosts_jump_via ON hosts(jump_via)",
)


def _host_from_row(row) -> Host:
    return Host(
        id=row['id'],
        name=row['name'],
        hostname=row['hostname'],
        port=row['port'],
        username=row['username'],
        key_fingerprint=row['key_fingerprint'],
        jump_via=row['jump_via'],
    )


def _user_from_row(row) -> User:
    return User(id=row['id'], username=row['username'], enabled=bool(row['enabled']))


def _owner_from_row(row) -> KeyOwner:
    if row['user_id'] is not None:
        return UserOwner(row['user_id'])
    if row['host_id'] is not None:
        return HostOwner(row['host_id'])
    return Unowned()


def _owner_columns(owner: KeyOwner) -> Tuple[Optional[int], Optional[int]]:
    """Return the (host_id, user_id) columns of an owner."""
    if isinstance(owner, HostOwner):
        return owner.host_id, None
    if isinstance(owner, UserOwner):
        return None, owner.user_id
    if isinstance(owner, Unowned):
        return None, None
    raise ValueError(f"Invalid key owner: {owner!r}")


def _key_from_row(row, options: Optional[str] = None) -> PublicKey:
    return PublicKey(
        id=row['id'],
        key_type=row['key_type'],
        key_base64=row['key_base64'],
        comment=row['comment'],
        owner=_owner_from_row(row),
        options=options,
    )


class Database:
    """Trust store for hosts, users, keys and authorizations."""

    def __init__(self, db_url: str = None): # type: ignore
        """Initialize database connection."""
        self.db_url = db_url or Config.DB_URL
        if not self.db_url.startswith("sqlite"):
            raise DatabaseError(f"Unsupported database URL: {self.db_url}")
        self.db_path = self.db_url.replace("sqlite:///", "")
        self.logger = logging.getLogger(__name__)
        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _get_connection(self, immediate: bool = False):
        """
        Get a connection whose work is committed as one transaction.

        With ``immediate`` the write lock is taken before the first read, so
        checks made inside the block still hold when its writes commit.
        """
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            self.logger.error(f"Error opening database {self.db_path}: {e}")
            raise DatabaseError(str(e)) from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            self.logger.error(f"Database error: {e}")
            raise DatabaseError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Hosts

    def add_host(self, host: Host) -> Host:
        """
        Insert a new host and return it with its id.

        Raises:
            NoSuchHost: its jump host doesn't exist
            JumpChainError: the route through its jump host is too deep
        """
        with self._get_connection(immediate=True) as conn:
            if host.jump_via is not None:
                self._check_jump_via(conn, host.jump_via)
            cursor = conn.execute(
                """
                INSERT INTO hosts (name, username, hostname, port, key_fingerprint, jump_via)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (host.name, host.username, host.hostname, host.port,
                 host.key_fingerprint, host.jump_via)
            )
            host.id = cursor.lastrowid
        self.logger.info(f"Added host {host.label}")
        return host

    def _fetch_host(self, conn, host_id: int) -> Optional[Host]:
        row = conn.execute("SELECT * FROM hosts WHERE id = ?", (host_id,)).fetchone()
        return _host_from_row(row) if row else None

    def get_host_id(self, host_id: int) -> Optional[Host]:
        """Find host by id."""
        with self._get_connection() as conn:
            return self._fetch_host(conn, host_id)

    def get_host_name(self, name: str) -> Optional[Host]:
        """Find host by display name."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM hosts WHERE name = ?", (name,)).fetchone()
            return _host_from_row(row) if row else None

    def get_all_hosts(self) -> List[Host]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM hosts ORDER BY name").fetchall()
            return [_host_from_row(row) for row in rows]

    def delete_host(self, host_id: int):
        """
        Delete a host.

        Its authorizations go with it; keys it owned are kept as unowned.

        Raises:
            HostInUseError: another host jumps through this one
        """
        with self._get_connection() as conn:
            if self._fetch_host(conn, host_id) is None:
                raise NoSuchHost(str(host_id))

            dependants = conn.execute(
                "SELECT name FROM hosts WHERE jump_via = ? ORDER BY name", (host_id,)
            ).fetchall()
            if dependants:
                names = ", ".join(row['name'] for row in dependants)
                raise HostInUseError(f"Host is used as jump host by: {names}")

            conn.execute("DELETE FROM authorizations WHERE host_id = ?", (host_id,))
            conn.execute("UPDATE public_keys SET host_id = NULL WHERE host_id = ?", (host_id,))
            conn.execute("DELETE FROM hosts WHERE id = ?", (host_id,))
        self.logger.info(f"Deleted host {host_id}")

    def get_jump_chain(self, host: Host) -> List[Host]:
        """
        Return the route to a host, directly reachable host first.

        The last element is the host itself.

        Raises:
            JumpChainError: the chain loops, is too deep or references a missing host
        """
        with self._get_connection() as conn:
            return self._jump_chain(conn, host)

    def _jump_chain(self, conn, host: Host) -> List[Host]:
        chain = [host]
        visited = {host.id}
        current = host
        while current.jump_via is not None:
            if current.jump_via in visited:
                raise JumpChainError(f"Jump chain of {host.name} contains a cycle")
            if len(chain) > Config.MAX_JUMP_DEPTH:
                raise JumpChainError(
                    f"Jump chain of {host.name} is deeper than {Config.MAX_JUMP_DEPTH}"
                )
            jump = self._fetch_host(conn, current.jump_via)
            if jump is None:
                raise JumpChainError(
                    f"{current.name} jumps via missing host {current.jump_via}"
                )
            visited.add(jump.id)
            chain.append(jump)
            current = jump
        chain.reverse()
        return chain

    def _subtree_depth(self, conn, host_id: int) -> int:
        """Longest chain of hosts jumping (transitively) through a host."""
        rows = conn.execute(
            "SELECT id, jump_via FROM hosts WHERE jump_via IS NOT NULL"
        ).fetchall()
        children: Dict[int, List[int]] = {}
        for row in rows:
            children.setdefault(row['jump_via'], []).append(row['id'])

        depth = 0
        level = [host_id]
        seen = {host_id}
        while level:
            level = [c for parent in level for c in children.get(parent, []) if c not in seen]
            seen.update(level)
            if level:
                depth += 1
        return depth

    def check_jump_via(self, jump_id: int, host_id: Optional[int] = None) -> Host:
        """
        Validate that a host may be reached through ``jump_id``.

        Returns the jump host.

        Raises:
            NoSuchHost: the jump host doesn't exist
            JumpChainError: the route would loop or exceed the depth limit
        """
        with self._get_connection() as conn:
            return self._check_jump_via(conn, jump_id, host_id)

    def _check_jump_via(self, conn, jump_id: int, host_id: Optional[int] = None) -> Host:
        if host_id is not None and jump_id == host_id:
            raise JumpChainError("A host cannot be its own jump host")

        jump = self._fetch_host(conn, jump_id)
        if jump is None:
            raise NoSuchHost(str(jump_id))

        chain = self._jump_chain(conn, jump)
        if host_id is not None and any(hop.id == host_id for hop in chain):
            raise JumpChainError(f"Jumping via {jump.name} would create a cycle")

        below = self._subtree_depth(conn, host_id) if host_id is not None else 0
        if len(chain) + below > Config.MAX_JUMP_DEPTH:
            raise JumpChainError(
                f"Jump chain via {jump.name} would be deeper than {Config.MAX_JUMP_DEPTH}"
            )
        return jump

    def set_jump_via(self, host_id: int, jump_id: Optional[int]):
        """Route a host through another one, or make it direct with ``None``."""
        # The check and the write share one write lock
        with self._get_connection(immediate=True) as conn:
            if self._fetch_host(conn, host_id) is None:
                raise NoSuchHost(str(host_id))
            if jump_id is not None:
                self._check_jump_via(conn, jump_id, host_id)
            conn.execute("UPDATE hosts SET jump_via = ? WHERE id = ?", (jump_id, host_id))
        self.logger.info(f"Host {host_id} now jumps via {jump_id}")

    def get_host_fingerprints(self, host: Host) -> List[str]:
        """Trusted fingerprints: the confirmed one, then those of recorded server keys."""
        fingerprints = [host.key_fingerprint]
        for key in self.get_keys_for_owner(HostOwner(host.id)):
            try:
                fingerprint = key_fingerprint(key.key_base64)
            except MalformedKeyError as e:
                self.logger.warning(f"Ignoring host key {key.id} of {host.name}: {e}")
                continue
            if fingerprint not in fingerprints:
                fingerprints.append(fingerprint)
        return fingerprints

    # Users

    def add_user(self, user: User) -> User:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO users (username, enabled) VALUES (?, ?)",
                (user.username, int(user.enabled))
            )
            user.id = cursor.lastrowid
        self.logger.info(f"Added user {user.username}")
        return user

    def set_user_enabled(self, user_id: int, enabled: bool):
        """A disabled user keeps keys and authorizations but is expected nowhere."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE users SET enabled = ? WHERE id = ?", (int(enabled), user_id)
            )
            if cursor.rowcount == 0:
                raise NoSuchUser(f"User {user_id} doesn't exist")
        self.logger.info(f"User {user_id} {'enabled' if enabled else 'disabled'}")

    def get_user_id(self, user_id: int) -> Optional[User]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return _user_from_row(row) if row else None

    def get_user_name(self, username: str) -> Optional[User]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = ?", (username,)
            ).fetchone()
            return _user_from_row(row) if row else None

    def get_all_users(self) -> List[User]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY username").fetchall()
            return [_user_from_row(row) for row in rows]

    # Keys

    def add_key(self, key: PublicKey) -> PublicKey:
        """Insert a key with its owner; duplicates are a DatabaseError."""
        host_id, user_id = _owner_columns(key.owner)
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO public_keys (key_type, key_base64, comment, host_id, user_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                (key.key_type, key.key_base64, key.comment, host_id, user_id)
            )
            key.id = cursor.lastrowid
        return key

    def get_key_id(self, key_id: int) -> Optional[PublicKey]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM public_keys WHERE id = ?", (key_id,)).fetchone()
            return _key_from_row(row) if row else None

    def find_key(self, key_type: str, key_base64: str) -> Optional[PublicKey]:
        """Find a key by its identity."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM public_keys WHERE key_type = ? AND key_base64 = ?",
                (key_type, key_base64)
            ).fetchone()
            return _key_from_row(row) if row else None

    def get_keys_for_owner(self, owner: KeyOwner) -> List[PublicKey]:
        host_id, user_id = _owner_columns(owner)
        with self._get_connection() as conn:
            if host_id is not None:
                rows = conn.execute(
                    "SELECT * FROM public_keys WHERE host_id = ? ORDER BY id", (host_id,)
                ).fetchall()
            elif user_id is not None:
                rows = conn.execute(
                    "SELECT * FROM public_keys WHERE user_id = ? ORDER BY id", (user_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM public_keys
                    WHERE host_id IS NULL AND user_id IS NULL ORDER BY id
                    """
                ).fetchall()
            return [_key_from_row(row) for row in rows]

    def upsert_key(self, key: PublicKey) -> Tuple[PublicKey, bool]:
        """
        Insert a key unless one with the same identity exists.

        Returns the stored key and whether it was created. An existing
        record keeps its owner and comment.
        """
        host_id, user_id = _owner_columns(key.owner)
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO public_keys (key_type, key_base64, comment, host_id, user_id)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (key_type, key_base64) DO NOTHING
                """,
                (key.key_type, key.key_base64, key.comment, host_id, user_id)
            )
            created = cursor.rowcount == 1
            row = conn.execute(
                "SELECT * FROM public_keys WHERE key_type = ? AND key_base64 = ?",
                (key.key_type, key.key_base64)
            ).fetchone()
        return _key_from_row(row), created

    def assign_key(self, key: PublicKey, owner: KeyOwner) -> PublicKey:
        """Give a (possibly discovered) key to a user or host."""
        if isinstance(owner, UserOwner) and self.get_user_id(owner.user_id) is None:
            raise NoSuchUser(f"User {owner.user_id} doesn't exist")
        if isinstance(owner, HostOwner) and self.get_host_id(owner.host_id) is None:
            raise NoSuchHost(str(owner.host_id))

        stored, _ = self.upsert_key(key)
        host_id, user_id = _owner_columns(owner)
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE public_keys SET host_id = ?, user_id = ? WHERE id = ?",
                (host_id, user_id, stored.id)
            )
        stored.owner = owner
        self.logger.info(f"Assigned key {stored.id} to {owner}")
        return stored

    # Authorizations

    def authorize_user(self, host_id: int, user_id: int, options: Optional[str] = None):
        """Allow a user on a host; re-authorizing replaces the options."""
        with self._get_connection() as conn:
            if self._fetch_host(conn, host_id) is None:
                raise NoSuchHost(str(host_id))
            if conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
                raise NoSuchUser(f"User {user_id} doesn't exist")
            conn.execute(
                """
                INSERT INTO authorizations (host_id, user_id, options)
                VALUES (?, ?, ?)
                ON CONFLICT (host_id, user_id) DO UPDATE SET options = excluded.options
                """,
                (host_id, user_id, options or None)
            )
        self.logger.info(f"Authorized user {user_id} on host {host_id}")

    def revoke_user(self, host_id: int, user_id: int) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM authorizations WHERE host_id = ? AND user_id = ?",
                (host_id, user_id)
            )
            return cursor.rowcount > 0

    def get_authorized_users(self, host_id: int) -> List[UserAndOptions]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT u.id, u.username, u.enabled, a.options
                FROM authorizations a JOIN users u ON u.id = a.user_id
                WHERE a.host_id = ?
                ORDER BY u.username
                """,
                (host_id,)
            ).fetchall()
            return [
                UserAndOptions(_user_from_row(row), row['options'])
                for row in rows
            ]

    def get_expected_keys(self, host_id: int) -> List[PublicKey]:
        """Keys of every enabled user authorized on a host, carrying the authorization options."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT k.*, a.options AS auth_options
                FROM authorizations a
                JOIN users u ON u.id = a.user_id
                JOIN public_keys k ON k.user_id = a.user_id
                WHERE a.host_id = ? AND u.enabled = 1
                ORDER BY k.id
                """,
                (host_id,)
            ).fetchall()
            return [_key_from_row(row, row['auth_options']) for row in rows]

    # Pending host key confirmations

    def save_pending_trust(self, pending: PendingTrust):
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO pending_trust
                (token, name, hostname, port, username, jump_via, fingerprint, state, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (pending.token, pending.name, pending.hostname, pending.port,
                 pending.username, pending.jump_via, pending.fingerprint,
                 pending.state.value, pending.expires_at)
            )

    def get_pending_trust(self, token: str) -> Optional[PendingTrust]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM pending_trust WHERE token = ?", (token,)
            ).fetchone()
            if not row:
                return None
            return PendingTrust(
                token=row['token'],
                name=row['name'],
                hostname=row['hostname'],
                port=row['port'],
                username=row['username'],
                jump_via=row['jump_via'],
                fingerprint=row['fingerprint'],
                state=TrustState(row['state']),
                expires_at=row['expires_at'],
            )

    def delete_pending_trust(self, token: str):
        with self._get_connection() as conn:
            conn.execute("DELETE FROM pending_trust WHERE token = ?", (token,))

    def purge_expired_trust(self, now: float) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM pending_trust WHERE expires_at <= ?", (now,))
            return cursor.rowcount
