"""Entry point API of the SSH key manager."""

import asyncio
import logging
from typing import List, Optional, Tuple

from . import remote
from .aio import open_session, run_blocking
from .auth import SigningCredential
from .db import Database
from .errors import NoSuchHost
from .keys import validate_key_base64
from .models import Host, HostDiff, PublicKey
from .reconcile import ReconciliationEngine
from .router import ConnectionRouter, Session
from .trust import HostTrustProtocol


def _remove_and_close(session: Session, key_base64: str):
    with session:
        remote.remove_key(session, key_base64)


def _add_and_close(session: Session, key: PublicKey):
    with session:
        remote.add_key(session, key)


class KeyManager:
    """Async facade over the trust store, the router and the remote operations."""

    def __init__(self, database: Optional[Database] = None,
                 credential: Optional[SigningCredential] = None,
                 router: Optional[ConnectionRouter] = None):
        """
        Initialize the key manager.

        The signing credential is only loaded from Config.SIGNING_KEY_FILE
        once an operation needs to connect somewhere.
        """
        self.logger = logging.getLogger(__name__)
        self.database = database or Database()
        self._credential = credential
        self._router = router

    @property
    def router(self) -> ConnectionRouter:
        if self._router is None:
            credential = self._credential or SigningCredential.from_file()
            self._router = ConnectionRouter(self.database, credential)
        return self._router

    @property
    def trust(self) -> HostTrustProtocol:
        return HostTrustProtocol(self.database, self.router)

    @property
    def reconciler(self) -> ReconciliationEngine:
        return ReconciliationEngine(self.database, self.router)

    async def list_hosts(self) -> List[Host]:
        return await run_blocking(self.database.get_all_hosts)

    async def get_host(self, name: str) -> Host:
        host = await run_blocking(self.database.get_host_name, name)
        if host is None:
            raise NoSuchHost(name)
        return host

    async def resolve_and_authenticate(self, host: Host) -> Session:
        """Open a session to a host; the caller must close it."""
        return await open_session(self.router.resolve, host)

    async def begin_trust(self, name: str, address: str, port: int, username: str,
                          jump_via: Optional[int] = None) -> Tuple[str, str]:
        return await self.trust.begin_trust(name, address, port, username, jump_via)

    async def confirm_trust(self, token: str, fingerprint: str) -> Host:
        return await self.trust.confirm_trust(token, fingerprint)

    async def get_host_diff(self, host: Host) -> HostDiff:
        return await self.reconciler.get_host_diff(host)

    async def push_expected_keys(self, host: Host) -> List[PublicKey]:
        return await self.reconciler.push_expected_keys(host)

    async def remove_key(self, host: Host, key_base64: str):
        """Remove a key from a host; succeeds if the key isn't there."""
        validate_key_base64(key_base64)
        session = await open_session(self.router.resolve, host)
        # Let the rewrite finish even if the caller goes away
        await asyncio.shield(run_blocking(_remove_and_close, session, key_base64))

    async def add_key(self, host: Host, key: PublicKey, options: Optional[str] = None):
        """Grant a key on a host; succeeds if the key is already there."""
        validate_key_base64(key.key_base64)
        if options is not None:
            key = PublicKey(key.key_type, key.key_base64, key.comment, key.owner, options, key.id)
        session = await open_session(self.router.resolve, host)
        await asyncio.shield(run_blocking(_add_and_close, session, key))

    async def authorize_user(self, host_id: int, user_id: int, options: Optional[str] = None):
        await run_blocking(self.database.authorize_user, host_id, user_id, options)

    async def set_jump_via(self, host_id: int, jump_id: Optional[int]):
        await run_blocking(self.database.set_jump_via, host_id, jump_id)
