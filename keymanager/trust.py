"""Two-phase trust-on-first-use registration of new hosts."""

import asyncio
import hmac
import logging
import secrets
import time
from typing import List, Optional, Tuple

from . import remote
from .aio import run_blocking, session_scope
from .config import Config
from .db import Database
from .errors import DatabaseError, ExecutionError, TrustError, TrustTimeoutError
from .logging import log_trust_offered, log_trust_rejected
from .models import (
    ConnectionDetails, Host, HostOwner, PendingTrust, PublicKey, TrustState, Unowned,
)
from .router import ConnectionRouter

logger = logging.getLogger(__name__)


class HostTrustProtocol:
    """
    Registers hosts only after their key has been shown to and confirmed by a person.

    ``begin_trust`` captures the fingerprint the server presents and parks the
    request in the pending_trust table. ``confirm_trust`` checks the caller
    saw that exact fingerprint, then logs in with it pinned and persists the
    host only if authentication works.
    """

    def __init__(self, database: Database, router: ConnectionRouter):
        self.database = database
        self.router = router

    async def begin_trust(self, name: str, address: str, port: int, username: str,
                          jump_via: Optional[int] = None) -> Tuple[str, str]:
        """
        Capture the host key of a new host.

        Returns:
            Tuple of (fingerprint, confirmation token)

        Raises:
            ValueError: invalid name, username or address
            DatabaseError: a host with this name already exists
            TrustTimeoutError: the server didn't present a key in time
        """
        details = ConnectionDetails(address, port)
        if not name or not username:
            raise ValueError("Host name and username are required")

        if await run_blocking(self.database.get_host_name, name) is not None:
            raise DatabaseError(f"Host {name} already exists")

        jump_host = None
        if jump_via is not None:
            jump_host = await run_blocking(self.database.check_jump_via, jump_via)

        await run_blocking(self.database.purge_expired_trust, time.time())

        pending = PendingTrust(
            token=secrets.token_urlsafe(24),
            name=name,
            hostname=details.hostname,
            port=details.port,
            username=username,
            fingerprint="",
            expires_at=time.time() + Config.TRUST_TTL,
            jump_via=jump_via,
            state=TrustState.REQUESTED,
        )
        await run_blocking(self.database.save_pending_trust, pending)

        try:
            fingerprint = await asyncio.wait_for(
                run_blocking(self.router.fetch_host_key, details, jump_host),
                timeout=Config.TRUST_TIMEOUT,
            )
        except asyncio.TimeoutError:
            await run_blocking(self.database.delete_pending_trust, pending.token)
            log_trust_rejected(logger, name, "timed out waiting for the host key")
            raise TrustTimeoutError(
                f"Connection timed out waiting for the host key of {details}"
            ) from None
        except BaseException:
            await run_blocking(self.database.delete_pending_trust, pending.token)
            raise

        pending.fingerprint = fingerprint
        pending.state = TrustState.FINGERPRINT_OFFERED
        await run_blocking(self.database.save_pending_trust, pending)

        log_trust_offered(logger, name, str(details), fingerprint)
        return fingerprint, pending.token

    async def confirm_trust(self, token: str, fingerprint: str) -> Host:
        """
        Persist the host if ``fingerprint`` is the one offered and login works.

        Raises:
            TrustError: unknown token or a fingerprint other than the offered one
            TrustTimeoutError: the confirmation came after the token expired
            SshError: the trusting handshake or authentication failed; the
                confirmation can be retried until the token expires
        """
        pending = await run_blocking(self.database.get_pending_trust, token)
        if pending is None:
            raise TrustError("Unknown or already used confirmation token")
        if pending.state != TrustState.FINGERPRINT_OFFERED:
            raise TrustError(f"No host key has been offered for {pending.name} yet")

        if pending.is_expired(time.time()):
            pending.state = TrustState.TIMEOUT
            await run_blocking(self.database.delete_pending_trust, token)
            log_trust_rejected(logger, pending.name, "confirmation expired")
            raise TrustTimeoutError(f"Confirmation for {pending.name} expired")

        fingerprint = (fingerprint or "").strip()
        if not hmac.compare_digest(fingerprint.encode(), pending.fingerprint.encode()):
            pending.state = TrustState.REJECTED
            await run_blocking(self.database.delete_pending_trust, token)
            log_trust_rejected(logger, pending.name, "fingerprint doesn't match the offered one")
            raise TrustError(f"Fingerprint doesn't match the host key offered by {pending.name}")

        jump_host = None
        if pending.jump_via is not None:
            jump_host = await run_blocking(self.database.check_jump_via, pending.jump_via)

        async with session_scope(self.router.connect_details, pending.name, pending.details,
                                 pending.username, [pending.fingerprint], jump_host) as session:
            host = Host(
                name=pending.name,
                hostname=pending.hostname,
                port=pending.port,
                username=pending.username,
                key_fingerprint=pending.fingerprint,
                jump_via=pending.jump_via,
            )
            host = await run_blocking(self.database.add_host, host)
            pending.state = TrustState.CONFIRMED
            await run_blocking(self.database.delete_pending_trust, token)

            try:
                server_keys = await run_blocking(
                    remote.list_server_identity_keys, session, host.id
                )
                await run_blocking(self._record_server_keys, host, server_keys)
            except (ExecutionError, DatabaseError) as e:
                logger.warning(f"Could not record server keys of {host.name}: {e}")

        return host

    def _record_server_keys(self, host: Host, keys: List[PublicKey]):
        owner = HostOwner(host.id)
        for key in keys:
            stored, created = self.database.upsert_key(key)
            if not created and isinstance(stored.owner, Unowned):
                self.database.assign_key(stored, owner)
        logger.info(f"Recorded {len(keys)} server keys of {host.name}")
