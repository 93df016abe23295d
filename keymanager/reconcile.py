"""Comparison of the keys a host should accept with the keys it does accept."""

import asyncio
import logging
from typing import Dict, Iterable, List, Tuple

from . import remote
from .aio import open_session, run_blocking, session_scope
from .db import Database
from .errors import DatabaseError
from .models import Host, HostDiff, PublicKey, Unowned
from .router import ConnectionRouter, Session

logger = logging.getLogger(__name__)


def _unique(keys: Iterable[PublicKey]) -> List[PublicKey]:
    """Drop repeated identities, keeping the first occurrence."""
    seen: Dict[Tuple[str, str], PublicKey] = {}
    for key in keys:
        seen.setdefault(key.identity, key)
    return list(seen.values())


def compute_diff(host: Host, expected: Iterable[PublicKey],
                 observed: Iterable[PublicKey]) -> HostDiff:
    """
    Partition expected and observed keys by identity.

    ``matching`` holds the expected records (with their owners), so
    matching + expected_absent covers the expected set and
    matching + unexpected covers the observed set.
    """
    expected = _unique(expected)
    observed = _unique(observed)
    expected_ids = {key.identity for key in expected}
    observed_ids = {key.identity for key in observed}

    return HostDiff(
        host=host,
        matching=[key for key in expected if key.identity in observed_ids],
        expected_absent=[key for key in expected if key.identity not in observed_ids],
        unexpected=[key for key in observed if key.identity not in expected_ids],
    )


def _add_keys_and_close(session: Session, keys: List[PublicKey]):
    with session:
        for key in keys:
            remote.add_key(session, key)


class ReconciliationEngine:
    """Computes host diffs and records keys nobody has claimed yet."""

    def __init__(self, database: Database, router: ConnectionRouter):
        self.database = database
        self.router = router

    def record_unexpected(self, diff: HostDiff) -> List[PublicKey]:
        """
        Store unknown unexpected keys as unowned and tag known ones with their owner.

        Returns the newly created records. Store failures are logged only.
        """
        created = []
        for key in diff.unexpected:
            candidate = PublicKey(key.key_type, key.key_base64, key.comment, Unowned())
            try:
                stored, is_new = self.database.upsert_key(candidate)
            except DatabaseError as e:
                logger.error(f"Host {diff.host.name}: could not record key {key}: {e}")
                continue

            key.id = stored.id
            key.owner = stored.owner
            if is_new:
                logger.info(f"Host {diff.host.name}: recorded unknown key {stored.id}")
                created.append(stored)
        return created

    async def get_host_diff(self, host: Host) -> HostDiff:
        async with session_scope(self.router.resolve, host) as session:
            observed = await run_blocking(remote.list_authorized_keys, session)

        expected = await run_blocking(self.database.get_expected_keys, host.id)
        diff = compute_diff(host, expected, observed)
        await run_blocking(self.record_unexpected, diff)

        logger.info(
            f"Host {host.name}: {len(diff.matching)} matching, "
            f"{len(diff.expected_absent)} missing, {len(diff.unexpected)} unexpected"
        )
        return diff

    async def push_expected_keys(self, host: Host) -> List[PublicKey]:
        """Grant every key that is authorized but missing on the host."""
        diff = await self.get_host_diff(host)
        missing = diff.expected_absent
        if not missing:
            return []

        session = await open_session(self.router.resolve, host)
        # The rewrite finishes even if the caller goes away
        await asyncio.shield(run_blocking(_add_keys_and_close, session, missing))
        return missing
