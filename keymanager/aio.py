"""Run blocking paramiko and sqlite calls without stalling the event loop."""

import asyncio
import functools
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


async def run_blocking(func, *args, **kwargs):
    """Run a blocking callable in the default thread pool executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def _close_when_done(future):
    if future.cancelled() or future.exception() is not None:
        return
    try:
        future.result().close()
    except Exception as e:
        logger.debug(f"Error closing abandoned session: {e}")


async def open_session(connect, *args):
    """
    Open a session with a blocking ``connect`` callable.

    If the caller is cancelled while connecting, the session is closed as
    soon as the connection attempt finishes instead of leaking.
    """
    future = asyncio.ensure_future(run_blocking(connect, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        future.add_done_callback(_close_when_done)
        raise


@asynccontextmanager
async def session_scope(connect, *args):
    """Open a session for the duration of a block, closing it on every path."""
    session = await open_session(connect, *args)
    try:
        yield session
    finally:
        await run_blocking(session.close)
