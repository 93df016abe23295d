"""Routing module to reach hosts directly or through jump hosts."""

import logging
import socket
import time
from typing import List, Optional

import paramiko

from .auth import SigningCredential, get_key_fingerprint
from .config import Config
from .db import Database
from .errors import ExecutionError, JumpHostError, SshError, TrustError
from .models import ConnectionDetails, Host
from .logging import (
    log_connection_attempt, log_connection_closed, log_connection_denied,
    log_connection_error, log_connection_success,
)

logger = logging.getLogger(__name__)

RECV_SIZE = 32768
POLL_INTERVAL = 0.01


class PinnedHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    """Accept the server key only if its fingerprint is trusted."""

    def __init__(self, host: str, fingerprints: List[str]):
        self.host = host
        self.fingerprints = list(fingerprints)
        self.presented = None

    def missing_host_key(self, client, hostname, key):
        self.presented = get_key_fingerprint(key)
        if self.presented in self.fingerprints:
            return

        log_connection_denied(logger, self.host, self.presented,
                              "host key doesn't match any trusted fingerprint")
        raise TrustError(
            f"Didn't find a matching host key for {self.host} "
            f"(server presented {self.presented})"
        )


def _close_all(clients: List[paramiko.SSHClient]):
    """Close clients innermost first; failures are ignored."""
    for client in reversed(clients):
        try:
            client.close()
        except Exception as e:
            logger.debug(f"Error while closing SSH client: {e}")


class Session:
    """An authenticated SSH connection, plus the jump hosts it runs through."""

    def __init__(self, host: str, client: paramiko.SSHClient,
                 jumps: Optional[List[paramiko.SSHClient]] = None):
        self.host = host
        self.client = client
        self.jumps = list(jumps or [])
        self.closed = False

    def run(self, command: str, timeout: Optional[int] = None) -> str:
        """
        Execute a command and return its standard output.

        Raises:
            ExecutionError: transport failure or non-zero exit status
        """
        timeout = timeout or Config.COMMAND_TIMEOUT
        try:
            _, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            output, error_output = self._drain(stdout, stderr, timeout)
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ExecutionError(f"Command failed on {self.host}: {e}") from e

        logger.info(f"Host {self.host}: Executed command with exit status {exit_status}")

        if exit_status != 0:
            raise ExecutionError(
                f"Command exited with code {exit_status}: {error_output.strip()[:200]}",
                exit_status
            )
        return output

    def _drain(self, stdout, stderr, timeout: float):
        """Read stdout and stderr as they arrive until the command exits."""
        channel = stdout.channel
        deadline = time.monotonic() + timeout
        out, err = [], []
        while not channel.exit_status_ready():
            if channel.recv_ready():
                out.append(channel.recv(RECV_SIZE))
            elif channel.recv_stderr_ready():
                err.append(channel.recv_stderr(RECV_SIZE))
            elif time.monotonic() > deadline:
                raise ExecutionError(f"Command on {self.host} timed out after {timeout}s")
            else:
                time.sleep(POLL_INTERVAL)

        # Whatever arrived together with the exit status
        out.append(stdout.read())
        err.append(stderr.read())
        return (b"".join(out).decode("utf-8", errors="replace"),
                b"".join(err).decode("utf-8", errors="replace"))

    def close(self):
        """Disconnect, ignoring errors."""
        if self.closed:
            return
        self.closed = True
        _close_all(self.jumps + [self.client])
        log_connection_closed(logger, self.host)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class ConnectionRouter:
    """Resolve hosts into live authenticated sessions."""

    def __init__(self, database: Database, credential: SigningCredential):
        """Initialize router with the trust store and the signing credential."""
        self.database = database
        self.credential = credential

    def resolve(self, host: Host) -> Session:
        """
        Open a session to a stored host, through its jump chain if it has one.

        Raises:
            JumpChainError: the stored route is invalid
            JumpHostError: an intermediate hop failed
            TrustError: the host key isn't trusted
            SshError: the host is unreachable or refuses the credential
        """
        chain = self.database.get_jump_chain(host)
        jumps = self._open_jumps(chain[:-1])
        try:
            client = self._connect_through(
                jumps, host.name, host.details, host.username,
                self.database.get_host_fingerprints(host)
            )
        except BaseException:
            _close_all(jumps)
            raise
        return Session(host.name, client, jumps)

    def connect_details(self, name: str, details: ConnectionDetails, username: str,
                        fingerprints: List[str], jump_host: Optional[Host] = None) -> Session:
        """Open a session to a host that isn't stored yet."""
        jumps = self._open_jumps(self.database.get_jump_chain(jump_host)) if jump_host else []
        try:
            client = self._connect_through(jumps, name, details, username, fingerprints)
        except BaseException:
            _close_all(jumps)
            raise
        return Session(name, client, jumps)

    def fetch_host_key(self, details: ConnectionDetails,
                       jump_host: Optional[Host] = None) -> str:
        """
        Handshake without any trust check and return the server key fingerprint.

        No authentication is attempted.
        """
        jumps = self._open_jumps(self.database.get_jump_chain(jump_host)) if jump_host else []
        via = jump_host.name if jump_host else None
        log_connection_attempt(logger, "(new host)", str(details), via)

        sock = None
        transport = None
        try:
            if jumps:
                sock = self._forward(jumps[-1], details)
            else:
                try:
                    sock = socket.create_connection(
                        (details.hostname, details.port), timeout=Config.CONNECTION_TIMEOUT
                    )
                except OSError as e:
                    raise SshError(f"Couldn't connect to {details}: {e}") from e

            try:
                transport = paramiko.Transport(sock)
                transport.start_client(timeout=Config.CONNECTION_TIMEOUT)
                key = transport.get_remote_server_key()
            except (paramiko.SSHException, OSError, EOFError) as e:
                log_connection_error(logger, str(details), str(e))
                raise SshError(f"Handshake with {details} failed: {e}") from e

            return get_key_fingerprint(key)

        finally:
            if transport is not None:
                transport.close()
            elif sock is not None:
                sock.close()
            _close_all(jumps)

    def _open_jumps(self, route: List[Host]) -> List[paramiko.SSHClient]:
        """Connect every jump host of a route, each one through the previous."""
        clients = []
        try:
            for hop in route:
                try:
                    clients.append(self._connect_through(
                        clients, hop.name, hop.details, hop.username,
                        self.database.get_host_fingerprints(hop)
                    ))
                except SshError as e:
                    raise JumpHostError(hop.name, e) from e
        except BaseException:
            _close_all(clients)
            raise
        return clients

    def _forward(self, client: paramiko.SSHClient, details: ConnectionDetails) -> paramiko.Channel:
        """Open a direct-tcpip channel from a jump host to the next hop."""
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise SshError(f"Jump connection closed before forwarding to {details}")
        try:
            return transport.open_channel(
                "direct-tcpip",
                (details.hostname, details.port),
                ("127.0.0.1", 0),
                timeout=Config.CONNECTION_TIMEOUT,
            )
        except (paramiko.SSHException, OSError) as e:
            raise SshError(f"Couldn't forward to {details}: {e}") from e

    def _connect_through(self, jumps: List[paramiko.SSHClient], name: str,
                         details: ConnectionDetails, username: str,
                         fingerprints: List[str]) -> paramiko.SSHClient:
        sock = self._forward(jumps[-1], details) if jumps else None
        return self._connect(name, details, username, fingerprints, sock)

    def _connect(self, name: str, details: ConnectionDetails, username: str,
                 fingerprints: List[str], sock=None) -> paramiko.SSHClient:
        """Handshake, verify the host key and authenticate with the signing key."""
        log_connection_attempt(logger, name, str(details), "jump channel" if sock else None)

        client = paramiko.SSHClient()
        policy = PinnedHostKeyPolicy(name, fingerprints)
        client.set_missing_host_key_policy(policy)

        try:
            client.connect(
                hostname=details.hostname,
                port=details.port,
                username=username,
                pkey=self.credential.pkey,
                sock=sock,
                timeout=Config.CONNECTION_TIMEOUT,
                banner_timeout=Config.CONNECTION_TIMEOUT,
                auth_timeout=Config.AUTH_TIMEOUT,
                allow_agent=False,
                look_for_keys=False,
            )
        except TrustError:
            client.close()
            raise
        except paramiko.AuthenticationException as e:
            client.close()
            log_connection_error(logger, name, f"authentication failed: {e}")
            raise SshError(f"Authentication as {username} on {name} failed: {e}") from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            client.close()
            log_connection_error(logger, name, str(e))
            raise SshError(f"Couldn't connect to {name} ({details}): {e}") from e

        log_connection_success(logger, name, policy.presented or "")
        return client
