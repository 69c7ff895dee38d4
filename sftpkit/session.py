"""SSH/SFTP session lifecycle for SftpKit.

A :class:`SftpSession` walks a strictly forward state machine:

    UNINITIALIZED -> LIBRARY_READY -> SESSION_CREATED -> TRANSPORT_CONNECTED
    -> HANDSHAKEN -> AUTHENTICATED -> SFTP_READY

and is torn down by :meth:`SftpSession.close` on every exit path.  A session
is owned by exactly one transfer and is never reopened; build a new one to
retry.
"""

from __future__ import annotations

import itertools
import logging
import socket
import stat as _stat
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional, Sequence

import paramiko
from paramiko import SFTPAttributes

from sftpkit.connector import DEFAULT_CONNECT_TIMEOUT, connect_first
from sftpkit.errors import (
    AuthenticationError,
    FailureReason,
    HandshakeError,
    HostKeyMismatchError,
    InitError,
    RemoteOperationError,
    SessionInitError,
    SessionStateError,
    SftpInitError,
    UnknownHostError,
)
from sftpkit.resolver import SSH_PORT, SocketAddress, resolve

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

Resolver = Callable[[str, int], Sequence[SocketAddress]]
Connector = Callable[[Sequence[SocketAddress], int, float], socket.socket]

_SFTP_ERRORS = (OSError, EOFError, paramiko.SSHException)


@dataclass(frozen=True)
class SessionCredentials:
    """Host and password credentials for one session attempt."""

    hostname: str
    username: str
    password: str = field(repr=False)
    port: int = SSH_PORT

    @property
    def profile_key(self) -> str:
        """Keyring account key for these credentials (user@host)."""
        return f"{self.username}@{self.hostname}"


class SessionState(Enum):
    """Stages of the session lifecycle, in order."""

    UNINITIALIZED = auto()
    LIBRARY_READY = auto()
    SESSION_CREATED = auto()
    TRANSPORT_CONNECTED = auto()
    HANDSHAKEN = auto()
    AUTHENTICATED = auto()
    SFTP_READY = auto()
    CLOSED = auto()


# ---------------------------------------------------------------------------
# Process-wide library state
# ---------------------------------------------------------------------------

_library_lock = threading.Lock()
_library_ready = False


def ssh_library_init() -> None:
    """Initialise the SSH library once per process.

    Builds an unstarted transport over a local socket pair and asks its
    public security options for the negotiable ciphers.  A successful result
    is cached; a failure is raised again on the next call.

    Raises:
        InitError: If the transport cannot be built or offers no cipher.
    """
    global _library_ready
    with _library_lock:
        if _library_ready:
            return
        left, right = socket.socketpair()
        try:
            throwaway = paramiko.Transport(left)
            try:
                ciphers = tuple(throwaway.get_security_options().ciphers)
            finally:
                throwaway.close()
        except (OSError, paramiko.SSHException) as exc:
            raise InitError(f"paramiko transport unavailable: {exc}") from exc
        finally:
            left.close()
            right.close()
        if not ciphers:
            raise InitError("paramiko reports no usable ciphers")
        _library_ready = True
        logger.debug("paramiko %s initialised (%d ciphers)", paramiko.__version__, len(ciphers))


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------


class SessionRegistry:
    """Maps integer tokens to live sessions.

    Library callbacks and log channels refer to a session by token rather
    than by object reference.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[int, SftpSession] = {}
        self._counter = itertools.count(1)

    def register(self, session: "SftpSession") -> int:
        with self._lock:
            token = next(self._counter)
            self._sessions[token] = session
            return token

    def unregister(self, token: int) -> None:
        with self._lock:
            self._sessions.pop(token, None)

    def lookup(self, token: int) -> Optional["SftpSession"]:
        with self._lock:
            return self._sessions.get(token)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


registry = SessionRegistry()


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


def key_fingerprint(key: paramiko.PKey) -> str:
    """Colon-separated MD5 fingerprint of *key*."""
    return ":".join(f"{b:02x}" for b in key.get_fingerprint())


def _known_hosts_name(hostname: str, port: int) -> str:
    return hostname if port == SSH_PORT else f"[{hostname}]:{port}"


class HostKeyPolicy:
    """Decides whether a server's host key is acceptable."""

    def verify(self, hostname: str, port: int, key: paramiko.PKey) -> None:
        """Return normally to accept *key*; raise :exc:`HostKeyError` to refuse."""
        raise NotImplementedError


class AcceptAnyHostKey(HostKeyPolicy):
    """Trusts whatever key the server presents.  Logs every acceptance."""

    def verify(self, hostname: str, port: int, key: paramiko.PKey) -> None:
        logger.warning(
            "Accepting unverified %s host key for %s (fingerprint %s)",
            key.get_name(),
            _known_hosts_name(hostname, port),
            key_fingerprint(key),
        )


class KnownHostsPolicy(HostKeyPolicy):
    """Accepts only keys recorded in a known_hosts file."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else Path.home() / ".ssh" / "known_hosts"

    def verify(self, hostname: str, port: int, key: paramiko.PKey) -> None:
        name = _known_hosts_name(hostname, port)
        host_keys = paramiko.HostKeys()
        if self.path.exists():
            host_keys.load(str(self.path))

        known = host_keys.lookup(name)
        fingerprint = key_fingerprint(key)
        if known is None or key.get_name() not in known:
            raise UnknownHostError(
                f"Host '{name}' is not in {self.path}.\n"
                f"Key type: {key.get_name()}\n"
                f"Fingerprint (MD5): {fingerprint}",
                hostname=name,
                key_type=key.get_name(),
                fingerprint=fingerprint,
                key=key,
            )
        if known[key.get_name()].asbytes() != key.asbytes():
            raise HostKeyMismatchError(
                f"Host key mismatch for {name}; check {self.path}"
            )
        logger.debug("Host key for %s matches %s", name, self.path)


def accept_host_key(
    hostname: str,
    key: paramiko.PKey,
    path: str | Path | None = None,
    port: int = SSH_PORT,
) -> None:
    """Append *key* for *hostname* to the known_hosts file and save.

    Creates the file and its directory if they do not exist.
    """
    known_hosts_path = Path(path) if path else Path.home() / ".ssh" / "known_hosts"
    known_hosts_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    host_keys.add(_known_hosts_name(hostname, port), key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to %s", hostname, known_hosts_path)


def host_key_policy_from_name(name: str, known_hosts_path: str | Path | None = None) -> HostKeyPolicy:
    """Build a policy from its settings name: ``"known_hosts"`` or ``"accept"``."""
    if name == "known_hosts":
        return KnownHostsPolicy(known_hosts_path)
    if name == "accept":
        return AcceptAnyHostKey()
    raise ValueError(f"Unknown host key policy: {name!r}")


# ---------------------------------------------------------------------------
# SftpSession
# ---------------------------------------------------------------------------


class SftpSession:
    """One authenticated SFTP channel over a private SSH transport.

    Usage::

        with SftpSession(credentials, host_key_policy=KnownHostsPolicy()) as s:
            size = s.stat("/data/report.csv").st_size
            fh = s.open_read("/data/report.csv")
            chunk = s.read_chunk(fh, 32768)

    Any failure in :meth:`open` tears down what was acquired and raises the
    stage's :class:`~sftpkit.errors.SftpKitError` subclass.
    """

    def __init__(
        self,
        credentials: SessionCredentials,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        host_key_policy: HostKeyPolicy | None = None,
        handshake_timeout: float | None = None,
        resolver: Resolver = resolve,
        connector: Connector = connect_first,
        session_registry: SessionRegistry | None = None,
    ) -> None:
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.host_key_policy = host_key_policy or KnownHostsPolicy()
        self.handshake_timeout = handshake_timeout
        self._resolver = resolver
        self._connector = connector
        self._registry = session_registry if session_registry is not None else registry

        self.token: int | None = None
        self._state = SessionState.UNINITIALIZED
        self._sock: socket.socket | None = None
        self._transport: paramiko.Transport | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._open_files: list[paramiko.SFTPFile] = []

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    def _advance(self, new_state: SessionState) -> None:
        logger.debug(
            "Session %s (%s): %s → %s",
            self.token,
            self.credentials.hostname,
            self._state.name,
            new_state.name,
        )
        self._state = new_state

    def _require_ready(self) -> paramiko.SFTPClient:
        if self._state is not SessionState.SFTP_READY or self._sftp is None:
            raise SessionStateError(
                f"Session to {self.credentials.hostname} is not ready (state: {self._state.name})"
            )
        return self._sftp

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def open(self) -> "SftpSession":
        """Run every setup stage up to SFTP_READY.

        Raises:
            SessionStateError: If the session was already opened or closed.
            SftpKitError: The failing stage's error; the session is closed.
        """
        if self._state is not SessionState.UNINITIALIZED:
            raise SessionStateError(f"Session cannot be reopened (state: {self._state.name})")

        logger.info(
            "Connecting to %s@%s:%d",
            self.credentials.username,
            self.credentials.hostname,
            self.credentials.port,
        )
        try:
            self._init_library()
            self._create_session()
            self._connect_transport()
            self._handshake()
            self._authenticate()
            self._start_sftp()
        except Exception:
            self.close()
            raise

        logger.info("SFTP ready on %s (session %s)", self.credentials.hostname, self.token)
        return self

    def _init_library(self) -> None:
        ssh_library_init()
        self._advance(SessionState.LIBRARY_READY)

    def _create_session(self) -> None:
        try:
            self.token = self._registry.register(self)
        except Exception as exc:
            raise SessionInitError(f"Could not allocate session: {exc}") from exc
        self._advance(SessionState.SESSION_CREATED)

    def _connect_transport(self) -> None:
        addresses = self._resolver(self.credentials.hostname, self.credentials.port)
        self._sock = self._connector(addresses, self.credentials.port, self.connect_timeout)
        self._advance(SessionState.TRANSPORT_CONNECTED)

    def _handshake(self) -> None:
        try:
            transport = paramiko.Transport(self._sock)
            self._transport = transport
            transport.set_log_channel(f"sftpkit.transport.{self.token}")
            transport.start_client(timeout=self.handshake_timeout)
        except _SFTP_ERRORS as exc:
            raise HandshakeError(f"SSH handshake with {self.credentials.hostname} failed: {exc}") from exc

        key = transport.get_remote_server_key()
        self.host_key_policy.verify(self.credentials.hostname, self.credentials.port, key)
        self._advance(SessionState.HANDSHAKEN)

    def _authenticate(self) -> None:
        try:
            self._transport.auth_password(self.credentials.username, self.credentials.password)
        except paramiko.AuthenticationException as exc:
            raise AuthenticationError(
                f"Password authentication failed for {self.credentials.profile_key}"
            ) from exc
        except _SFTP_ERRORS as exc:
            raise AuthenticationError(f"Authentication error: {exc}") from exc

        if not self._transport.is_authenticated():
            raise AuthenticationError(
                f"Password authentication failed for {self.credentials.profile_key}"
            )
        self._advance(SessionState.AUTHENTICATED)

    def _start_sftp(self) -> None:
        try:
            sftp = paramiko.SFTPClient.from_transport(self._transport)
        except _SFTP_ERRORS as exc:
            raise SftpInitError(f"Could not start SFTP subsystem: {exc}") from exc
        if sftp is None:
            raise SftpInitError("Could not start SFTP subsystem")

        self._sftp = sftp
        # Blocking mode: reads and writes return only when complete.
        sftp.get_channel().settimeout(None)
        self._advance(SessionState.SFTP_READY)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release files, SFTP, transport and socket in reverse order.

        Safe to call repeatedly and after a partial :meth:`open`.
        """
        if self._state is SessionState.CLOSED:
            return

        for handle in reversed(self._open_files):
            try:
                handle.close()
            except Exception as exc:
                logger.warning("Error closing remote file during teardown: %s", exc)
        self._open_files.clear()

        if self._sftp is not None:
            try:
                self._sftp.close()
            except Exception as exc:
                logger.warning("Error closing SFTP client: %s", exc)
            self._sftp = None

        if self._transport is not None:
            try:
                self._transport.close()
            except Exception as exc:
                logger.warning("Error closing SSH transport: %s", exc)
            self._transport = None

        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as exc:
                logger.warning("Error closing socket: %s", exc)
            self._sock = None

        if self.token is not None:
            self._registry.unregister(self.token)

        was_open = self._state is not SessionState.UNINITIALIZED
        self._advance(SessionState.CLOSED)
        if was_open:
            logger.info("Session %s to %s closed", self.token, self.credentials.hostname)

    def __enter__(self) -> "SftpSession":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # SFTP operations
    # ------------------------------------------------------------------

    def _track(self, handle: paramiko.SFTPFile) -> paramiko.SFTPFile:
        self._open_files.append(handle)
        return handle

    def open_read(self, remote_path: str) -> paramiko.SFTPFile:
        """Open *remote_path* for reading."""
        sftp = self._require_ready()
        try:
            return self._track(sftp.open(remote_path, "rb"))
        except _SFTP_ERRORS as exc:
            raise RemoteOperationError(FailureReason.OPEN, f"open {remote_path!r}: {exc}") from exc

    def open_write(self, remote_path: str) -> paramiko.SFTPFile:
        """Open *remote_path* for writing, creating or truncating it."""
        sftp = self._require_ready()
        try:
            return self._track(sftp.open(remote_path, "wb"))
        except _SFTP_ERRORS as exc:
            raise RemoteOperationError(FailureReason.OPEN, f"open {remote_path!r}: {exc}") from exc

    def stat(self, remote_path: str) -> SFTPAttributes:
        sftp = self._require_ready()
        try:
            return sftp.stat(remote_path)
        except _SFTP_ERRORS as exc:
            raise RemoteOperationError(FailureReason.STAT, f"stat {remote_path!r}: {exc}") from exc

    def read_chunk(self, handle: paramiko.SFTPFile, size: int) -> bytes:
        """Read up to *size* bytes; an empty result means end of file."""
        self._require_ready()
        try:
            return handle.read(size)
        except _SFTP_ERRORS as exc:
            raise RemoteOperationError(FailureReason.READ, f"read: {exc}") from exc

    def write_chunk(self, handle: paramiko.SFTPFile, data: bytes) -> int:
        """Write *data* and return the number of bytes the server accepted."""
        self._require_ready()
        try:
            handle.write(data)
        except _SFTP_ERRORS as exc:
            raise RemoteOperationError(FailureReason.WRITE, f"write: {exc}") from exc
        return len(data)

    def close_file(self, handle: paramiko.SFTPFile, reason: str = FailureReason.READ) -> None:
        """Close *handle*, flushing pending writes.

        *reason* is reported if the close fails.
        """
        if handle in self._open_files:
            self._open_files.remove(handle)
        try:
            handle.close()
        except _SFTP_ERRORS as exc:
            raise RemoteOperationError(reason, f"close: {exc}") from exc

    def make_directory(self, remote_path: str) -> None:
        """Create *remote_path*; an existing directory counts as success.

        Raises:
            RemoteOperationError: If creation fails and no directory exists there.
        """
        sftp = self._require_ready()
        try:
            sftp.mkdir(remote_path)
            logger.debug("Created remote directory %s", remote_path)
            return
        except _SFTP_ERRORS as exc:
            mkdir_error = exc

        try:
            attr = sftp.stat(remote_path)
        except _SFTP_ERRORS:
            raise RemoteOperationError(
                FailureReason.MKDIR, f"mkdir {remote_path!r}: {mkdir_error}"
            ) from mkdir_error

        if isinstance(attr.st_mode, int) and _stat.S_ISDIR(attr.st_mode):
            logger.debug("Remote directory %s already exists", remote_path)
            return
        raise RemoteOperationError(
            FailureReason.MKDIR, f"mkdir {remote_path!r}: exists and is not a directory"
        ) from mkdir_error
