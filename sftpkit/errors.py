"""Exception hierarchy for SftpKit.

Every error carries a short machine-readable ``reason`` which the transfer
engine hands to ``on_failure`` unchanged.
"""

from __future__ import annotations

import paramiko


# ---------------------------------------------------------------------------
# Failure reasons
# ---------------------------------------------------------------------------


class FailureReason:
    """Reason strings reported through ``on_failure``."""

    SSH_INIT = "ssh_init"
    SESSION_INIT = "session_init"
    RESOLVE = "resolve"
    CONNECT = "connect"
    HANDSHAKE = "handshake"
    HOST_KEY = "host_key"
    AUTH = "auth"
    SFTP_INIT = "sftp_init"
    OPEN = "open"
    STAT = "stat"
    READ = "read"
    WRITE = "write"
    MKDIR = "mkdir"
    LOCAL_FILE = "local_file"
    INVALID_PATH = "invalid path"
    CANCELED = "canceled"
    CHECKSUM_MISMATCH = "md5sum did not match"
    CAN_NOT_MOVE = "can not move"
    UNEXPECTED = "unexpected error"


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class SftpKitError(Exception):
    """Base class for all SftpKit errors."""

    reason: str = "error"

    def __init__(self, message: str = "", reason: str | None = None) -> None:
        super().__init__(message or self.reason)
        if reason is not None:
            self.reason = reason


# ---------------------------------------------------------------------------
# Session setup
# ---------------------------------------------------------------------------


class InitError(SftpKitError):
    """The SSH library could not be initialised for this process."""

    reason = FailureReason.SSH_INIT


class SessionInitError(SftpKitError):
    """A protocol session could not be allocated."""

    reason = FailureReason.SESSION_INIT


class ResolutionError(SftpKitError):
    """DNS lookup failed or returned no usable address."""

    reason = FailureReason.RESOLVE


class ConnectError(SftpKitError):
    """No resolved address accepted a TCP connection."""

    reason = FailureReason.CONNECT

    def __init__(self, message: str, attempts: list[tuple[str, Exception]] | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts or []


class HandshakeError(SftpKitError):
    """SSH protocol negotiation failed."""

    reason = FailureReason.HANDSHAKE


class HostKeyError(SftpKitError):
    """The server's host key was refused by the active policy."""

    reason = FailureReason.HOST_KEY


class UnknownHostError(HostKeyError):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can prompt the user and
    optionally save it via :func:`sftpkit.session.accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


class HostKeyMismatchError(HostKeyError):
    """The host presented a key different from the one in known_hosts."""


class AuthenticationError(SftpKitError):
    """Password authentication was rejected."""

    reason = FailureReason.AUTH


class SftpInitError(SftpKitError):
    """The SFTP subsystem could not be started on the transport."""

    reason = FailureReason.SFTP_INIT


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class RemoteOperationError(SftpKitError):
    """An SFTP open/stat/read/write/mkdir call failed.

    ``reason`` names the operation, e.g. ``"read"``.
    """

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or reason, reason=reason)


class SessionStateError(SftpKitError):
    """An operation was attempted in the wrong session state."""

    reason = FailureReason.SESSION_INIT


class LocalFileError(SftpKitError):
    """A staging or source file could not be created, read or written."""

    reason = FailureReason.LOCAL_FILE


class InvalidPathError(SftpKitError):
    """A remote path or filename failed validation."""

    reason = FailureReason.INVALID_PATH


class TransferCanceledError(SftpKitError):
    """The transfer's cancel flag was observed between chunks."""

    reason = FailureReason.CANCELED


class ChecksumMismatchError(SftpKitError):
    """The received file's digest differs from the expected one."""

    reason = FailureReason.CHECKSUM_MISMATCH

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class PromotionError(SftpKitError):
    """The verified staging file could not be moved to its final location."""

    reason = FailureReason.CAN_NOT_MOVE


class DigestFinalizedError(SftpKitError):
    """``update()`` was called on a digest that has already been finalised."""

    reason = "digest_finalized"
