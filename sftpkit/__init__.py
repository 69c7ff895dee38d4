"""SftpKit: password-authenticated SFTP whole-file download and upload."""

from __future__ import annotations

from sftpkit.checksum import Digest, DigestAlgorithm, checksum_bytes, checksum_file
from sftpkit.errors import FailureReason, SftpKitError
from sftpkit.session import (
    AcceptAnyHostKey,
    KnownHostsPolicy,
    SessionCredentials,
    SftpSession,
)
from sftpkit.transfer import SftpTransfer, TransferQueue, TransferState, TransferStatus

__version__ = "0.1.0"

__all__ = [
    "AcceptAnyHostKey",
    "Digest",
    "DigestAlgorithm",
    "FailureReason",
    "KnownHostsPolicy",
    "SessionCredentials",
    "SftpKitError",
    "SftpSession",
    "SftpTransfer",
    "TransferQueue",
    "TransferState",
    "TransferStatus",
    "checksum_bytes",
    "checksum_file",
]
