"""File transfer engine for SftpKit.

Handles whole-file download and upload over a private SFTP session with:
- Cancellable transfers using a per-transfer threading.Event
- Staged downloads promoted with os.replace only after digest verification
- Intermediate remote directory creation for uploads
- Per-chunk progress callbacks
- A background worker queue for running transfers off the caller's thread
"""

from __future__ import annotations

import errno
import logging
import os
import queue
import shutil
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

from sftpkit.checksum import DEFAULT_CHUNK_SIZE as DIGEST_CHUNK_SIZE
from sftpkit.checksum import DigestAlgorithm, checksum_file
from sftpkit.connector import DEFAULT_CONNECT_TIMEOUT
from sftpkit.errors import (
    ChecksumMismatchError,
    FailureReason,
    InvalidPathError,
    LocalFileError,
    PromotionError,
    RemoteOperationError,
    SftpKitError,
    TransferCanceledError,
)
from sftpkit.session import HostKeyPolicy, SessionCredentials, SftpSession
from sftpkit.utils.path_helpers import (
    directory_prefixes,
    filename_from_remote_path,
    join_directory,
    normalize_remote_directory,
    remote_join,
    validate_remote_path,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024           # 32 KB per read/write call
MAX_ZERO_PROGRESS_WRITES = 3     # consecutive writes accepting 0 bytes before giving up

SuccessCallback = Callable[[], None]
FailureCallback = Callable[[str], None]
ProgressCallback = Callable[[int, int], None]
SessionFactory = Callable[[SessionCredentials], SftpSession]

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransferDirection(Enum):
    """Direction of a file transfer."""

    UPLOAD = auto()
    DOWNLOAD = auto()


class TransferStatus(Enum):
    """Lifecycle state of a transfer."""

    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETE = auto()
    FAILED = auto()
    CANCELLED = auto()


# ---------------------------------------------------------------------------
# TransferState
# ---------------------------------------------------------------------------


@dataclass
class TransferState:
    """Progress and cancellation state of one transfer.

    ``cancel()`` may be called from any thread; the transfer loop polls the
    flag once per chunk.
    """

    direction: TransferDirection | None = None
    remote_path: str = ""
    total_bytes: int = 0
    bytes_transferred: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TransferStatus = TransferStatus.PENDING
    error: str | None = None
    start_time: float | None = None
    end_time: float | None = None
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        """Request cancellation at the next chunk boundary."""
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def progress_fraction(self) -> float:
        """Fraction of the file transferred (0.0 – 1.0)."""
        if self.total_bytes <= 0:
            return 1.0
        return min(1.0, self.bytes_transferred / self.total_bytes)

    @property
    def speed_mbps(self) -> float:
        """Current transfer speed in MB/s, or 0 if not yet started."""
        if self.start_time is None or self.bytes_transferred == 0:
            return 0.0
        elapsed = (self.end_time or time.monotonic()) - self.start_time
        if elapsed <= 0:
            return 0.0
        return (self.bytes_transferred / elapsed) / (1024 * 1024)

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds remaining, or None if speed is unknown."""
        speed = self.speed_mbps
        if speed <= 0 or self.total_bytes <= 0:
            return None
        remaining_bytes = self.total_bytes - self.bytes_transferred
        return remaining_bytes / (speed * 1024 * 1024)


# ---------------------------------------------------------------------------
# SftpTransfer
# ---------------------------------------------------------------------------


class SftpTransfer:
    """Runs single downloads and uploads, each over its own session.

    Every call blocks until the transfer finishes and fires exactly one of
    ``on_success`` / ``on_failure``, after the session has been torn down.
    Run calls on a worker thread (see :class:`TransferQueue`) to keep the
    caller responsive.
    """

    def __init__(
        self,
        credentials: SessionCredentials,
        staging_dir: str | os.PathLike[str],
        final_dir: str | os.PathLike[str],
        chunk_size: int = CHUNK_SIZE,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        host_key_policy: HostKeyPolicy | None = None,
        algorithm: DigestAlgorithm = DigestAlgorithm.MD5,
        digest_chunk_size: int = DIGEST_CHUNK_SIZE,
        max_zero_progress_writes: int = MAX_ZERO_PROGRESS_WRITES,
        session_factory: SessionFactory | None = None,
    ) -> None:
        """Initialise transfer parameters (does NOT connect yet).

        Args:
            credentials: Host, username and password for every session.
            staging_dir: Where downloads are written while in progress.
            final_dir: Where verified downloads are moved.
            chunk_size: Bytes per SFTP read/write call.
            connect_timeout: Per-address TCP connect timeout in seconds.
            host_key_policy: Policy applied after the SSH handshake.
            algorithm: Digest used to verify downloads.
            digest_chunk_size: Read size when digesting the staging file.
            max_zero_progress_writes: Consecutive zero-byte writes tolerated
                before an upload fails.
            session_factory: Builds a session from credentials; defaults to
                :class:`SftpSession` with the parameters above.
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.credentials = credentials
        self.staging_dir = Path(staging_dir)
        self.final_dir = Path(final_dir)
        self.chunk_size = chunk_size
        self.connect_timeout = connect_timeout
        self.host_key_policy = host_key_policy
        self.algorithm = algorithm
        self.digest_chunk_size = digest_chunk_size
        self.max_zero_progress_writes = max(1, max_zero_progress_writes)
        self._session_factory = session_factory

    def _new_session(self) -> SftpSession:
        if self._session_factory is not None:
            return self._session_factory(self.credentials)
        return SftpSession(
            self.credentials,
            connect_timeout=self.connect_timeout,
            host_key_policy=self.host_key_policy,
        )

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def download(
        self,
        remote_path: str,
        expected_digest: str,
        on_failure: FailureCallback,
        on_success: SuccessCallback,
        on_progress: ProgressCallback | None = None,
        state: TransferState | None = None,
    ) -> TransferState:
        """Download *remote_path* and verify it against *expected_digest*.

        The file lands in ``final_dir`` under its remote filename only if the
        digest matches; otherwise the final location is left untouched.

        Returns:
            The transfer's :class:`TransferState` (final status set).
        """
        state = state or TransferState()
        state.direction = TransferDirection.DOWNLOAD
        state.remote_path = remote_path
        self._begin(state)
        try:
            self._download(remote_path, expected_digest, state, on_progress)
        except Exception as exc:
            self._fail(state, exc, on_failure)
        else:
            self._succeed(state, on_success)
        return state

    def _download(
        self,
        remote_path: str,
        expected_digest: str,
        state: TransferState,
        on_progress: ProgressCallback | None,
    ) -> None:
        if not validate_remote_path(remote_path):
            raise InvalidPathError(f"Invalid remote path: {remote_path!r}")
        try:
            filename = filename_from_remote_path(remote_path)
        except ValueError as exc:
            raise InvalidPathError(str(exc)) from exc

        staging_path = self.staging_dir / filename
        final_path = self.final_dir / filename

        session = self._new_session()
        try:
            session.open()
            state.total_bytes = session.stat(remote_path).st_size or 0
            handle = session.open_read(remote_path)
            self._receive(session, handle, staging_path, state, on_progress)
            try:
                session.close_file(handle, reason=FailureReason.READ)
            except Exception:
                _remove_quietly(staging_path)
                raise
        finally:
            session.close()

        self._verify(staging_path, expected_digest)
        self._promote(staging_path, final_path)
        logger.info("Download complete: %s → %s", remote_path, final_path)

    def _receive(
        self,
        session: SftpSession,
        handle,
        staging_path: Path,
        state: TransferState,
        on_progress: ProgressCallback | None,
    ) -> None:
        """Stream *handle* into *staging_path*, removing it on any failure."""
        try:
            staging_path.parent.mkdir(parents=True, exist_ok=True)
            local_fh = open(staging_path, "wb")
        except OSError as exc:
            raise LocalFileError(f"Cannot create staging file {staging_path}: {exc}") from exc

        try:
            with local_fh:
                while True:
                    if state.cancel_requested:
                        raise TransferCanceledError(f"Download of {state.remote_path} canceled")
                    chunk = session.read_chunk(handle, self.chunk_size)
                    if not chunk:
                        break
                    try:
                        local_fh.write(chunk)
                    except OSError as exc:
                        raise LocalFileError(f"Cannot write {staging_path}: {exc}") from exc
                    state.bytes_transferred += len(chunk)
                    if state.bytes_transferred > state.total_bytes:
                        state.total_bytes = state.bytes_transferred
                    self._report_progress(state, on_progress)
        except Exception:
            _remove_quietly(staging_path)
            raise

    def _verify(self, staging_path: Path, expected_digest: str) -> None:
        try:
            actual = checksum_file(staging_path, self.algorithm, self.digest_chunk_size)
        except OSError as exc:
            raise LocalFileError(f"Cannot read {staging_path}: {exc}") from exc

        if actual != expected_digest:
            # The staging file is kept for inspection.
            logger.error(
                "%s mismatch for %s: expected %s, got %s",
                self.algorithm.name,
                staging_path.name,
                expected_digest,
                actual,
            )
            raise ChecksumMismatchError(expected_digest, actual)
        logger.debug("%s verified for %s: %s", self.algorithm.name, staging_path.name, actual)

    def _promote(self, staging_path: Path, final_path: Path) -> None:
        """Move the verified staging file over *final_path* atomically."""
        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(staging_path, final_path)
            return
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise PromotionError(f"Cannot move {staging_path} to {final_path}: {exc}") from exc

        # Different filesystems: copy beside the target, then rename into place.
        try:
            fd, tmp_name = tempfile.mkstemp(dir=final_path.parent, prefix=f".{final_path.name}.")
        except OSError as exc:
            raise PromotionError(f"Cannot move {staging_path} to {final_path}: {exc}") from exc
        os.close(fd)
        tmp_final = Path(tmp_name)
        try:
            shutil.copy2(staging_path, tmp_final)
            os.replace(tmp_final, final_path)
        except OSError as exc:
            _remove_quietly(tmp_final)
            raise PromotionError(f"Cannot move {staging_path} to {final_path}: {exc}") from exc
        _remove_quietly(staging_path)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload(
        self,
        data: bytes | bytearray | memoryview,
        remote_directory: str,
        remote_filename: str,
        on_success: SuccessCallback,
        on_failure: FailureCallback,
        on_progress: ProgressCallback | None = None,
        state: TransferState | None = None,
    ) -> TransferState:
        """Upload *data* as ``remote_directory/remote_filename``.

        Missing directories along *remote_directory* are created first.

        Returns:
            The transfer's :class:`TransferState` (final status set).
        """
        state = state or TransferState()
        state.direction = TransferDirection.UPLOAD
        self._begin(state)
        try:
            self._upload(data, remote_directory, remote_filename, state, on_progress)
        except Exception as exc:
            self._fail(state, exc, on_failure)
        else:
            self._succeed(state, on_success)
        return state

    def upload_file(
        self,
        local_path: str | os.PathLike[str],
        remote_directory: str,
        on_success: SuccessCallback,
        on_failure: FailureCallback,
        remote_filename: str | None = None,
        on_progress: ProgressCallback | None = None,
        state: TransferState | None = None,
    ) -> TransferState:
        """Upload the contents of a local file; the filename defaults to its own."""
        local_path = Path(local_path)
        try:
            data = local_path.read_bytes()
        except OSError as exc:
            state = state or TransferState()
            state.direction = TransferDirection.UPLOAD
            self._begin(state)
            self._fail(state, LocalFileError(f"Cannot read {local_path}: {exc}"), on_failure)
            return state
        return self.upload(
            data,
            remote_directory,
            remote_filename or local_path.name,
            on_success,
            on_failure,
            on_progress=on_progress,
            state=state,
        )

    def _upload(
        self,
        data: bytes | bytearray | memoryview,
        remote_directory: str,
        remote_filename: str,
        state: TransferState,
        on_progress: ProgressCallback | None,
    ) -> None:
        if not validate_remote_path(remote_directory):
            raise InvalidPathError(f"Invalid remote directory: {remote_directory!r}")
        if not remote_filename or "/" in remote_filename or remote_filename in (".", ".."):
            raise InvalidPathError(f"Invalid remote filename: {remote_filename!r}")

        components, is_absolute = normalize_remote_directory(remote_directory)
        target = remote_join(join_directory(components, is_absolute), remote_filename)
        state.remote_path = target

        payload = memoryview(data).cast("B")
        state.total_bytes = len(payload)

        session = self._new_session()
        try:
            session.open()
            for prefix in directory_prefixes(components, is_absolute):
                session.make_directory(prefix)
            handle = session.open_write(target)
            self._send(session, handle, payload, state, on_progress)
            session.close_file(handle, reason=FailureReason.WRITE)
        finally:
            session.close()

        logger.info("Upload complete: %d bytes → %s", state.total_bytes, target)

    def _send(
        self,
        session: SftpSession,
        handle,
        payload: memoryview,
        state: TransferState,
        on_progress: ProgressCallback | None,
    ) -> None:
        """Write *payload* in chunks until the server has accepted all of it."""
        total = len(payload)
        bytes_written = 0
        stalled_writes = 0
        while bytes_written < total:
            if state.cancel_requested:
                raise TransferCanceledError(f"Upload to {state.remote_path} canceled")
            chunk = bytes(payload[bytes_written:bytes_written + self.chunk_size])
            accepted = session.write_chunk(handle, chunk)
            if accepted <= 0:
                stalled_writes += 1
                logger.warning(
                    "Write to %s accepted 0 bytes (%d/%d)",
                    state.remote_path,
                    stalled_writes,
                    self.max_zero_progress_writes,
                )
                if stalled_writes >= self.max_zero_progress_writes:
                    raise RemoteOperationError(
                        FailureReason.WRITE,
                        f"write to {state.remote_path!r} made no progress",
                    )
                continue
            stalled_writes = 0
            bytes_written += min(accepted, len(chunk))
            state.bytes_transferred = bytes_written
            self._report_progress(state, on_progress)

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    def _begin(self, state: TransferState) -> None:
        state.status = TransferStatus.IN_PROGRESS
        state.bytes_transferred = 0
        state.error = None
        state.start_time = time.monotonic()
        state.end_time = None

    def _report_progress(self, state: TransferState, on_progress: ProgressCallback | None) -> None:
        if on_progress:
            try:
                on_progress(state.bytes_transferred, state.total_bytes)
            except Exception:
                logger.exception("Exception in on_progress callback")

    def _fail(self, state: TransferState, exc: Exception, on_failure: FailureCallback) -> None:
        if isinstance(exc, SftpKitError):
            reason = exc.reason
        else:
            reason = FailureReason.UNEXPECTED
            logger.exception("Unexpected error during %s", state.direction.name.lower())

        state.end_time = time.monotonic()
        state.error = reason
        if reason == FailureReason.CANCELED:
            state.status = TransferStatus.CANCELLED
            logger.info("Transfer %s canceled after %d bytes", state.remote_path, state.bytes_transferred)
        else:
            state.status = TransferStatus.FAILED
            logger.error("Transfer failed for %r (%s): %s", state.remote_path, reason, exc)

        try:
            on_failure(reason)
        except Exception:
            logger.exception("Exception in on_failure callback")

    def _succeed(self, state: TransferState, on_success: SuccessCallback) -> None:
        state.end_time = time.monotonic()
        state.status = TransferStatus.COMPLETE
        try:
            on_success()
        except Exception:
            logger.exception("Exception in on_success callback")


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)


# ---------------------------------------------------------------------------
# TransferQueue
# ---------------------------------------------------------------------------


def _noop(*_args) -> None:
    pass


@dataclass
class _Job:
    state: TransferState
    run: Callable[[], None]
    on_failure: FailureCallback


class TransferQueue:
    """Sequential background worker for :class:`SftpTransfer` calls.

    A single daemon worker thread processes jobs one at a time.  Callbacks
    run on the worker thread; dispatch them to your own context as needed.
    """

    def __init__(
        self,
        transfer: SftpTransfer,
        on_item_complete: Callable[[TransferState], None] | None = None,
    ) -> None:
        """Initialise the queue and start the worker thread.

        Args:
            transfer: The engine that runs each job.
            on_item_complete: Called when a job finishes (any status).
        """
        self._transfer = transfer
        self.on_item_complete = on_item_complete

        self._queue: queue.Queue[Optional[_Job]] = queue.Queue()
        self._shutdown_event = threading.Event()
        self._current: _Job | None = None

        self._worker = threading.Thread(
            target=self._worker_loop,
            name="transfer-worker",
            daemon=True,
        )
        self._worker.start()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit_download(
        self,
        remote_path: str,
        expected_digest: str,
        on_failure: FailureCallback | None = None,
        on_success: SuccessCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> TransferState:
        """Queue a download; returns its state (status: PENDING)."""
        state = TransferState(direction=TransferDirection.DOWNLOAD, remote_path=remote_path)
        on_failure = on_failure or _noop
        on_success = on_success or _noop

        def run() -> None:
            self._transfer.download(
                remote_path, expected_digest, on_failure, on_success,
                on_progress=on_progress, state=state,
            )

        self._queue.put(_Job(state, run, on_failure))
        logger.info("Queued DOWNLOAD: %s", remote_path)
        return state

    def submit_upload(
        self,
        data: bytes,
        remote_directory: str,
        remote_filename: str,
        on_success: SuccessCallback | None = None,
        on_failure: FailureCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> TransferState:
        """Queue an upload; returns its state (status: PENDING)."""
        state = TransferState(
            direction=TransferDirection.UPLOAD,
            remote_path=remote_join(remote_directory, remote_filename),
            total_bytes=len(data),
        )
        on_failure = on_failure or _noop
        on_success = on_success or _noop

        def run() -> None:
            self._transfer.upload(
                data, remote_directory, remote_filename, on_success, on_failure,
                on_progress=on_progress, state=state,
            )

        self._queue.put(_Job(state, run, on_failure))
        logger.info("Queued UPLOAD: %d bytes → %s", len(data), state.remote_path)
        return state

    def cancel_current(self) -> None:
        """Cancel the currently in-progress transfer."""
        job = self._current
        if job is not None:
            job.state.cancel()

    def cancel_all(self) -> None:
        """Cancel the current transfer and drain all pending jobs.

        Each drained job reports ``on_failure("canceled")``.
        """
        self.cancel_current()
        saw_sentinel = False
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                break
            if job is None:
                saw_sentinel = True
            else:
                job.state.cancel()
                job.state.status = TransferStatus.CANCELLED
                job.state.error = FailureReason.CANCELED
                try:
                    job.on_failure(FailureReason.CANCELED)
                except Exception:
                    logger.exception("Exception in on_failure callback")
            self._queue.task_done()
        if saw_sentinel:
            self._queue.put(None)

    def shutdown(self, wait: bool = False) -> None:
        """Signal the worker to exit after the current job."""
        self._shutdown_event.set()
        self.cancel_current()
        self._queue.put(None)  # Unblock the worker
        if wait:
            self._worker.join()

    def join(self) -> None:
        """Block until every queued job has been processed."""
        self._queue.join()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        """Process jobs sequentially."""
        logger.debug("Transfer worker started")
        while not self._shutdown_event.is_set():
            try:
                job = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue

            if job is None:
                self._queue.task_done()
                break  # Shutdown sentinel

            self._current = job
            try:
                job.run()
            except Exception:
                logger.exception("Unhandled error in transfer job %s", job.state.id)
            finally:
                self._current = None
                if self.on_item_complete:
                    try:
                        self.on_item_complete(job.state)
                    except Exception:
                        logger.exception("Exception in on_item_complete callback")
                self._queue.task_done()

        logger.debug("Transfer worker exiting")
