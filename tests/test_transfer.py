"""Tests for sftpkit/transfer.py — SftpTransfer and TransferQueue.

A ``FakeRemote`` stands in for the SFTP server; ``FakeSession`` exposes the
same operations as :class:`sftpkit.session.SftpSession` on top of it.
"""

from __future__ import annotations

import errno
import hashlib
import io
import os
import threading
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from sftpkit.errors import AuthenticationError, FailureReason, RemoteOperationError
from sftpkit.session import SessionCredentials
from sftpkit.transfer import (
    SftpTransfer,
    TransferDirection,
    TransferQueue,
    TransferState,
    TransferStatus,
)

CREDENTIALS = SessionCredentials("files.example.com", "alice", "s3cret")
REPORT = bytes(i % 251 for i in range(10_000))
REPORT_MD5 = hashlib.md5(REPORT).hexdigest()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRemote:
    """In-memory SFTP server state shared by every FakeSession."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.mkdir_calls: list[str] = []
        self.write_sizes: list[int] = []
        self.sessions: list[FakeSession] = []
        self.read_size: int | None = None
        self.open_error: Exception | None = None
        self.accept = lambda data: len(data)
        self.open_gate: threading.Event | None = None
        self.entered_open = threading.Event()


class FakeSession:
    def __init__(self, remote: FakeRemote) -> None:
        self.remote = remote
        self.closed = False
        self._writes: dict[int, tuple[str, io.BytesIO]] = {}
        remote.sessions.append(self)

    def open(self) -> "FakeSession":
        self.remote.entered_open.set()
        if self.remote.open_gate is not None:
            self.remote.open_gate.wait(timeout=5)
        if self.remote.open_error is not None:
            raise self.remote.open_error
        return self

    def close(self) -> None:
        self.closed = True

    def stat(self, path: str):
        if path not in self.remote.files:
            raise RemoteOperationError(FailureReason.STAT, f"stat {path}")
        return SimpleNamespace(st_size=len(self.remote.files[path]))

    def open_read(self, path: str):
        return io.BytesIO(self.remote.files[path])

    def open_write(self, path: str):
        buf = io.BytesIO()
        self._writes[id(buf)] = (path, buf)
        return buf

    def read_chunk(self, handle, size: int) -> bytes:
        return handle.read(min(size, self.remote.read_size or size))

    def write_chunk(self, handle, data: bytes) -> int:
        self.remote.write_sizes.append(len(data))
        accepted = self.remote.accept(data)
        handle.write(data[:accepted])
        return accepted

    def close_file(self, handle, reason: str = FailureReason.READ) -> None:
        entry = self._writes.pop(id(handle), None)
        if entry is not None:
            path, buf = entry
            self.remote.files[path] = buf.getvalue()

    def make_directory(self, path: str) -> None:
        self.remote.mkdir_calls.append(path)


class Recorder:
    """Collects callback invocations and checks sessions are closed first."""

    def __init__(self, remote: FakeRemote) -> None:
        self.remote = remote
        self.successes = 0
        self.failures: list[str] = []
        self.progress: list[tuple[int, int]] = []
        self.sessions_closed_at_callback: list[bool] = []

    def on_success(self) -> None:
        self.successes += 1
        self.sessions_closed_at_callback.append(all(s.closed for s in self.remote.sessions))

    def on_failure(self, reason: str) -> None:
        self.failures.append(reason)
        self.sessions_closed_at_callback.append(all(s.closed for s in self.remote.sessions))

    def on_progress(self, done: int, total: int) -> None:
        self.progress.append((done, total))

    @property
    def callback_count(self) -> int:
        return self.successes + len(self.failures)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def remote() -> FakeRemote:
    remote = FakeRemote()
    remote.files["/data/report.csv"] = REPORT
    return remote


@pytest.fixture()
def recorder(remote: FakeRemote) -> Recorder:
    return Recorder(remote)


@pytest.fixture()
def dirs(tmp_path: Path) -> tuple[Path, Path]:
    return tmp_path / "staging", tmp_path / "documents"


@pytest.fixture()
def transfer(remote: FakeRemote, dirs: tuple[Path, Path]) -> SftpTransfer:
    staging, final = dirs
    return SftpTransfer(
        CREDENTIALS,
        staging_dir=staging,
        final_dir=final,
        session_factory=lambda creds: FakeSession(remote),
    )


def _download(transfer: SftpTransfer, recorder: Recorder, digest: str = REPORT_MD5, **kwargs):
    return transfer.download(
        "/data/report.csv",
        digest,
        recorder.on_failure,
        recorder.on_success,
        on_progress=recorder.on_progress,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# TransferState
# ---------------------------------------------------------------------------


class TestTransferState:
    def test_initial_status_is_pending(self) -> None:
        assert TransferState().status == TransferStatus.PENDING

    def test_cancel_sets_flag(self) -> None:
        state = TransferState()
        assert not state.cancel_requested
        state.cancel()
        assert state.cancel_requested

    def test_progress_fraction(self) -> None:
        state = TransferState(total_bytes=1024, bytes_transferred=512)
        assert state.progress_fraction == pytest.approx(0.5)

    def test_progress_fraction_zero_size(self) -> None:
        assert TransferState(total_bytes=0).progress_fraction == 1.0

    def test_eta_unknown_before_start(self) -> None:
        assert TransferState(total_bytes=1024).eta_seconds is None

    def test_id_is_unique(self) -> None:
        assert len({TransferState().id for _ in range(5)}) == 5


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


class TestDownload:
    def test_successful_download(self, transfer, remote, recorder, dirs) -> None:
        remote.read_size = 4096
        staging, final = dirs

        state = _download(transfer, recorder)

        assert recorder.successes == 1
        assert recorder.failures == []
        assert recorder.progress == [(4096, 10_000), (8192, 10_000), (10_000, 10_000)]
        assert (final / "report.csv").read_bytes() == REPORT
        assert not (staging / "report.csv").exists()
        assert state.status is TransferStatus.COMPLETE
        assert state.direction is TransferDirection.DOWNLOAD

    def test_final_file_digest_matches_expected(self, transfer, recorder, dirs) -> None:
        _download(transfer, recorder)
        data = (dirs[1] / "report.csv").read_bytes()
        assert hashlib.md5(data).hexdigest() == REPORT_MD5

    def test_callbacks_fire_after_teardown(self, transfer, remote, recorder) -> None:
        _download(transfer, recorder)
        assert recorder.sessions_closed_at_callback == [True]
        assert len(remote.sessions) == 1

    def test_replaces_existing_final_file(self, transfer, recorder, dirs) -> None:
        final = dirs[1]
        final.mkdir(parents=True)
        (final / "report.csv").write_bytes(b"old contents")
        _download(transfer, recorder)
        assert (final / "report.csv").read_bytes() == REPORT

    def test_cancel_after_2000_bytes(self, transfer, remote, recorder, dirs) -> None:
        remote.read_size = 1000
        staging, final = dirs
        state = TransferState()

        def on_progress(done: int, total: int) -> None:
            recorder.on_progress(done, total)
            if done >= 2000:
                state.cancel()

        transfer.download(
            "/data/report.csv", REPORT_MD5, recorder.on_failure, recorder.on_success,
            on_progress=on_progress, state=state,
        )

        assert recorder.failures == ["canceled"]
        assert recorder.successes == 0
        assert recorder.progress == [(1000, 10_000), (2000, 10_000)]
        assert not (staging / "report.csv").exists()
        assert not (final / "report.csv").exists()
        assert state.status is TransferStatus.CANCELLED
        assert remote.sessions[0].closed

    def test_checksum_mismatch_leaves_final_untouched(self, transfer, recorder, dirs) -> None:
        staging, final = dirs
        final.mkdir(parents=True)
        (final / "report.csv").write_bytes(b"previous version")

        _download(transfer, recorder, digest="0" * 32)

        assert recorder.failures == ["md5sum did not match"]
        assert recorder.successes == 0
        assert recorder.callback_count == 1
        assert (final / "report.csv").read_bytes() == b"previous version"
        # Mismatched download stays in staging.
        assert (staging / "report.csv").read_bytes() == REPORT

    def test_digest_comparison_is_case_sensitive(self, transfer, recorder) -> None:
        _download(transfer, recorder, digest=REPORT_MD5.upper())
        assert recorder.failures == ["md5sum did not match"]

    def test_empty_remote_file(self, transfer, remote, recorder, dirs) -> None:
        remote.files["/data/empty.txt"] = b""
        transfer.download(
            "/data/empty.txt", "d41d8cd98f00b204e9800998ecf8427e",
            recorder.on_failure, recorder.on_success, on_progress=recorder.on_progress,
        )
        assert recorder.successes == 1
        assert recorder.progress == []
        assert (dirs[1] / "empty.txt").read_bytes() == b""

    def test_session_setup_failure(self, transfer, remote, recorder, dirs) -> None:
        remote.open_error = AuthenticationError("denied")
        _download(transfer, recorder)
        assert recorder.failures == ["auth"]
        assert recorder.callback_count == 1
        assert remote.sessions[0].closed
        assert not (dirs[0] / "report.csv").exists()

    def test_stat_failure(self, transfer, recorder) -> None:
        transfer.download("/data/missing.csv", REPORT_MD5, recorder.on_failure, recorder.on_success)
        assert recorder.failures == ["stat"]

    def test_read_failure_removes_staging(self, transfer, remote, recorder, dirs) -> None:
        with patch.object(FakeSession, "read_chunk", side_effect=RemoteOperationError("read")):
            _download(transfer, recorder)
        assert recorder.failures == ["read"]
        assert not (dirs[0] / "report.csv").exists()

    def test_invalid_path_opens_no_session(self, transfer, remote, recorder) -> None:
        transfer.download("/data/../etc/passwd", REPORT_MD5, recorder.on_failure, recorder.on_success)
        transfer.download("/data/", REPORT_MD5, recorder.on_failure, recorder.on_success)
        assert recorder.failures == ["invalid path", "invalid path"]
        assert remote.sessions == []

    def test_move_failure_reports_can_not_move(self, transfer, recorder, dirs) -> None:
        with patch("sftpkit.transfer.os.replace", side_effect=PermissionError("denied")):
            _download(transfer, recorder)
        assert recorder.failures == ["can not move"]
        assert not (dirs[1] / "report.csv").exists()

    def test_cross_device_move_falls_back_to_copy(self, transfer, recorder, dirs) -> None:
        real_replace = os.replace
        calls: list[tuple] = []

        def fake_replace(src, dst):
            calls.append((src, dst))
            if len(calls) == 1:
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return real_replace(src, dst)

        with patch("sftpkit.transfer.os.replace", side_effect=fake_replace):
            _download(transfer, recorder)

        assert recorder.successes == 1
        assert (dirs[1] / "report.csv").read_bytes() == REPORT
        assert not (dirs[0] / "report.csv").exists()
        assert [p.name for p in dirs[1].iterdir()] == ["report.csv"]

    def test_cross_device_move_leaves_unrelated_files_alone(self, transfer, recorder, dirs) -> None:
        dirs[1].mkdir(parents=True, exist_ok=True)
        neighbour = dirs[1] / "report.csv.tmp"
        neighbour.write_bytes(b"user data")
        real_replace = os.replace

        def fake_replace(src, dst):
            if Path(dst) == dirs[1] / "report.csv" and Path(src).parent == dirs[0]:
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return real_replace(src, dst)

        with patch("sftpkit.transfer.os.replace", side_effect=fake_replace):
            _download(transfer, recorder)

        assert recorder.successes == 1
        assert neighbour.read_bytes() == b"user data"
        assert sorted(p.name for p in dirs[1].iterdir()) == ["report.csv", "report.csv.tmp"]

    def test_remote_close_failure_removes_staging(self, transfer, remote, recorder, dirs) -> None:
        with patch.object(FakeSession, "close_file", side_effect=RemoteOperationError("read")):
            _download(transfer, recorder)
        assert recorder.failures == ["read"]
        assert not (dirs[0] / "report.csv").exists()
        assert not (dirs[1] / "report.csv").exists()

    def test_callback_exception_does_not_propagate(self, transfer, recorder) -> None:
        def bad_success() -> None:
            raise RuntimeError("ui gone")

        state = transfer.download("/data/report.csv", REPORT_MD5, recorder.on_failure, bad_success)
        assert state.status is TransferStatus.COMPLETE
        assert recorder.failures == []

    def test_sha256_verification(self, remote, recorder, dirs) -> None:
        from sftpkit.checksum import DigestAlgorithm

        staging, final = dirs
        transfer = SftpTransfer(
            CREDENTIALS, staging, final,
            algorithm=DigestAlgorithm.SHA256,
            session_factory=lambda creds: FakeSession(remote),
        )
        _download(transfer, recorder, digest=hashlib.sha256(REPORT).hexdigest())
        assert recorder.successes == 1


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


class TestUpload:
    def test_upload_70000_bytes_in_three_writes(self, transfer, remote, recorder) -> None:
        payload = bytes(i % 253 for i in range(70_000))

        state = transfer.upload(
            payload, "/remote/dir", "newfile.bin",
            recorder.on_success, recorder.on_failure, on_progress=recorder.on_progress,
        )

        assert remote.write_sizes == [32768, 32768, 4464]
        assert recorder.successes == 1
        assert recorder.failures == []
        assert remote.files["/remote/dir/newfile.bin"] == payload
        assert remote.mkdir_calls == ["/remote", "/remote/dir"]
        assert recorder.progress == [(32768, 70_000), (65536, 70_000), (70_000, 70_000)]
        assert state.status is TransferStatus.COMPLETE
        assert recorder.sessions_closed_at_callback == [True]

    def test_trailing_slash_is_normalised(self, transfer, remote, recorder) -> None:
        transfer.upload(b"abc", "/remote/dir/", "f.bin", recorder.on_success, recorder.on_failure)
        assert remote.mkdir_calls == ["/remote", "/remote/dir"]
        assert "/remote/dir/f.bin" in remote.files

    def test_relative_directory(self, transfer, remote, recorder) -> None:
        transfer.upload(b"abc", "uploads/2024", "f.bin", recorder.on_success, recorder.on_failure)
        assert remote.mkdir_calls == ["uploads", "uploads/2024"]
        assert "uploads/2024/f.bin" in remote.files

    def test_root_directory_needs_no_mkdir(self, transfer, remote, recorder) -> None:
        transfer.upload(b"abc", "/", "f.bin", recorder.on_success, recorder.on_failure)
        assert remote.mkdir_calls == []
        assert remote.files["/f.bin"] == b"abc"

    def test_empty_payload_creates_empty_file(self, transfer, remote, recorder) -> None:
        transfer.upload(b"", "/remote", "empty.bin", recorder.on_success, recorder.on_failure)
        assert recorder.successes == 1
        assert remote.write_sizes == []
        assert remote.files["/remote/empty.bin"] == b""

    def test_partial_writes_advance_by_accepted_bytes(self, transfer, remote, recorder) -> None:
        remote.accept = lambda data: min(len(data), 10_000)
        payload = b"z" * 25_000
        transfer.upload(
            payload, "/remote", "p.bin", recorder.on_success, recorder.on_failure,
            on_progress=recorder.on_progress,
        )
        assert recorder.successes == 1
        assert [done for done, _ in recorder.progress] == [10_000, 20_000, 25_000]

    def test_zero_progress_writes_fail(self, transfer, remote, recorder) -> None:
        remote.accept = lambda data: 0
        transfer.upload(b"x" * 100, "/remote", "stuck.bin", recorder.on_success, recorder.on_failure)
        assert recorder.failures == ["write"]
        assert len(remote.write_sizes) == transfer.max_zero_progress_writes

    def test_single_stall_is_retried(self, transfer, remote, recorder) -> None:
        results = iter([0, 100])
        remote.accept = lambda data: next(results)
        transfer.upload(b"x" * 100, "/remote", "slow.bin", recorder.on_success, recorder.on_failure)
        assert recorder.successes == 1
        assert remote.write_sizes == [100, 100]

    def test_upload_cancel(self, transfer, remote, recorder) -> None:
        state = TransferState()

        def on_progress(done: int, total: int) -> None:
            state.cancel()

        transfer.upload(
            b"y" * 70_000, "/remote", "big.bin", recorder.on_success, recorder.on_failure,
            on_progress=on_progress, state=state,
        )
        assert recorder.failures == ["canceled"]
        assert remote.write_sizes == [32768]
        assert state.status is TransferStatus.CANCELLED

    def test_mkdir_failure_is_reported(self, transfer, remote, recorder) -> None:
        with patch.object(FakeSession, "make_directory", side_effect=RemoteOperationError("mkdir")):
            transfer.upload(b"abc", "/remote/dir", "f.bin", recorder.on_success, recorder.on_failure)
        assert recorder.failures == ["mkdir"]

    def test_invalid_filename(self, transfer, remote, recorder) -> None:
        transfer.upload(b"abc", "/remote", "a/b", recorder.on_success, recorder.on_failure)
        assert recorder.failures == ["invalid path"]
        assert remote.sessions == []

    def test_upload_file(self, transfer, remote, recorder, tmp_path: Path) -> None:
        src = tmp_path / "notes.txt"
        src.write_bytes(b"hello")
        transfer.upload_file(src, "/remote", recorder.on_success, recorder.on_failure)
        assert remote.files["/remote/notes.txt"] == b"hello"

    def test_upload_missing_local_file(self, transfer, recorder, tmp_path: Path) -> None:
        state = transfer.upload_file(tmp_path / "nope.txt", "/remote", recorder.on_success, recorder.on_failure)
        assert recorder.failures == ["local_file"]
        assert state.status is TransferStatus.FAILED


# ---------------------------------------------------------------------------
# TransferQueue
# ---------------------------------------------------------------------------


class TestTransferQueue:
    def test_download_runs_in_background(self, transfer, recorder, dirs) -> None:
        completed: list[TransferState] = []
        q = TransferQueue(transfer, on_item_complete=completed.append)
        try:
            state = q.submit_download(
                "/data/report.csv", REPORT_MD5,
                on_failure=recorder.on_failure, on_success=recorder.on_success,
            )
            q.join()
        finally:
            q.shutdown(wait=True)

        assert recorder.successes == 1
        assert completed == [state]
        assert state.status is TransferStatus.COMPLETE
        assert (dirs[1] / "report.csv").exists()

    def test_upload_runs_in_background(self, transfer, remote) -> None:
        q = TransferQueue(transfer)
        try:
            state = q.submit_upload(b"abc", "/remote", "q.bin")
            q.join()
        finally:
            q.shutdown(wait=True)
        assert remote.files["/remote/q.bin"] == b"abc"
        assert state.status is TransferStatus.COMPLETE

    def test_cancel_all_fails_every_job_once(self, transfer, remote) -> None:
        remote.open_gate = threading.Event()
        failures: list[str] = []
        successes = MagicMock()
        q = TransferQueue(transfer)
        try:
            states = [
                q.submit_download(
                    "/data/report.csv", REPORT_MD5,
                    on_failure=failures.append, on_success=successes,
                )
                for _ in range(4)
            ]
            assert remote.entered_open.wait(timeout=5)
            q.cancel_all()
            remote.open_gate.set()
            q.join()
        finally:
            q.shutdown(wait=True)

        assert failures == ["canceled"] * 4
        successes.assert_not_called()
        assert all(s.status is TransferStatus.CANCELLED for s in states)
