"""Tests for the chunked transfer engine."""

from __future__ import annotations

import io
import threading
from typing import Any, Dict, List, Optional, Set

import pytest

from driveupload import constants as c
from driveupload import transfer as transfer_module
from driveupload.context import CancelToken
from driveupload.errors import (
    APIError,
    OperationCancelled,
    PartAlreadyExistsError,
    ProtocolError,
    SizeLimitExceededError,
    SourceNotReopenableError,
    TransientError,
)
from driveupload.models import UploadInitInfo
from driveupload.rate_limiter import Pacer
from driveupload.resilience import RetryPolicy
from driveupload.transfer import (
    ChunkedTransferEngine,
    TransferTarget,
    calculate_chunk_size,
    forwardable_headers,
)

TARGET = TransferTarget(bucket="fhnfile", key="obj/key", callback="Y2I=", callback_var="dg==")


class FakeStore:
    """In-memory object store recording every call."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.puts: List[Dict[str, Any]] = []
        self.parts: Dict[int, bytes] = {}
        self.completed: Optional[List[Dict[str, Any]]] = None
        self.completion_callback = ""
        self.aborted: List[str] = []
        self.part_errors: Dict[int, List[BaseException]] = {}
        self.preexisting: Set[int] = set()
        self.listed: Dict[int, str] = {}
        self.put_errors: List[BaseException] = []
        self.put_bodies: List[Any] = []
        self.on_part = None

    def put_object(self, bucket, key, body, *, content_length=None, headers=None, callback="", callback_var=""):
        self.put_bodies.append(body)
        data = body.read()
        if self.put_errors:
            raise self.put_errors.pop(0)
        self.puts.append(
            {
                "bucket": bucket,
                "key": key,
                "body": data,
                "content_length": content_length,
                "headers": headers,
                "callback": callback,
                "callback_var": callback_var,
            }
        )
        return b'{"state": true}'

    def create_multipart_upload(self, bucket, key, *, headers=None):
        return "upload-1"

    def upload_part(self, bucket, key, upload_id, part_number, body):
        if self.on_part is not None:
            self.on_part(part_number)
        with self.lock:
            errors = self.part_errors.get(part_number)
            if errors:
                raise errors.pop(0)
            if part_number in self.preexisting:
                raise PartAlreadyExistsError(part_number)
            self.parts[part_number] = body
        return f"etag-{part_number}"

    def list_parts(self, bucket, key, upload_id):
        with self.lock:
            listed = {n: f"etag-{n}" for n in self.parts}
            listed.update({n: f"etag-{n}" for n in self.preexisting})
            listed.update(self.listed)
            return listed

    def complete_multipart_upload(self, bucket, key, upload_id, parts, *, callback="", callback_var=""):
        self.completed = parts
        self.completion_callback = callback
        return b'{"state": true, "data": {"pick_code": "pc"}}'

    def abort_multipart_upload(self, bucket, key, upload_id):
        self.aborted.append(upload_id)


class _OneShotStream(io.RawIOBase):
    """Readable once, cannot seek."""

    def __init__(self, data: bytes) -> None:
        super().__init__()
        self._data = io.BytesIO(data)

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        chunk = self._data.read(len(buffer))
        buffer[: len(chunk)] = chunk
        return len(chunk)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


def _engine(store: FakeStore, fast_policy: RetryPolicy, **kwargs: Any) -> ChunkedTransferEngine:
    options: Dict[str, Any] = dict(upload_cutoff=20, chunk_size=10, max_parts=100, concurrency=3)
    options.update(kwargs)
    return ChunkedTransferEngine(
        lambda: store, retry_policy=fast_policy, pacer=Pacer(0, burst=3), **options
    )


class TestHelpers:
    def test_chunk_size_unchanged_when_parts_fit(self) -> None:
        assert calculate_chunk_size(50 * c.MiB, 10 * c.MiB, 10000) == 10 * c.MiB
        assert calculate_chunk_size(-1, 10 * c.MiB, 10000) == 10 * c.MiB

    def test_chunk_size_grows_in_whole_mib(self) -> None:
        chunk = calculate_chunk_size(100 * c.GiB, 10 * c.MiB, 10000)
        assert chunk == 11 * c.MiB
        assert chunk * 10000 >= 100 * c.GiB

    def test_forwardable_headers(self) -> None:
        headers = forwardable_headers({"content-type": "text/plain", "X-Foo": "1", "Cache-Control": "no-cache", "content-encoding": ""})
        assert headers == {"Content-Type": "text/plain", "Cache-Control": "no-cache"}

    def test_target_from_init(self) -> None:
        info = UploadInitInfo(status=1, bucket="b", object_key="k", callback="cb", callback_var="v")
        target = TransferTarget.from_init(info)
        assert (target.bucket, target.key) == ("b", "k")
        assert target.callback == info.encoded_callback


class TestSinglePut:
    def test_below_cutoff(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        result = _engine(store, fast_policy).transfer(
            TARGET, io.BytesIO(b"hello"), 5, headers={"content-type": "text/plain"}
        )
        assert result == b'{"state": true}'
        (put,) = store.puts
        assert put["body"] == b"hello"
        assert put["callback"] == "Y2I="
        assert put["callback_var"] == "dg=="
        assert put["headers"] == {"Content-Type": "text/plain"}
        assert store.completed is None

    def test_short_stream(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        with pytest.raises(ProtocolError):
            _engine(store, fast_policy).transfer(TARGET, io.BytesIO(b"hel"), 5)
        assert store.puts == []

    def test_body_streamed_with_length(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        _engine(store, fast_policy).transfer(TARGET, io.BytesIO(b"hello"), 5)
        (body,) = store.put_bodies
        assert not isinstance(body, bytes)
        assert store.puts[0]["content_length"] == 5

    def test_longer_stream_sends_declared_size(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        _engine(store, fast_policy).transfer(TARGET, io.BytesIO(b"hello world"), 5)
        assert store.puts[0]["body"] == b"hello"

    def test_retry_rewinds_seekable_stream(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        store.put_errors = [TransientError("connection reset")]
        _engine(store, fast_policy).transfer(TARGET, io.BytesIO(b"hello"), 5)
        assert [put["body"] for put in store.puts] == [b"hello"]
        assert len(store.put_bodies) == 2

    def test_retry_reopens_unseekable_stream(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        store.put_errors = [TransientError("connection reset")]
        reopened: List[io.BytesIO] = []

        def reopen() -> io.BytesIO:
            reopened.append(io.BytesIO(b"hello"))
            return reopened[-1]

        _engine(store, fast_policy).transfer(TARGET, _OneShotStream(b"hello"), 5, reopen=reopen)
        assert [put["body"] for put in store.puts] == [b"hello"]
        assert len(reopened) == 1
        assert reopened[0].closed

    def test_retry_without_reopen_fails(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        store.put_errors = [TransientError("connection reset")]
        with pytest.raises(SourceNotReopenableError):
            _engine(store, fast_policy).transfer(TARGET, _OneShotStream(b"hello"), 5)
        assert store.puts == []


class TestMultipart:
    """Multipart uploads."""

    def test_parts_completed_in_order(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        data = bytes(range(45))
        store.preexisting = {3}
        store.part_errors = {2: [TransientError("reset")]}
        result = _engine(store, fast_policy).transfer(TARGET, io.BytesIO(data), len(data))

        assert result.startswith(b'{"state": true')
        assert store.completed == [{"PartNumber": n, "ETag": f"etag-{n}"} for n in range(1, 6)]
        assert store.completion_callback == "Y2I="
        assert sorted(store.parts) == [1, 2, 4, 5]
        assert store.parts[5] == data[40:]
        assert b"".join(store.parts[n] for n in (1, 2)) == data[:20]
        assert store.aborted == []

    def test_exact_multiple_of_chunk(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        data = b"x" * 40
        _engine(store, fast_policy).transfer(TARGET, io.BytesIO(data), 40)
        assert [p["PartNumber"] for p in store.completed] == [1, 2, 3, 4]

    def test_unknown_size_uses_multipart(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        _engine(store, fast_policy).transfer(TARGET, io.BytesIO(b"y" * 15), -1)
        assert store.puts == []
        assert [p["PartNumber"] for p in store.completed] == [1, 2]

    def test_part_failure_aborts(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        store.part_errors = {2: [APIError("denied")]}
        with pytest.raises(APIError):
            _engine(store, fast_policy).transfer(TARGET, io.BytesIO(b"z" * 45), 45)
        assert store.aborted == ["upload-1"]
        assert store.completed is None

    def test_missing_listed_part_is_retried(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        store.part_errors = {1: [PartAlreadyExistsError(1)]}
        _engine(store, fast_policy).transfer(TARGET, io.BytesIO(b"q" * 25), 25)
        assert store.completed[0] == {"PartNumber": 1, "ETag": "etag-1"}

    def test_too_many_parts(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        with pytest.raises(SizeLimitExceededError):
            _engine(store, fast_policy, max_parts=2).transfer(TARGET, io.BytesIO(b"w" * 30), -1)
        assert store.aborted == ["upload-1"]

    def test_cancel_aborts(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        cancel = CancelToken()
        store.on_part = lambda number: cancel.cancel()
        with pytest.raises(OperationCancelled):
            _engine(store, fast_policy).transfer(TARGET, io.BytesIO(b"c" * 45), 45, cancel=cancel)
        assert store.aborted == ["upload-1"]
        assert store.completed is None

    def test_existing_part_after_transient_failure(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        data = bytes(range(50))
        store.part_errors = {3: [TransientError("reset"), PartAlreadyExistsError(3)]}
        store.listed = {3: "etag-3-listed"}
        _engine(store, fast_policy).transfer(TARGET, io.BytesIO(data), len(data))

        expected = [{"PartNumber": n, "ETag": f"etag-{n}"} for n in range(1, 6)]
        expected[2] = {"PartNumber": 3, "ETag": "etag-3-listed"}
        assert store.completed == expected
        assert 3 not in store.parts
        assert store.aborted == []

    def test_existing_part_missing_from_listing(self, store: FakeStore, fast_policy: RetryPolicy) -> None:
        store.part_errors = {3: [TransientError("reset")] + [PartAlreadyExistsError(3)] * 3}
        with pytest.raises(TransientError, match="not listed"):
            _engine(store, fast_policy).transfer(TARGET, io.BytesIO(b"m" * 50), 50)
        assert store.aborted == ["upload-1"]
        assert store.completed is None

    def test_cancel_while_waiting_for_slot(self, store: FakeStore, fast_policy: RetryPolicy, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(transfer_module, "SLOT_WAIT", 0.01)
        cancel = CancelToken()
        busy = threading.Event()

        def stall(number: int) -> None:
            # Hold the only slot so the reader is left waiting for it
            if number == 1:
                busy.wait(0.05)
                cancel.cancel()
                busy.wait(0.2)

        store.on_part = stall
        with pytest.raises(OperationCancelled):
            _engine(store, fast_policy, concurrency=1).transfer(
                TARGET, io.BytesIO(b"s" * 45), 45, cancel=cancel
            )
        assert store.aborted == ["upload-1"]
        assert store.completed is None

    def test_store_created_once(self, fast_policy: RetryPolicy) -> None:
        created = []

        def factory() -> FakeStore:
            created.append(1)
            return FakeStore()

        engine = ChunkedTransferEngine(factory, upload_cutoff=20, chunk_size=10, retry_policy=fast_policy)
        engine.transfer(TARGET, io.BytesIO(b"a"), 1)
        engine.transfer(TARGET, io.BytesIO(b"b" * 30), 30)
        assert created == [1]
