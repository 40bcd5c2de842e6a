"""
Tests for the resumable object-store uploader, driven by httpx.MockTransport.
"""

import io
import re

import httpx
import pytest

from belowsync.core import uploader as uploader_module
from belowsync.core.errors import (
    BundleError,
    CopyError,
    DestinationUnavailableError,
    FinalizeError,
    UploadTimeoutError,
)
from belowsync.core.pipe import BlockingPipe
from belowsync.core.uploader import CHUNK_GRANULARITY, RemoteUploader, read_full

BASE = "http://storage.test"
SESSION = f"{BASE}/upload/storage/v1/b/logs/o?uploadType=resumable&upload_id=sess-1"
RANGE_RE = re.compile(r"bytes (?:(\d+)-(\d+)|\*)/(\d+|\*)")


class FakeStore:
    """Minimal resumable-upload server keeping committed objects in memory."""

    def __init__(self):
        self.objects = {}
        self.requests = []
        self._pending = {}
        self.fail_open = None
        self.fail_put_at = None  # index of PUT to fail with 503
        self.fail_final = None
        self.puts = 0

    def __call__(self, request):
        self.requests.append(request)
        if request.method == "GET" and request.url.path == "/storage/v1/b/logs":
            return httpx.Response(200, json={"name": "logs", "location": "US"})
        if request.method == "POST":
            if self.fail_open is not None:
                return httpx.Response(self.fail_open)
            assert request.url.params["uploadType"] == "resumable"
            self._pending = {"name": request.url.params["name"], "data": bytearray()}
            return httpx.Response(200, headers={"Location": SESSION})
        if request.method == "PUT":
            idx = self.puts
            self.puts += 1
            if self.fail_put_at == idx:
                return httpx.Response(503)
            m = RANGE_RE.fullmatch(request.headers["Content-Range"])
            assert m, request.headers["Content-Range"]
            body = request.content
            if m.group(1) is not None:
                assert int(m.group(1)) == len(self._pending["data"])
                assert int(m.group(2)) - int(m.group(1)) + 1 == len(body)
            self._pending["data"] += body
            if m.group(3) == "*":
                return httpx.Response(308, headers={"Range": f"bytes=0-{len(self._pending['data']) - 1}"})
            if self.fail_final is not None:
                return httpx.Response(self.fail_final)
            assert int(m.group(3)) == len(self._pending["data"])
            self.objects[self._pending["name"]] = bytes(self._pending["data"])
            return httpx.Response(200, json={"name": self._pending["name"]})
        return httpx.Response(404)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def uploader(store):
    client = httpx.Client(transport=httpx.MockTransport(store))
    up = RemoteUploader("logs", base_url=BASE, chunk_size=CHUNK_GRANULARITY, client=client)
    yield up
    up.close()


class TestReadFull:
    def test_short_reads_are_joined(self):
        pipe = BlockingPipe(capacity=3)
        pipe.writer.write(b"abc")
        # writer still open; second read would block, so only ask for what exists
        assert read_full(pipe.reader, 3) == b"abc"

    def test_eof(self):
        assert read_full(io.BytesIO(b"xy"), 10) == b"xy"


class TestUpload:
    def test_single_chunk(self, uploader, store):
        n = uploader.upload(io.BytesIO(b"hello"), "below_nodeA.tar.gz", deadline=10)
        assert n == 5
        assert store.objects["below_nodeA.tar.gz"] == b"hello"
        put = [r for r in store.requests if r.method == "PUT"]
        assert len(put) == 1
        assert put[0].headers["Content-Range"] == "bytes 0-4/5"

    def test_multi_chunk(self, uploader, store):
        data = bytes(range(256)) * (CHUNK_GRANULARITY * 2 // 256 + 10)
        uploader.upload(io.BytesIO(data), "obj", deadline=10)
        assert store.objects["obj"] == data
        ranges = [r.headers["Content-Range"] for r in store.requests if r.method == "PUT"]
        assert ranges[0] == f"bytes 0-{CHUNK_GRANULARITY - 1}/*"
        assert ranges[-1].endswith(f"/{len(data)}")
        assert len(ranges) == 3

    def test_exact_multiple_of_chunk(self, uploader, store):
        data = b"z" * (CHUNK_GRANULARITY * 2)
        uploader.upload(io.BytesIO(data), "obj", deadline=10)
        assert store.objects["obj"] == data
        ranges = [r.headers["Content-Range"] for r in store.requests if r.method == "PUT"]
        assert ranges == [
            f"bytes 0-{CHUNK_GRANULARITY - 1}/*",
            f"bytes {CHUNK_GRANULARITY}-{2 * CHUNK_GRANULARITY - 1}/{2 * CHUNK_GRANULARITY}",
        ]

    def test_empty_stream(self, uploader, store):
        assert uploader.upload(io.BytesIO(b""), "obj", deadline=10) == 0
        assert store.objects["obj"] == b""
        put = [r for r in store.requests if r.method == "PUT"]
        assert put[0].headers["Content-Range"] == "bytes */0"

    def test_overwrites(self, uploader, store):
        uploader.upload(io.BytesIO(b"first"), "obj", deadline=10)
        uploader.upload(io.BytesIO(b"second"), "obj", deadline=10)
        assert store.objects["obj"] == b"second"

    def test_object_name_sent(self, uploader, store):
        uploader.upload(io.BytesIO(b"x"), "below_nodeA.tar.gz", deadline=10)
        post = store.requests[0]
        assert post.url.path == "/upload/storage/v1/b/logs/o"
        assert post.url.params["name"] == "below_nodeA.tar.gz"


class TestUploadFailures:
    @pytest.mark.parametrize("status", [403, 404, 500])
    def test_destination_unavailable(self, uploader, store, status):
        store.fail_open = status
        with pytest.raises(DestinationUnavailableError):
            uploader.upload(io.BytesIO(b"x"), "obj", deadline=10)

    def test_connect_error_is_unavailable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(refuse))
        up = RemoteUploader("logs", base_url=BASE, client=client)
        with pytest.raises(DestinationUnavailableError):
            up.upload(io.BytesIO(b"x"), "obj", deadline=10)

    def test_copy_failure(self, uploader, store):
        store.fail_put_at = 0
        data = b"y" * (CHUNK_GRANULARITY + 1)
        with pytest.raises(CopyError):
            uploader.upload(io.BytesIO(data), "obj", deadline=10)
        assert "obj" not in store.objects

    def test_finalize_failure(self, uploader, store):
        store.fail_final = 500
        with pytest.raises(FinalizeError):
            uploader.upload(io.BytesIO(b"payload"), "obj", deadline=10)

    def test_finalize_transport_error(self, store):
        def handler(request):
            if request.method == "PUT":
                raise httpx.ReadError("reset", request=request)
            return store(request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        up = RemoteUploader("logs", base_url=BASE, client=client)
        with pytest.raises(FinalizeError):
            up.upload(io.BytesIO(b"payload"), "obj", deadline=10)

    def test_timeout_from_transport(self, store):
        def handler(request):
            if request.method == "PUT":
                raise httpx.WriteTimeout("slow", request=request)
            return store(request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        up = RemoteUploader("logs", base_url=BASE, client=client)
        with pytest.raises(UploadTimeoutError):
            up.upload(io.BytesIO(b"payload"), "obj", deadline=10)

    def test_deadline_elapsed(self, store, monkeypatch):
        now = [1000.0]
        monkeypatch.setattr(uploader_module.time, "monotonic", lambda: now[0])

        def handler(request):
            if request.method == "POST":
                now[0] += 100.0  # session opened, but slowly
            return store(request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        up = RemoteUploader("logs", base_url=BASE, chunk_size=CHUNK_GRANULARITY, client=client)
        data = b"w" * (CHUNK_GRANULARITY * 2)
        with pytest.raises(UploadTimeoutError):
            up.upload(io.BytesIO(data), "obj", deadline=5)
        assert store.puts == 0
        assert "obj" not in store.objects

    def test_stream_error_propagates(self, uploader, store):
        pipe = BlockingPipe()
        pipe.writer.write(b"partial archive")
        pipe.writer.close_with_error(BundleError("file vanished"))
        with pytest.raises(BundleError, match="file vanished"):
            uploader.upload(pipe.reader, "obj", deadline=10)
        assert "obj" not in store.objects

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            RemoteUploader("logs", chunk_size=1000)


class TestBucketInfo:
    def test_ok(self, uploader):
        assert uploader.bucket_info()["name"] == "logs"

    def test_missing_bucket(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        up = RemoteUploader("nope", base_url=BASE, client=client)
        with pytest.raises(DestinationUnavailableError):
            up.bucket_info()
