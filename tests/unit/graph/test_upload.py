"""Unit tests for graph/upload.py: simple and resumable uploads."""

import json
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from graph_drive.graph.client import GraphClient
from graph_drive.graph.content import BytesSource
from graph_drive.graph.errors import (
    GraphRequestError,
    RangeNotSatisfiableError,
    RequestCanceledError,
    UnexpectedStatusError,
)
from graph_drive.graph.models import UploadSession
from graph_drive.graph.retry import MAX_RETRIES
from graph_drive.graph.upload import (
    CHUNK_ALIGNMENT,
    SIMPLE_UPLOAD_MAX_SIZE,
    Uploader,
    parse_range_start,
)

BASE_URL = "https://graph.test/v1.0"
UPLOAD_URL = "https://upload.test/session/abc?sig=secret"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _StaticTokenSupplier:
    def get_token(self) -> str:
        return "fake-token-abc"


def _no_sleep(seconds: float, cancel: threading.Event | None) -> None:
    return None


def _make_uploader(
    handler: Callable[[httpx.Request], httpx.Response],
    chunk_size: int = CHUNK_ALIGNMENT,
) -> tuple[Uploader, list[httpx.Request]]:
    """Return an Uploader whose requests are recorded with their bodies read."""
    requests: list[httpx.Request] = []

    def recording_handler(request: httpx.Request) -> httpx.Response:
        request.read()
        requests.append(request)
        return handler(request)

    graph_client = GraphClient(
        token_supplier=_StaticTokenSupplier(),
        base_url=BASE_URL,
        http_client=httpx.Client(transport=httpx.MockTransport(recording_handler)),
        sleep_func=_no_sleep,
    )
    return Uploader(graph_client, chunk_size=chunk_size), requests


def _item_json(item_id: str = "new-item", name: str = "big.bin", size: int = 0) -> dict[str, Any]:
    return {
        "id": item_id,
        "name": name,
        "size": size,
        "createdDateTime": "2024-01-01T00:00:00Z",
        "lastModifiedDateTime": "2024-01-01T00:00:00Z",
        "parentReference": {"id": "parent-1", "driveId": "0123456789abcdef"},
        "file": {},
    }


def _session_json() -> dict[str, Any]:
    return {"uploadUrl": UPLOAD_URL, "expirationDateTime": "2030-01-01T00:00:00Z"}


def _session_handler(
    total: int, chunk_status: Callable[[httpx.Request], httpx.Response] | None = None
) -> Callable[[httpx.Request], httpx.Response]:
    """Serve createUploadSession, chunk PUTs and session DELETE."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/createUploadSession"):
            return httpx.Response(200, json=_session_json())
        if request.method == "DELETE":
            return httpx.Response(204)
        if chunk_status is not None:
            return chunk_status(request)
        content_range = request.headers["Content-Range"]
        end = int(content_range.split(" ")[1].split("/")[0].split("-")[1])
        if end + 1 == total:
            return httpx.Response(201, json=_item_json(size=total))
        return httpx.Response(202, json={"nextExpectedRanges": [f"{end + 1}-"]})

    return handler


def _chunk_requests(requests: list[httpx.Request]) -> list[httpx.Request]:
    return [r for r in requests if r.method == "PUT" and r.url.host == "upload.test"]


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestUploaderInit:
    @pytest.mark.parametrize("chunk_size", [0, -CHUNK_ALIGNMENT, 1000, CHUNK_ALIGNMENT + 1])
    def test_rejects_unaligned_chunk_size(self, chunk_size: int) -> None:
        with pytest.raises(ValueError, match="multiple"):
            _make_uploader(lambda r: httpx.Response(200), chunk_size=chunk_size)

    def test_accepts_aligned_chunk_size(self) -> None:
        _make_uploader(lambda r: httpx.Response(200), chunk_size=32 * CHUNK_ALIGNMENT)


class TestParseRangeStart:
    @pytest.mark.parametrize(
        ("value", "expected"), [("0-", 0), ("327680-", 327680), ("100-199", 100)]
    )
    def test_parses_start(self, value: str, expected: int) -> None:
        assert parse_range_start(value) == expected


# ---------------------------------------------------------------------------
# Simple upload
# ---------------------------------------------------------------------------


class TestSimpleUpload:
    def test_exactly_4_mib_uses_single_put(self) -> None:
        size = SIMPLE_UPLOAD_MAX_SIZE
        uploader, requests = _make_uploader(
            lambda r: httpx.Response(201, json=_item_json(size=size))
        )

        item = uploader.upload("drive-1", "parent-1", "small.bin", BytesSource(bytes(size)), size)

        assert item.id == "new-item"
        assert len(requests) == 1
        assert requests[0].method == "PUT"
        assert requests[0].url.path == "/v1.0/drives/drive-1/items/parent-1:/small.bin:/content"
        assert requests[0].headers["Authorization"] == "Bearer fake-token-abc"
        assert len(requests[0].content) == size

    def test_name_is_percent_encoded(self) -> None:
        uploader, requests = _make_uploader(lambda r: httpx.Response(201, json=_item_json()))

        uploader.upload("d", "p", "my report #1.txt", BytesSource(b"abc"), 3)

        assert "my%20report%20%231.txt" in requests[0].url.raw_path.decode()

    def test_mtime_triggers_patch_of_file_system_info(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200 if request.method == "PATCH" else 201, json=_item_json())

        uploader, requests = _make_uploader(handler)
        mtime = datetime(2023, 5, 6, 7, 8, 9, tzinfo=timezone.utc)

        uploader.upload("d", "p", "a.txt", BytesSource(b"abc"), 3, mtime=mtime)

        assert [r.method for r in requests] == ["PUT", "PATCH"]
        assert requests[1].url.path == "/v1.0/drives/d/items/new-item"
        assert json.loads(requests[1].content) == {
            "fileSystemInfo": {"lastModifiedDateTime": "2023-05-06T07:08:09Z"}
        }

    def test_simple_upload_error_is_not_retried(self) -> None:
        uploader, requests = _make_uploader(lambda r: httpx.Response(503))

        with pytest.raises(Exception):
            uploader.upload("d", "p", "a.txt", BytesSource(b"abc"), 3)

        assert len(requests) == 1


# ---------------------------------------------------------------------------
# Resumable upload
# ---------------------------------------------------------------------------


class TestChunkedUpload:
    def test_one_byte_over_threshold_uses_session(self) -> None:
        size = SIMPLE_UPLOAD_MAX_SIZE + 1
        uploader, requests = _make_uploader(_session_handler(size), chunk_size=10 * CHUNK_ALIGNMENT)

        item = uploader.upload("d", "p", "big.bin", BytesSource(bytes(size)), size)

        assert item.id == "new-item"
        assert requests[0].url.path.endswith("/createUploadSession")
        assert len(_chunk_requests(requests)) == 2

    def test_chunk_lengths_sum_to_total_and_ranges_are_contiguous(self) -> None:
        size = 5 * 1024 * 1024 + 12345
        data = bytes(i % 251 for i in range(size))
        uploader, requests = _make_uploader(_session_handler(size), chunk_size=CHUNK_ALIGNMENT * 4)
        progress: list[tuple[int, int]] = []

        uploader.upload(
            "d",
            "p",
            "big.bin",
            BytesSource(data),
            size,
            progress=lambda done, total: progress.append((done, total)),
        )

        chunks = _chunk_requests(requests)
        assert sum(len(r.content) for r in chunks) == size
        assert b"".join(r.content for r in chunks) == data
        expected_offset = 0
        for request in chunks:
            length = len(request.content)
            assert request.headers["Content-Length"] == str(length)
            assert request.headers["Content-Range"] == (
                f"bytes {expected_offset}-{expected_offset + length - 1}/{size}"
            )
            assert "Authorization" not in request.headers
            assert "Transfer-Encoding" not in request.headers
            expected_offset += length
        for request in chunks[:-1]:
            assert len(request.content) % CHUNK_ALIGNMENT == 0
        assert progress[-1] == (size, size)
        assert [p[0] for p in progress] == sorted(p[0] for p in progress)

    def test_session_body_requests_replace_and_mtime(self) -> None:
        size = SIMPLE_UPLOAD_MAX_SIZE + 1
        uploader, requests = _make_uploader(_session_handler(size), chunk_size=20 * CHUNK_ALIGNMENT)
        mtime = datetime(2023, 5, 6, 7, 8, 9, tzinfo=timezone.utc)

        uploader.upload("d", "p", "big.bin", BytesSource(bytes(size)), size, mtime=mtime)

        assert json.loads(requests[0].content) == {
            "item": {
                "@microsoft.graph.conflictBehavior": "replace",
                "fileSystemInfo": {"lastModifiedDateTime": "2023-05-06T07:08:09Z"},
            }
        }
        assert not any(r.method == "PATCH" for r in requests)

    def test_retried_chunk_resends_identical_bytes(self) -> None:
        size = SIMPLE_UPLOAD_MAX_SIZE + 1
        data = bytes(i % 7 for i in range(size))
        attempts = {"n": 0}

        def chunk_status(request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            if attempts["n"] == 1:
                return httpx.Response(503)
            return httpx.Response(201, json=_item_json(size=size))

        uploader, requests = _make_uploader(
            _session_handler(size, chunk_status), chunk_size=20 * CHUNK_ALIGNMENT
        )

        uploader.upload("d", "p", "big.bin", BytesSource(data), size)

        chunks = _chunk_requests(requests)
        assert len(chunks) == 2
        assert chunks[0].content == chunks[1].content == data

    def test_416_raises_range_error_and_cancels_session(self) -> None:
        size = SIMPLE_UPLOAD_MAX_SIZE + 1
        uploader, requests = _make_uploader(
            _session_handler(size, lambda r: httpx.Response(416, text="range")),
            chunk_size=20 * CHUNK_ALIGNMENT,
        )

        with pytest.raises(RangeNotSatisfiableError):
            uploader.upload("d", "p", "big.bin", BytesSource(bytes(size)), size)

        assert requests[-1].method == "DELETE"
        assert str(requests[-1].url) == UPLOAD_URL
        assert len(_chunk_requests(requests)) == 1

    def test_unexpected_2xx_chunk_status_raises(self) -> None:
        size = SIMPLE_UPLOAD_MAX_SIZE + 1
        uploader, requests = _make_uploader(
            _session_handler(size, lambda r: httpx.Response(204)),
            chunk_size=20 * CHUNK_ALIGNMENT,
        )

        with pytest.raises(UnexpectedStatusError) as exc_info:
            uploader.upload("d", "p", "big.bin", BytesSource(bytes(size)), size)

        assert exc_info.value.status_code == 204
        assert requests[-1].method == "DELETE"

    def test_final_chunk_without_item_raises(self) -> None:
        size = SIMPLE_UPLOAD_MAX_SIZE + 1
        uploader, _ = _make_uploader(
            _session_handler(size, lambda r: httpx.Response(202, json={})),
            chunk_size=20 * CHUNK_ALIGNMENT,
        )

        with pytest.raises(UnexpectedStatusError):
            uploader.upload("d", "p", "big.bin", BytesSource(bytes(size)), size)

    def test_cancel_failure_does_not_mask_original_error(self) -> None:
        size = SIMPLE_UPLOAD_MAX_SIZE + 1

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/createUploadSession"):
                return httpx.Response(200, json=_session_json())
            if request.method == "DELETE":
                return httpx.Response(404)
            return httpx.Response(416)

        uploader, _ = _make_uploader(handler, chunk_size=20 * CHUNK_ALIGNMENT)

        with pytest.raises(RangeNotSatisfiableError):
            uploader.upload("d", "p", "big.bin", BytesSource(bytes(size)), size)

    def test_canceled_upload_still_cancels_session(self) -> None:
        size = SIMPLE_UPLOAD_MAX_SIZE + 1
        cancel = threading.Event()

        def progress(done: int, total: int) -> None:
            cancel.set()

        uploader, requests = _make_uploader(_session_handler(size), chunk_size=4 * CHUNK_ALIGNMENT)

        with pytest.raises(RequestCanceledError):
            uploader.upload(
                "d",
                "p",
                "big.bin",
                BytesSource(bytes(size)),
                size,
                progress=progress,
                cancel=cancel,
            )

        assert len(_chunk_requests(requests)) == 1
        assert requests[-1].method == "DELETE"

    def test_network_failure_exhausts_retries_then_cancels(self) -> None:
        size = SIMPLE_UPLOAD_MAX_SIZE + 1

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/createUploadSession"):
                return httpx.Response(200, json=_session_json())
            if request.method == "DELETE":
                return httpx.Response(204)
            raise httpx.WriteError("broken pipe", request=request)

        uploader, requests = _make_uploader(handler, chunk_size=20 * CHUNK_ALIGNMENT)

        with pytest.raises(GraphRequestError):
            uploader.upload("d", "p", "big.bin", BytesSource(bytes(size)), size)

        assert len(_chunk_requests(requests)) == MAX_RETRIES + 1
        assert requests[-1].method == "DELETE"


# ---------------------------------------------------------------------------
# Session status and resume
# ---------------------------------------------------------------------------


class TestUploadSessionLifecycle:
    def test_query_upload_session(self) -> None:
        uploader, requests = _make_uploader(
            lambda r: httpx.Response(
                200, json={"uploadUrl": UPLOAD_URL, "nextExpectedRanges": ["655360-"]}
            )
        )

        status = uploader.query_upload_session(UploadSession(upload_url=UPLOAD_URL))

        assert status.next_expected_ranges == ["655360-"]
        assert requests[0].method == "GET"
        assert "Authorization" not in requests[0].headers

    def test_cancel_upload_session_expects_204(self) -> None:
        uploader, requests = _make_uploader(lambda r: httpx.Response(204))

        uploader.cancel_upload_session(UploadSession(upload_url=UPLOAD_URL))

        assert requests[0].method == "DELETE"
        assert "Authorization" not in requests[0].headers

    def test_cancel_upload_session_unexpected_status(self) -> None:
        uploader, _ = _make_uploader(lambda r: httpx.Response(200))

        with pytest.raises(UnexpectedStatusError):
            uploader.cancel_upload_session(UploadSession(upload_url=UPLOAD_URL))

    def test_resume_upload_continues_from_first_pending_range(self) -> None:
        size = 3 * CHUNK_ALIGNMENT
        data = bytes(i % 13 for i in range(size))

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(
                    200, json={"nextExpectedRanges": [f"{CHUNK_ALIGNMENT}-"]}
                )
            return _session_handler(size)(request)

        uploader, requests = _make_uploader(handler)

        item = uploader.resume_upload(UploadSession(upload_url=UPLOAD_URL), BytesSource(data), size)

        assert item.id == "new-item"
        chunks = _chunk_requests(requests)
        assert len(chunks) == 2
        assert chunks[0].headers["Content-Range"] == (
            f"bytes {CHUNK_ALIGNMENT}-{2 * CHUNK_ALIGNMENT - 1}/{size}"
        )
        assert b"".join(r.content for r in chunks) == data[CHUNK_ALIGNMENT:]

    def test_resume_upload_without_pending_ranges_raises(self) -> None:
        uploader, _ = _make_uploader(
            lambda r: httpx.Response(200 if r.method == "GET" else 204, json={})
        )

        with pytest.raises(UnexpectedStatusError):
            uploader.resume_upload(UploadSession(upload_url=UPLOAD_URL), BytesSource(b"x"), 1)
