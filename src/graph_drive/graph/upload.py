"""Simple and resumable (chunked) uploads to a drive."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from graph_drive.graph.client import (
    CONTENT_TYPE_OCTET_STREAM,
    GraphClient,
    drain,
    read_json,
)
from graph_drive.graph.content import ByteRangeView, RandomAccessSource
from graph_drive.graph.errors import UnexpectedStatusError
from graph_drive.graph.models import (
    FIELD_CONFLICT_BEHAVIOR,
    FIELD_FILE_SYSTEM_INFO,
    FIELD_LAST_MODIFIED,
    Item,
    UploadSession,
    UploadSessionStatus,
    format_graph_datetime,
    item_from_response,
    upload_session_from_response,
    upload_session_status_from_response,
)

if TYPE_CHECKING:
    from graph_drive.config import AppConfig

logger = logging.getLogger(__name__)

# All chunks except the last must be a multiple of 320 KiB.
CHUNK_ALIGNMENT = 320 * 1024
# Files up to this size go through a single PUT.
SIMPLE_UPLOAD_MAX_SIZE = 4 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024

STATUS_OK = 200
STATUS_CREATED = 201
STATUS_ACCEPTED = 202
STATUS_NO_CONTENT = 204

ProgressFunc = Callable[[int, int], None]


def _item_path(drive_id: str, parent_id: str, name: str) -> str:
    return f"/drives/{drive_id}/items/{parent_id}:/{quote(name, safe='')}:"


def _file_system_info(mtime: datetime) -> dict[str, str]:
    return {FIELD_LAST_MODIFIED: format_graph_datetime(mtime)}


def parse_range_start(expected_range: str) -> int:
    """Return the first byte offset of a ``"start-end"`` or ``"start-"`` range."""
    start, _, _ = expected_range.partition("-")
    return int(start)


class Uploader:
    """Uploads file content, choosing simple or resumable upload by size."""

    def __init__(self, graph_client: GraphClient, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        """Initialise the uploader.

        Args:
            graph_client: Authenticated GraphClient instance.
            chunk_size: Resumable upload chunk size in bytes; must be a
                positive multiple of 320 KiB.

        Raises:
            ValueError: If ``chunk_size`` is not a positive multiple of 320 KiB.
        """
        if chunk_size <= 0 or chunk_size % CHUNK_ALIGNMENT != 0:
            raise ValueError(
                f"chunk_size must be a positive multiple of {CHUNK_ALIGNMENT} bytes,"
                f" got {chunk_size}"
            )
        self._graph = graph_client
        self._chunk_size = chunk_size

    def upload(
        self,
        drive_id: str,
        parent_id: str,
        name: str,
        content: RandomAccessSource,
        size: int,
        mtime: datetime | None = None,
        progress: ProgressFunc | None = None,
        cancel: threading.Event | None = None,
    ) -> Item:
        """Upload ``size`` bytes of ``content`` as ``name`` under ``parent_id``.

        Files up to 4 MiB use a single PUT followed, when ``mtime`` is given,
        by a PATCH of ``fileSystemInfo``. Larger files use an upload session
        whose lifecycle (create, chunk loop, cancel on error) is handled
        here entirely.

        Args:
            drive_id: Target drive ID.
            parent_id: ID of the destination folder.
            name: File name in the destination folder.
            content: Random-access source; retries re-read from it.
            size: Number of bytes to upload.
            mtime: Optional local modification time to preserve remotely.
            progress: Optional callback receiving (bytes_uploaded, total).
            cancel: Optional cancellation event.

        Returns:
            The uploaded item as reported by the server.
        """
        if size <= SIMPLE_UPLOAD_MAX_SIZE:
            item = self.simple_upload(drive_id, parent_id, name, content, size, cancel=cancel)
            if mtime is not None:
                # PUT /content cannot carry fileSystemInfo; set it afterwards.
                item = self.update_file_system_info(drive_id, item.id, mtime, cancel=cancel)
            return item

        session = self.create_upload_session(drive_id, parent_id, name, mtime, cancel=cancel)
        return self._upload_from(session, content, 0, size, progress, cancel)

    def resume_upload(
        self,
        session: UploadSession,
        content: RandomAccessSource,
        size: int,
        progress: ProgressFunc | None = None,
        cancel: threading.Event | None = None,
    ) -> Item:
        """Continue an interrupted session from the first byte the server still expects.

        Use after ``RangeNotSatisfiableError`` or a crash mid-transfer. The
        session is canceled if the remaining transfer fails.
        """
        status = self.query_upload_session(session, cancel=cancel)
        if not status.next_expected_ranges:
            raise UnexpectedStatusError(
                "resume upload", STATUS_OK, "session expects no more ranges"
            )
        offset = parse_range_start(status.next_expected_ranges[0])
        logger.info(
            "[resume_upload] resuming upload session; offset:%d;total:%d;pending_ranges:%d",
            offset,
            size,
            len(status.next_expected_ranges),
        )
        return self._upload_from(session, content, offset, size, progress, cancel)

    def _upload_from(
        self,
        session: UploadSession,
        content: RandomAccessSource,
        offset: int,
        size: int,
        progress: ProgressFunc | None,
        cancel: threading.Event | None,
    ) -> Item:
        try:
            return self._upload_chunks(session, content, offset, size, progress, cancel)
        except Exception:
            # The caller's cancel event may already be set, so cleanup ignores it.
            try:
                self.cancel_upload_session(session)
            except Exception as cancel_exc:  # noqa: BLE001
                logger.warning(
                    "[upload] failed to cancel upload session after error; error:%s", cancel_exc
                )
            raise

    def _upload_chunks(
        self,
        session: UploadSession,
        content: RandomAccessSource,
        offset: int,
        size: int,
        progress: ProgressFunc | None,
        cancel: threading.Event | None,
    ) -> Item:
        last_item: Item | None = None
        while offset < size:
            length = min(self._chunk_size, size - offset)
            item = self.upload_chunk(session, content, offset, length, size, cancel=cancel)
            offset += length
            if progress is not None:
                progress(offset, size)
            if item is not None:
                last_item = item

        if last_item is None:
            raise UnexpectedStatusError(
                "upload session", STATUS_ACCEPTED, "final chunk did not return an item"
            )
        return last_item

    def simple_upload(
        self,
        drive_id: str,
        parent_id: str,
        name: str,
        content: RandomAccessSource,
        size: int,
        cancel: threading.Event | None = None,
    ) -> Item:
        """Upload a file of at most 4 MiB with one authenticated PUT (not retried)."""
        logger.info(
            "[simple_upload] simple upload; drive_id:%s;parent_id:%s;name:%s;size:%d",
            drive_id,
            parent_id,
            name,
            size,
        )
        path = f"{_item_path(drive_id, parent_id, name)}/content"
        body = content.read_at(0, size)
        response = self._graph.send_raw("PUT", path, body, CONTENT_TYPE_OCTET_STREAM, cancel=cancel)
        return item_from_response(read_json(response))

    def update_file_system_info(
        self,
        drive_id: str,
        item_id: str,
        mtime: datetime,
        cancel: threading.Event | None = None,
    ) -> Item:
        """Set ``fileSystemInfo.lastModifiedDateTime`` on an item and return the patched item."""
        logger.debug(
            "[update_file_system_info] updating mtime; drive_id:%s;item_id:%s;mtime:%s",
            drive_id,
            item_id,
            mtime.isoformat(),
        )
        response = self._graph.execute(
            "PATCH",
            f"/drives/{drive_id}/items/{item_id}",
            json_body={FIELD_FILE_SYSTEM_INFO: _file_system_info(mtime)},
            cancel=cancel,
        )
        return item_from_response(read_json(response))

    def create_upload_session(
        self,
        drive_id: str,
        parent_id: str,
        name: str,
        mtime: datetime | None = None,
        cancel: threading.Event | None = None,
    ) -> UploadSession:
        """Create a resumable upload session that replaces any existing file.

        When ``mtime`` is given it is embedded as ``fileSystemInfo`` so no
        PATCH is needed once the upload completes.
        """
        logger.info(
            "[create_upload_session] creating upload session; drive_id:%s;parent_id:%s;name:%s",
            drive_id,
            parent_id,
            name,
        )
        session_item: dict[str, Any] = {FIELD_CONFLICT_BEHAVIOR: "replace"}
        if mtime is not None:
            session_item[FIELD_FILE_SYSTEM_INFO] = _file_system_info(mtime)

        response = self._graph.execute(
            "POST",
            f"{_item_path(drive_id, parent_id, name)}/createUploadSession",
            json_body={"item": session_item},
            cancel=cancel,
        )
        session = upload_session_from_response(read_json(response))
        logger.debug(
            "[create_upload_session] upload session created; expires:%s", session.expiration_time
        )
        return session

    def upload_chunk(
        self,
        session: UploadSession,
        content: RandomAccessSource,
        offset: int,
        length: int,
        total: int,
        cancel: threading.Event | None = None,
    ) -> Item | None:
        """Send bytes ``[offset, offset + length)`` of ``content`` to the session.

        Every attempt gets its own ``ByteRangeView``, so a retry never
        shares a read position with a previous, possibly still draining,
        attempt.

        Returns:
            The completed item on the final chunk (200/201), None for an
            intermediate chunk (202).

        Raises:
            RangeNotSatisfiableError: The server's accepted ranges diverged (416).
            UnexpectedStatusError: Any other 2xx status.
        """
        logger.debug(
            "[upload_chunk] uploading chunk; offset:%d;length:%d;total:%d", offset, length, total
        )
        headers = {
            "Content-Range": f"bytes {offset}-{offset + length - 1}/{total}",
            "Content-Type": CONTENT_TYPE_OCTET_STREAM,
            "Content-Length": str(length),
        }

        def build_request() -> httpx.Request:
            view = ByteRangeView(content, offset, length)
            return self._graph.build_request(
                "PUT", session.upload_url, content=view, headers=headers
            )

        response = self._graph.execute_preauth("upload chunk", build_request, cancel=cancel)
        return self._handle_chunk_response(response)

    @staticmethod
    def _handle_chunk_response(response: httpx.Response) -> Item | None:
        if response.status_code == STATUS_ACCEPTED:
            drain(response)
            logger.debug("[upload_chunk] intermediate chunk accepted")
            return None

        if response.status_code in (STATUS_OK, STATUS_CREATED):
            item = item_from_response(read_json(response))
            logger.debug("[upload_chunk] upload complete; item_id:%s;name:%s", item.id, item.name)
            return item

        body = drain(response)
        logger.error(
            "[upload_chunk] chunk upload returned unexpected 2xx status; status:%d",
            response.status_code,
        )
        raise UnexpectedStatusError("upload chunk", response.status_code, body)

    def query_upload_session(
        self, session: UploadSession, cancel: threading.Event | None = None
    ) -> UploadSessionStatus:
        """Return the byte ranges the session has not acknowledged yet."""
        logger.info("[query_upload_session] querying upload session status")
        response = self._graph.execute_preauth(
            "query upload session",
            lambda: self._graph.build_request("GET", session.upload_url),
            cancel=cancel,
        )
        status = upload_session_status_from_response(read_json(response))
        logger.debug(
            "[query_upload_session] upload session status; pending_ranges:%d",
            len(status.next_expected_ranges),
        )
        return status

    def cancel_upload_session(
        self, session: UploadSession, cancel: threading.Event | None = None
    ) -> None:
        """Delete an upload session, releasing its server-side storage."""
        logger.info("[cancel_upload_session] canceling upload session")
        response = self._graph.execute_preauth(
            "cancel upload session",
            lambda: self._graph.build_request("DELETE", session.upload_url),
            cancel=cancel,
        )
        body = drain(response)
        if response.status_code != STATUS_NO_CONTENT:
            logger.error(
                "[cancel_upload_session] unexpected status; status:%d", response.status_code
            )
            raise UnexpectedStatusError("cancel upload session", response.status_code, body)
        logger.debug("[cancel_upload_session] upload session canceled")


def uploader_from_config(graph_client: GraphClient, config: AppConfig) -> Uploader:
    """Construct an Uploader from application configuration."""
    return Uploader(graph_client=graph_client, chunk_size=config.upload_chunk_size)
