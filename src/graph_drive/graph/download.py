"""Downloads through pre-authenticated item URLs."""

from __future__ import annotations

import logging
import threading
from typing import BinaryIO

import httpx

from graph_drive.graph.client import GraphClient
from graph_drive.graph.errors import GraphRequestError, NoDownloadUrlError
from graph_drive.graph.models import Item

logger = logging.getLogger(__name__)


class Downloader:
    """Streams item content from its ``@microsoft.graph.downloadUrl``.

    The download URL embeds short-lived credentials, so it is never logged
    and no Authorization header is sent.
    """

    def __init__(self, graph_client: GraphClient) -> None:
        self._graph = graph_client

    def download(self, item: Item, out: BinaryIO, cancel: threading.Event | None = None) -> int:
        """Write the content of ``item`` to ``out``.

        Only the request/response exchange is retried; a failure while
        streaming the body is raised to the caller, which must restart the
        download into a fresh writer.

        Args:
            item: Item carrying a pre-authenticated download URL.
            out: Writable binary stream.
            cancel: Optional cancellation event.

        Returns:
            Number of bytes written.

        Raises:
            NoDownloadUrlError: If the item has no download URL (folders,
                packages, some zero-byte files). Raised before any request.
        """
        if not item.download_url:
            logger.warning(
                "[download] item has no download URL; item_id:%s;is_folder:%s;is_package:%s",
                item.id,
                item.is_folder,
                item.is_package,
            )
            raise NoDownloadUrlError(f"item {item.id} has no download URL")

        logger.info("[download] downloading item; drive_id:%s;item_id:%s", item.drive_id, item.id)
        download_url = item.download_url
        response = self._graph.execute_preauth(
            "download",
            lambda: self._graph.build_request("GET", download_url),
            cancel=cancel,
        )

        written = 0
        try:
            for block in response.iter_bytes():
                out.write(block)
                written += len(block)
        except httpx.HTTPError as exc:
            logger.error(
                "[download] streaming download content failed; bytes_before_error:%d;error:%s",
                written,
                exc,
            )
            raise GraphRequestError(f"streaming download content failed: {exc}") from exc
        finally:
            response.close()

        logger.debug("[download] download complete; item_id:%s;bytes_written:%d", item.id, written)
        return written
