"""Delta API pagination and normalization."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from graph_drive.graph.client import GraphClient, read_json
from graph_drive.graph.errors import (
    DeltaTokenExpiredError,
    GoneError,
    InvalidDeltaLinkError,
    PaginationExceededError,
)
from graph_drive.graph.models import (
    ODATA_DELTA_LINK,
    ODATA_NEXT_LINK,
    ODATA_VALUE,
    DeltaPage,
    Item,
    item_from_response,
)
from graph_drive.graph.normalize import normalize_delta_items

if TYPE_CHECKING:
    from graph_drive.config import AppConfig

logger = logging.getLogger(__name__)

# Asks Graph to report remote/shared items under stable alias IDs. Without it
# personal accounts may get incomplete delta results for shared folders.
DELTA_PREFER_HEADER = {"Prefer": "deltashowremoteitemsaliasid"}

# Guards against a server bug or forged token producing an endless nextLink cycle.
DEFAULT_MAX_PAGES = 10000


class DeltaProcessor:
    """Fetches and normalizes OneDrive delta pages."""

    def __init__(self, graph_client: GraphClient, max_pages: int = DEFAULT_MAX_PAGES) -> None:
        """Initialise the delta processor.

        Args:
            graph_client: Authenticated GraphClient instance.
            max_pages: Maximum number of pages one ``fetch_all`` may request.
        """
        if max_pages < 1:
            raise ValueError(f"max_pages must be at least 1, got {max_pages}")
        self._graph = graph_client
        self._max_pages = max_pages

    def fetch_page(
        self, drive_id: str, token: str = "", cancel: threading.Event | None = None
    ) -> DeltaPage:
        """Fetch and normalize one page of delta changes.

        Args:
            drive_id: Drive to enumerate.
            token: Empty for a full enumeration, otherwise a ``next_link`` or
                ``delta_link`` URL returned by a previous page.
            cancel: Optional cancellation event.

        Returns:
            A DeltaPage with normalized items and at most one link set.

        Raises:
            InvalidDeltaLinkError: If ``token`` is not under the configured base URL.
            DeltaTokenExpiredError: If the server no longer accepts ``token`` (410).
        """
        path = self._build_delta_path(drive_id, token)
        logger.info(
            "[fetch_page] fetching delta page; drive_id:%s;initial_sync:%s", drive_id, not token
        )

        try:
            response = self._graph.execute(
                "GET", path, headers=DELTA_PREFER_HEADER, cancel=cancel
            )
        except GoneError as exc:
            logger.warning("[fetch_page] delta token expired; drive_id:%s", drive_id)
            raise DeltaTokenExpiredError(exc.status_code, exc.message, exc.request_id) from exc

        body = read_json(response)
        raw_items = body.get(ODATA_VALUE, [])
        items = normalize_delta_items([item_from_response(raw) for raw in raw_items])
        next_link = body.get(ODATA_NEXT_LINK, "")
        delta_link = body.get(ODATA_DELTA_LINK, "")

        if next_link and delta_link:
            logger.warning(
                "[fetch_page] delta page has both nextLink and deltaLink, treating as terminal;"
                " drive_id:%s",
                drive_id,
            )
            next_link = ""

        logger.debug(
            "[fetch_page] fetched delta page; raw_count:%d;normalized_count:%d;"
            "has_next_link:%s;has_delta_link:%s",
            len(raw_items),
            len(items),
            bool(next_link),
            bool(delta_link),
        )
        return DeltaPage(items=items, next_link=next_link, delta_link=delta_link)

    def fetch_all(
        self, drive_id: str, token: str = "", cancel: threading.Event | None = None
    ) -> tuple[list[Item], str]:
        """Fetch every page of changes since ``token``.

        Follows ``next_link`` until a page carries a ``delta_link``. A page
        with neither link ends the enumeration early with an empty token.

        Args:
            drive_id: Drive to enumerate.
            token: Empty for a full enumeration, or the previous cycle's delta link.
            cancel: Optional cancellation event.

        Returns:
            A tuple of (items, new_token) where new_token is the delta link for
            the next cycle, or "" if the server returned no link.

        Raises:
            PaginationExceededError: If more than ``max_pages`` pages would be fetched.
        """
        logger.info(
            "[fetch_all] starting delta enumeration; drive_id:%s;initial_sync:%s",
            drive_id,
            not token,
        )
        items: list[Item] = []
        current = token
        page_number = 0

        while True:
            if page_number >= self._max_pages:
                logger.error(
                    "[fetch_all] delta pagination exceeded page ceiling; drive_id:%s;max_pages:%d",
                    drive_id,
                    self._max_pages,
                )
                raise PaginationExceededError(self._max_pages)

            page = self.fetch_page(drive_id, current, cancel=cancel)
            page_number += 1
            items.extend(page.items)
            logger.debug(
                "[fetch_all] accumulated delta items; page:%d;page_items:%d;total_items:%d",
                page_number,
                len(page.items),
                len(items),
            )

            if page.delta_link:
                logger.info(
                    "[fetch_all] delta enumeration complete; drive_id:%s;total_items:%d;pages:%d",
                    drive_id,
                    len(items),
                    page_number,
                )
                return items, page.delta_link

            if page.next_link:
                current = page.next_link
                continue

            logger.warning(
                "[fetch_all] delta response has neither nextLink nor deltaLink;"
                " drive_id:%s;page:%d",
                drive_id,
                page_number,
            )
            return items, ""

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _build_delta_path(self, drive_id: str, token: str) -> str:
        if not token:
            return f"/drives/{drive_id}/root/delta"
        return self._relative_path(token)

    def _relative_path(self, full_url: str) -> str:
        """Convert a full Graph API URL to a path relative to the base URL.

        Anything not under the base URL is rejected so a corrupted or forged
        token cannot send requests (and bearer tokens) to another host.
        """
        prefix = self._graph.base_url
        rest = full_url[len(prefix) :]
        if not full_url.startswith(prefix) or not rest.startswith(("/", "?")):
            raise InvalidDeltaLinkError(
                f"delta link does not match base URL {prefix!r}: {full_url!r}"
            )
        return rest


def delta_processor_from_config(graph_client: GraphClient, config: AppConfig) -> DeltaProcessor:
    """Construct a DeltaProcessor from application configuration.

    Args:
        graph_client: Authenticated GraphClient instance.
        config: Application configuration instance.

    Returns:
        Configured DeltaProcessor instance.
    """
    return DeltaProcessor(graph_client=graph_client, max_pages=config.max_delta_pages)
