"""Delta cycle: load the persisted token, fetch all changes, persist the new token."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from graph_drive.graph.client import GraphClient, graph_client_from_config
from graph_drive.graph.delta import DeltaProcessor, delta_processor_from_config
from graph_drive.graph.errors import DeltaTokenExpiredError
from graph_drive.graph.models import Item
from graph_drive.graph.token_store import DeltaTokenStore, delta_token_store_from_config

if TYPE_CHECKING:
    from graph_drive.config import AppConfig

logger = logging.getLogger(__name__)


class DeltaCycle:
    """Runs one incremental delta enumeration for a single drive.

    When given a ``graph_client`` the cycle owns it and closes it in
    ``close()``; use the cycle as a context manager to release the
    connection pool after each run.
    """

    def __init__(
        self,
        delta_processor: DeltaProcessor,
        token_store: DeltaTokenStore,
        drive_id: str,
        graph_client: GraphClient | None = None,
    ) -> None:
        """Initialise the delta cycle.

        Args:
            delta_processor: DeltaProcessor used to enumerate changes.
            token_store: Store holding the delta token between cycles.
            drive_id: Drive whose changes are enumerated.
            graph_client: Optional client owned by the cycle and closed by ``close()``.
        """
        self._delta = delta_processor
        self._tokens = token_store
        self._drive_id = drive_id
        self._graph = graph_client

    def close(self) -> None:
        """Close the owned Graph client, if any."""
        if self._graph is not None:
            self._graph.close()

    def __enter__(self) -> DeltaCycle:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def run(self, cancel: threading.Event | None = None) -> list[Item]:
        """Fetch every change since the previous cycle.

        Steps:
            1. Retrieve the persisted delta token (None on first run).
            2. Fetch all pages of changes since that token.
            3. If the server rejects the token as expired (410), clear it and
               enumerate once more from scratch.
            4. Persist the new delta token when the server returned one.

        The token is only saved after every page was fetched, so a failed
        cycle is retried from the same point on the next run.

        Args:
            cancel: Optional cancellation event.

        Returns:
            Normalized items changed since the previous cycle (every item on
            a full enumeration).
        """
        logger.info("[run] starting delta cycle; drive_id:%s", self._drive_id)
        token = self._tokens.get_token(self._drive_id) or ""

        try:
            items, new_token = self._delta.fetch_all(self._drive_id, token, cancel=cancel)
        except DeltaTokenExpiredError:
            if not token:
                raise
            logger.warning(
                "[run] delta token expired, restarting full enumeration; drive_id:%s",
                self._drive_id,
            )
            self._tokens.clear_token(self._drive_id)
            items, new_token = self._delta.fetch_all(self._drive_id, "", cancel=cancel)

        if new_token:
            self._tokens.save_token(self._drive_id, new_token)
        else:
            logger.warning(
                "[run] delta enumeration returned no token, keeping previous; drive_id:%s",
                self._drive_id,
            )

        logger.info(
            "[run] delta cycle complete; drive_id:%s;item_count:%d", self._drive_id, len(items)
        )
        return items


def delta_cycle_from_config(config: AppConfig) -> DeltaCycle:
    """Construct a fully-wired DeltaCycle from application configuration.

    Args:
        config: Application configuration instance.

    Returns:
        Configured DeltaCycle instance.
    """
    graph_client = graph_client_from_config(config)
    return DeltaCycle(
        delta_processor=delta_processor_from_config(graph_client, config),
        token_store=delta_token_store_from_config(config),
        drive_id=config.drive_id,
        graph_client=graph_client,
    )
