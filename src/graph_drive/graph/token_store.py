"""Delta token persistence in Azure Blob Storage."""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import BlobClient, BlobServiceClient

if TYPE_CHECKING:
    from graph_drive.config import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_DELTA_CONTAINER = "graph-drive-state"
DEFAULT_DELTA_BLOB_PREFIX = "delta-token/"


class DeltaTokenStore:
    """Stores the delta link of each drive as a UTF-8 text blob.

    Blobs are named ``<prefix><drive_id>``, so one container can hold the
    state of several drives.
    """

    def __init__(
        self,
        storage_connection_string: str,
        container: str = DEFAULT_DELTA_CONTAINER,
        blob_prefix: str = DEFAULT_DELTA_BLOB_PREFIX,
    ) -> None:
        """Initialise the token store.

        Args:
            storage_connection_string: Azure Storage connection string.
            container: Blob container name for delta token storage.
            blob_prefix: Prefix for token blob paths (e.g. "delta-token/").
        """
        self._blob_service = BlobServiceClient.from_connection_string(storage_connection_string)
        self._container = container
        self._blob_prefix = blob_prefix

    def _blob_client(self, drive_id: str) -> BlobClient:
        container_client = self._blob_service.get_container_client(self._container)
        return container_client.get_blob_client(f"{self._blob_prefix}{drive_id}")

    def get_token(self, drive_id: str) -> str | None:
        """Read the persisted delta token of a drive.

        Returns:
            The stored token, or None if none has been saved yet (first run).
        """
        try:
            data = self._blob_client(drive_id).download_blob().readall()
        except ResourceNotFoundError:
            logger.info("[get_token] no delta token found, first run; drive_id:%s", drive_id)
            return None
        return data.decode("utf-8")

    def save_token(self, drive_id: str, token: str) -> None:
        """Write the delta token of a drive, creating the container if needed."""
        container_client = self._blob_service.get_container_client(self._container)
        # Container already exists in the steady state.
        with contextlib.suppress(Exception):
            container_client.create_container()

        blob_client = container_client.get_blob_client(f"{self._blob_prefix}{drive_id}")
        blob_client.upload_blob(token.encode("utf-8"), overwrite=True)
        logger.info("[save_token] saved delta token; drive_id:%s", drive_id)

    def clear_token(self, drive_id: str) -> None:
        """Forget the delta token of a drive so the next cycle starts from scratch."""
        try:
            self._blob_client(drive_id).delete_blob()
        except ResourceNotFoundError:
            return
        logger.info("[clear_token] cleared delta token; drive_id:%s", drive_id)


def delta_token_store_from_config(config: AppConfig) -> DeltaTokenStore:
    """Construct a DeltaTokenStore from application configuration."""
    return DeltaTokenStore(
        storage_connection_string=config.storage_connection_string,
        container=config.delta_container,
        blob_prefix=config.delta_blob_prefix,
    )
