"""Application configuration loaded from environment variables."""

import os
from dataclasses import dataclass

DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_DELTA_CONTAINER = "graph-drive-state"
DEFAULT_DELTA_BLOB_PREFIX = "delta-token/"
DEFAULT_MAX_DELTA_PAGES = 10000
DEFAULT_UPLOAD_CHUNK_SIZE = 10 * 1024 * 1024
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class AppConfig:
    """Centralized application configuration.

    Required fields have no defaults and will cause a KeyError at startup
    if the corresponding environment variable is missing. Transport and
    paging limits have sensible defaults but can be overridden via
    environment variables.
    """

    # Required; no defaults, fail at startup if missing
    client_id: str
    client_secret: str
    tenant_id: str
    drive_id: str
    storage_connection_string: str

    # Domain constants; defaults provided, overridable via env
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL
    delta_container: str = DEFAULT_DELTA_CONTAINER
    delta_blob_prefix: str = DEFAULT_DELTA_BLOB_PREFIX
    max_delta_pages: int = DEFAULT_MAX_DELTA_PAGES
    upload_chunk_size: int = DEFAULT_UPLOAD_CHUNK_SIZE
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS


def load_config() -> AppConfig:
    """Construct an AppConfig from environment variables.

    Required environment variables:
        GD_CLIENT_ID: Azure AD application (client) ID.
        GD_CLIENT_SECRET: Azure AD application client secret.
        GD_TENANT_ID: Azure AD tenant ID.
        GD_DRIVE_ID: ID of the drive to synchronise.
        GD_STORAGE_CONNECTION_STRING: Azure Storage connection string used
            to persist delta tokens.

    Optional environment variables (with defaults):
        GD_GRAPH_BASE_URL: Graph API root (default: https://graph.microsoft.com/v1.0).
        GD_DELTA_CONTAINER: Blob container for delta token storage.
        GD_DELTA_BLOB_PREFIX: Blob path prefix for per-drive delta tokens.
        GD_MAX_DELTA_PAGES: Page ceiling for one delta enumeration (default: 10000).
        GD_UPLOAD_CHUNK_SIZE: Resumable upload chunk size in bytes; must be a
            multiple of 320 KiB (default: 10 MiB).
        GD_HTTP_TIMEOUT_SECONDS: Per-request HTTP timeout (default: 30).

    Returns:
        Configured AppConfig instance.
    """
    return AppConfig(
        client_id=os.environ["GD_CLIENT_ID"],
        client_secret=os.environ["GD_CLIENT_SECRET"],
        tenant_id=os.environ["GD_TENANT_ID"],
        drive_id=os.environ["GD_DRIVE_ID"],
        storage_connection_string=os.environ["GD_STORAGE_CONNECTION_STRING"],
        graph_base_url=os.environ.get("GD_GRAPH_BASE_URL", DEFAULT_GRAPH_BASE_URL),
        delta_container=os.environ.get("GD_DELTA_CONTAINER", DEFAULT_DELTA_CONTAINER),
        delta_blob_prefix=os.environ.get("GD_DELTA_BLOB_PREFIX", DEFAULT_DELTA_BLOB_PREFIX),
        max_delta_pages=int(os.environ.get("GD_MAX_DELTA_PAGES", str(DEFAULT_MAX_DELTA_PAGES))),
        upload_chunk_size=int(
            os.environ.get("GD_UPLOAD_CHUNK_SIZE", str(DEFAULT_UPLOAD_CHUNK_SIZE))
        ),
        http_timeout_seconds=float(
            os.environ.get("GD_HTTP_TIMEOUT_SECONDS", str(DEFAULT_HTTP_TIMEOUT_SECONDS))
        ),
    )
