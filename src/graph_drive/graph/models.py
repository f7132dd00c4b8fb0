"""Data models for Microsoft Graph drive items, delta pages and upload sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

# Graph API JSON field names
FIELD_ID = "id"
FIELD_NAME = "name"
FIELD_SIZE = "size"
FIELD_ETAG = "eTag"
FIELD_CTAG = "cTag"
FIELD_FILE = "file"
FIELD_FOLDER = "folder"
FIELD_ROOT = "root"
FIELD_DELETED = "deleted"
FIELD_PACKAGE = "package"
FIELD_PARENT_REFERENCE = "parentReference"
FIELD_DRIVE_ID = "driveId"
FIELD_MIME_TYPE = "mimeType"
FIELD_HASHES = "hashes"
FIELD_QUICK_XOR_HASH = "quickXorHash"
FIELD_SHA1_HASH = "sha1Hash"
FIELD_SHA256_HASH = "sha256Hash"
FIELD_CHILD_COUNT = "childCount"
FIELD_CREATED = "createdDateTime"
FIELD_LAST_MODIFIED = "lastModifiedDateTime"
FIELD_FILE_SYSTEM_INFO = "fileSystemInfo"
FIELD_DOWNLOAD_URL = "@microsoft.graph.downloadUrl"
FIELD_CONFLICT_BEHAVIOR = "@microsoft.graph.conflictBehavior"
FIELD_UPLOAD_URL = "uploadUrl"
FIELD_EXPIRATION = "expirationDateTime"
FIELD_NEXT_EXPECTED_RANGES = "nextExpectedRanges"

# OData response keys
ODATA_DELTA_LINK = "@odata.deltaLink"
ODATA_NEXT_LINK = "@odata.nextLink"
ODATA_VALUE = "value"

# Child count is not present in the API response (files, deleted folders).
CHILD_COUNT_UNKNOWN = -1

# Personal accounts sometimes return 15-character drive IDs.
DRIVE_ID_MIN_LENGTH = 16

# Timestamps outside this range are replaced with the current time.
MIN_VALID_YEAR = 1970
MAX_VALID_YEAR = 2100


@dataclass(frozen=True)
class Item:
    """A normalized drive item (file, folder or package).

    Drive IDs are lowercased and zero-padded. ``download_url`` is a
    pre-authenticated, short-lived URL and is excluded from ``repr()`` so it
    never ends up in logs.
    """

    id: str
    name: str
    drive_id: str = ""
    parent_id: str = ""
    parent_drive_id: str = ""
    size: int = 0
    etag: str = ""
    ctag: str = ""
    is_folder: bool = False
    is_root: bool = False
    is_deleted: bool = False
    is_package: bool = False
    mime_type: str = ""
    quick_xor_hash: str = ""  # base64
    sha1_hash: str = ""  # hex, personal accounts only
    sha256_hash: str = ""  # hex, business accounts, sometimes
    created_at: datetime | None = None
    modified_at: datetime | None = None
    child_count: int = CHILD_COUNT_UNKNOWN
    download_url: str = field(default="", repr=False)

    @property
    def has_hashes(self) -> bool:
        return bool(self.quick_xor_hash or self.sha1_hash or self.sha256_hash)


@dataclass
class DeltaPage:
    """One page of delta results.

    At most one of ``next_link`` (more pages pending) and ``delta_link``
    (terminal page; token for the next sync cycle) is non-empty.
    """

    items: list[Item] = field(default_factory=list)
    next_link: str = ""
    delta_link: str = ""


@dataclass(frozen=True)
class UploadSession:
    """A resumable upload session addressed by a pre-authenticated URL."""

    upload_url: str = field(repr=False)
    expiration_time: datetime | None = None


@dataclass(frozen=True)
class UploadSessionStatus:
    """Byte ranges an upload session has not acknowledged yet.

    Ranges use the server's notation: ``"start-end"`` or open-ended ``"start-"``.
    """

    upload_url: str = field(repr=False)
    expiration_time: datetime | None = None
    next_expected_ranges: list[str] = field(default_factory=list)


def normalize_drive_id(raw: str) -> str:
    """Lowercase a drive ID and left-pad short IDs with zeros.

    The Graph API is inconsistent about drive ID casing across endpoints,
    and personal accounts sometimes drop a leading zero. Empty input stays
    empty (unknown drive).
    """
    if not raw:
        return ""
    lower = raw.lower()
    return lower.rjust(DRIVE_ID_MIN_LENGTH, "0")


def parse_graph_datetime(raw: str | None) -> datetime | None:
    """Parse an ISO-8601 Graph timestamp, returning None if it is missing or malformed."""
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_graph_datetime(value: datetime) -> str:
    """Format a datetime as the RFC 3339 UTC string Graph expects for fileSystemInfo."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _validated_timestamp(
    raw: str | None, field_name: str, item_id: str, is_deleted: bool
) -> datetime:
    # Deleted items routinely have empty timestamps, so those anomalies are DEBUG only.
    log = logger.debug if is_deleted else logger.warning
    parsed = parse_graph_datetime(raw)
    if parsed is None:
        log(
            "[item_from_response] missing or invalid timestamp, using current time;"
            " field:%s;item_id:%s;raw:%s",
            field_name,
            item_id,
            raw,
        )
        return datetime.now(timezone.utc)
    if not MIN_VALID_YEAR <= parsed.year <= MAX_VALID_YEAR:
        log(
            "[item_from_response] timestamp out of valid range, using current time;"
            " field:%s;item_id:%s;raw:%s",
            field_name,
            item_id,
            raw,
        )
        return datetime.now(timezone.utc)
    return parsed


def item_from_response(raw: dict[str, Any]) -> Item:
    """Map a raw Graph API driveItem dict to an Item.

    Facets are optional at every level; absent ones leave the defaults in
    place. Both ``drive_id`` and ``parent_drive_id`` come from
    ``parentReference.driveId`` since the API only reports one drive per item.

    Args:
        raw: Decoded driveItem JSON object.

    Returns:
        The normalized Item.
    """
    item_id = raw.get(FIELD_ID, "")
    parent_ref = raw.get(FIELD_PARENT_REFERENCE) or {}
    file_facet = raw.get(FIELD_FILE) or {}
    hashes = file_facet.get(FIELD_HASHES) or {}
    folder_facet = raw.get(FIELD_FOLDER)
    is_deleted = raw.get(FIELD_DELETED) is not None
    drive_id = normalize_drive_id(parent_ref.get(FIELD_DRIVE_ID, ""))

    child_count = CHILD_COUNT_UNKNOWN
    if folder_facet is not None:
        child_count = folder_facet.get(FIELD_CHILD_COUNT, 0)

    return Item(
        id=item_id,
        name=raw.get(FIELD_NAME, ""),
        drive_id=drive_id,
        parent_id=parent_ref.get(FIELD_ID, ""),
        parent_drive_id=drive_id,
        size=raw.get(FIELD_SIZE, 0),
        etag=raw.get(FIELD_ETAG, ""),
        ctag=raw.get(FIELD_CTAG, ""),
        is_folder=folder_facet is not None,
        is_root=raw.get(FIELD_ROOT) is not None,
        is_deleted=is_deleted,
        is_package=raw.get(FIELD_PACKAGE) is not None,
        mime_type=file_facet.get(FIELD_MIME_TYPE, ""),
        quick_xor_hash=hashes.get(FIELD_QUICK_XOR_HASH, ""),
        sha1_hash=hashes.get(FIELD_SHA1_HASH, ""),
        sha256_hash=hashes.get(FIELD_SHA256_HASH, ""),
        created_at=_validated_timestamp(raw.get(FIELD_CREATED), FIELD_CREATED, item_id, is_deleted),
        modified_at=_validated_timestamp(
            raw.get(FIELD_LAST_MODIFIED), FIELD_LAST_MODIFIED, item_id, is_deleted
        ),
        child_count=child_count,
        download_url=raw.get(FIELD_DOWNLOAD_URL, ""),
    )


def upload_session_from_response(raw: dict[str, Any]) -> UploadSession:
    """Map a createUploadSession response to an UploadSession."""
    expiration = parse_graph_datetime(raw.get(FIELD_EXPIRATION))
    if expiration is None:
        logger.warning(
            "[upload_session_from_response] invalid session expiration; raw:%s",
            raw.get(FIELD_EXPIRATION),
        )
    return UploadSession(upload_url=raw.get(FIELD_UPLOAD_URL, ""), expiration_time=expiration)


def upload_session_status_from_response(raw: dict[str, Any]) -> UploadSessionStatus:
    """Map an upload-session status response to an UploadSessionStatus."""
    expiration = parse_graph_datetime(raw.get(FIELD_EXPIRATION))
    if expiration is None:
        logger.warning(
            "[upload_session_status_from_response] invalid session expiration; raw:%s",
            raw.get(FIELD_EXPIRATION),
        )
    return UploadSessionStatus(
        upload_url=raw.get(FIELD_UPLOAD_URL, ""),
        expiration_time=expiration,
        next_expected_ranges=list(raw.get(FIELD_NEXT_EXPECTED_RANGES) or []),
    )
