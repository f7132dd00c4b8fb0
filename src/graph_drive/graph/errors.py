"""Error taxonomy for Microsoft Graph drive operations.

HTTP failures are raised as ``GraphError`` subclasses, one per status
classification, so callers dispatch with ``except NotFoundError`` or
``isinstance(exc, GoneError)`` while the instance still carries the status
code, request id and raw body for diagnostics.

"Is an error" and "is worth retrying" are deliberately different sets:
every status >= 500 classifies as ``ServerError``, but only a short explicit
list is retried. 507 (quota exhausted) and friends describe persistent
conditions that a retry cannot fix.
"""

from __future__ import annotations

# 509 Bandwidth Limit Exceeded (SharePoint).
STATUS_BANDWIDTH_EXCEEDED = 509

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504, STATUS_BANDWIDTH_EXCEEDED})


class GraphError(Exception):
    """Raised when the Graph API returns a terminal non-2xx response."""

    def __init__(self, status_code: int, message: str, request_id: str = "") -> None:
        if request_id:
            text = f"Graph API error {status_code} (request-id: {request_id}): {message}"
        else:
            text = f"Graph API error {status_code}: {message}"
        super().__init__(text)
        self.status_code = status_code
        self.message = message
        self.request_id = request_id


class BadRequestError(GraphError):
    """HTTP 400."""


class UnauthorizedError(GraphError):
    """HTTP 401."""


class ForbiddenError(GraphError):
    """HTTP 403."""


class NotFoundError(GraphError):
    """HTTP 404."""


class ConflictError(GraphError):
    """HTTP 409, usually a naming collision."""


class GoneError(GraphError):
    """HTTP 410: the resource (or delta token) no longer exists."""


class RangeNotSatisfiableError(GraphError):
    """HTTP 416: the upload session's accepted ranges diverged from what was sent.

    Re-query the session with ``Uploader.query_upload_session`` and resume
    from the first pending range.
    """


class LockedError(GraphError):
    """HTTP 423."""


class ThrottledError(GraphError):
    """HTTP 429."""


class ServerError(GraphError):
    """Any HTTP status >= 500."""


class DeltaTokenExpiredError(GoneError):
    """HTTP 410 on a delta request: discard the token and restart from scratch."""


class GraphAuthError(Exception):
    """Raised when MSAL token acquisition fails."""


class GraphRequestError(Exception):
    """Raised when a request keeps failing at the network level after all retries."""


class RequestCanceledError(Exception):
    """Raised when the caller's cancellation event fires. Never retried."""


class PaginationExceededError(Exception):
    """Raised when a delta enumeration exceeds the configured page ceiling."""

    def __init__(self, max_pages: int) -> None:
        super().__init__(f"Delta pagination exceeded {max_pages} pages")
        self.max_pages = max_pages


class InvalidDeltaLinkError(ValueError):
    """Raised when a delta token URL does not point at the configured Graph base URL."""


class UnexpectedStatusError(Exception):
    """Raised when a 2xx response has a status the protocol does not allow at that point."""

    def __init__(self, operation: str, status_code: int, body: str = "") -> None:
        super().__init__(f"{operation} returned unexpected status {status_code}: {body}")
        self.operation = operation
        self.status_code = status_code
        self.body = body


class NoDownloadUrlError(ValueError):
    """Raised when an item has no pre-authenticated download URL (folders, packages)."""


_STATUS_SENTINELS: dict[int, type[GraphError]] = {
    400: BadRequestError,
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    410: GoneError,
    416: RangeNotSatisfiableError,
    423: LockedError,
    429: ThrottledError,
}


def classify_status(status_code: int) -> type[GraphError] | None:
    """Map an HTTP status code to its error class.

    Args:
        status_code: HTTP status code of a response.

    Returns:
        The ``GraphError`` subclass for the status, or None for 2xx/3xx and
        4xx codes without a dedicated classification.
    """
    sentinel = _STATUS_SENTINELS.get(status_code)
    if sentinel is not None:
        return sentinel
    if status_code >= 500:
        return ServerError
    return None


def is_retryable(status_code: int) -> bool:
    """Return True if a response with this status is worth retrying."""
    return status_code in RETRYABLE_STATUS_CODES


def build_graph_error(status_code: int, message: str, request_id: str = "") -> GraphError:
    """Instantiate the classified error for a terminal response."""
    error_cls = classify_status(status_code) or GraphError
    return error_cls(status_code, message, request_id)
