"""Microsoft Graph API transport with retry, backoff and error classification."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import httpx

from graph_drive import __version__
from graph_drive.graph.auth import TokenSupplier, token_supplier_from_config
from graph_drive.graph.errors import (
    GraphError,
    GraphRequestError,
    RequestCanceledError,
    build_graph_error,
    is_retryable,
)
from graph_drive.graph.retry import (
    MAX_RETRIES,
    SleepFunc,
    calc_backoff,
    cancellable_sleep,
    check_canceled,
    retry_backoff,
)

if TYPE_CHECKING:
    from graph_drive.config import AppConfig

logger = logging.getLogger(__name__)

# httpx logs every request URL at INFO; pre-authenticated URLs embed credentials.
logging.getLogger("httpx").setLevel(logging.WARNING)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
USER_AGENT = f"graph-drive/{__version__}"
REQUEST_ID_HEADER = "request-id"
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_OCTET_STREAM = "application/octet-stream"

RequestFactory = Callable[[], httpx.Request]


class GraphClient:
    """Authenticated, retrying client for the Microsoft Graph API.

    Holds no mutable state beyond its configuration and the underlying
    ``httpx.Client`` connection pool, so one instance can be shared by
    concurrent callers.
    """

    def __init__(
        self,
        token_supplier: TokenSupplier,
        base_url: str = GRAPH_BASE_URL,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
        sleep_func: SleepFunc = cancellable_sleep,
    ) -> None:
        """Initialise the client.

        Args:
            token_supplier: Source of bearer tokens, called once per attempt.
            base_url: Graph API root, e.g. "https://graph.microsoft.com/v1.0".
            http_client: Optional pre-built httpx client (tests inject one
                backed by ``httpx.MockTransport``).
            timeout: Request timeout in seconds when building the default client.
            sleep_func: Waits between retries; receives the backoff in seconds
                and the caller's cancellation event.
        """
        self._base_url = base_url.rstrip("/")
        self._token_supplier = token_supplier
        self._http = http_client or httpx.Client(timeout=timeout)
        self._sleep = sleep_func

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        """Close the HTTP client."""
        self._http.close()

    def __enter__(self) -> GraphClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def build_request(
        self,
        method: str,
        url: str,
        *,
        content: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Request:
        """Build an unauthenticated request carrying the client's User-Agent.

        Used for pre-authenticated URLs, whose query string already embeds
        short-lived credentials.
        """
        merged = {"User-Agent": USER_AGENT}
        if headers:
            merged.update(headers)
        return self._http.build_request(method, url, content=content, headers=merged)

    def _authenticated_request(
        self,
        method: str,
        url: str,
        content: bytes | Any | None,
        content_type: str | None,
        extra_headers: Mapping[str, str] | None,
    ) -> httpx.Request:
        token = self._token_supplier.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "User-Agent": USER_AGENT,
        }
        if content_type:
            headers["Content-Type"] = content_type
        if extra_headers:
            headers.update(extra_headers)
        return self._http.build_request(method, url, content=content, headers=headers)

    # ------------------------------------------------------------------
    # Transports
    # ------------------------------------------------------------------

    def execute(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> httpx.Response:
        """Perform an authenticated request with automatic retry.

        A fresh token is obtained and a fresh request built for every
        attempt. Failures of the token supplier propagate unchanged.

        Args:
            method: HTTP method.
            path: URL path relative to the base URL (must start with '/').
            json_body: Optional JSON-serializable request body.
            headers: Extra headers merged into every attempt (e.g. Prefer).
            cancel: Optional cancellation event.

        Returns:
            The 2xx response with its body still open; the caller closes it.

        Raises:
            GraphError: Classified terminal HTTP failure.
            GraphRequestError: Network failure after all retries.
            RequestCanceledError: If ``cancel`` fires.
        """
        url = f"{self._base_url}{path}"
        content = json.dumps(json_body).encode("utf-8") if json_body is not None else None
        content_type = CONTENT_TYPE_JSON if content is not None else None

        return self._send_with_retry(
            f"{method} {path}",
            lambda: self._authenticated_request(method, url, content, content_type, headers),
            cancel,
        )

    def execute_preauth(
        self,
        description: str,
        build_request: RequestFactory,
        *,
        cancel: threading.Event | None = None,
    ) -> httpx.Response:
        """Perform a request against a pre-authenticated URL with automatic retry.

        No Authorization header is ever attached. ``build_request`` is called
        on every attempt so request bodies are rebuilt from scratch rather
        than rewound. Only ``description`` is logged, never the URL.

        Returns:
            The 2xx response with its body still open; the caller closes it.
        """
        return self._send_with_retry(description, build_request, cancel)

    def send_raw(
        self,
        method: str,
        path: str,
        content: Any,
        content_type: str = CONTENT_TYPE_OCTET_STREAM,
        *,
        cancel: threading.Event | None = None,
    ) -> httpx.Response:
        """Send an authenticated request with a raw body, exactly once.

        Not retried: a partially consumed body cannot be replayed safely.

        Returns:
            The 2xx response with its body still open; the caller closes it.
        """
        check_canceled(cancel, f"{method} {path}")
        url = f"{self._base_url}{path}"
        request = self._authenticated_request(method, url, content, content_type, None)
        logger.debug(
            "[send_raw] sending raw request; method:%s;path:%s;content_type:%s",
            method,
            path,
            content_type,
        )
        try:
            response = self._http.send(request, stream=True)
        except httpx.TransportError as exc:
            logger.error(
                "[send_raw] raw request failed; method:%s;path:%s;error:%s", method, path, exc
            )
            raise GraphRequestError(f"{method} {path} failed: {exc}") from exc

        if response.is_success:
            return response

        body = drain(response)
        raise build_graph_error(
            response.status_code, body, response.headers.get(REQUEST_ID_HEADER, "")
        )

    def _send_with_retry(
        self,
        description: str,
        make_request: RequestFactory,
        cancel: threading.Event | None,
    ) -> httpx.Response:
        attempt = 0
        while True:
            check_canceled(cancel, description)
            request = make_request()

            try:
                response = self._http.send(request, stream=True)
            except httpx.TransportError as exc:
                if cancel is not None and cancel.is_set():
                    raise RequestCanceledError(f"{description} canceled") from exc
                if attempt >= MAX_RETRIES:
                    logger.error(
                        "[send_with_retry] network failure, retries exhausted;"
                        " request:%s;attempts:%d;error:%s",
                        description,
                        attempt + 1,
                        exc,
                    )
                    raise GraphRequestError(
                        f"{description} failed after {MAX_RETRIES} retries: {exc}"
                    ) from exc
                backoff = calc_backoff(attempt)
                logger.warning(
                    "[send_with_retry] retrying after network error;"
                    " request:%s;attempt:%d;backoff:%.2fs;error:%s",
                    description,
                    attempt + 1,
                    backoff,
                    exc,
                )
                self._sleep(backoff, cancel)
                attempt += 1
                continue

            if response.is_success:
                logger.debug(
                    "[send_with_retry] request succeeded; request:%s;status:%d;request_id:%s",
                    description,
                    response.status_code,
                    response.headers.get(REQUEST_ID_HEADER, ""),
                )
                return response

            # Connections only go back to the pool once the body is consumed.
            body = drain(response)
            request_id = response.headers.get(REQUEST_ID_HEADER, "")

            if is_retryable(response.status_code) and attempt < MAX_RETRIES:
                backoff = retry_backoff(response.status_code, response.headers, attempt)
                logger.warning(
                    "[send_with_retry] retrying after HTTP error;"
                    " request:%s;status:%d;attempt:%d;backoff:%.2fs",
                    description,
                    response.status_code,
                    attempt + 1,
                    backoff,
                )
                self._sleep(backoff, cancel)
                attempt += 1
                continue

            raise self._terminal_error(description, response.status_code, request_id, body, attempt)

    @staticmethod
    def _terminal_error(
        description: str, status_code: int, request_id: str, body: str, attempt: int
    ) -> GraphError:
        if attempt > 0:
            logger.error(
                "[send_with_retry] request failed after retries;"
                " request:%s;status:%d;request_id:%s;attempts:%d",
                description,
                status_code,
                request_id,
                attempt + 1,
            )
        else:
            logger.warning(
                "[send_with_retry] request failed; request:%s;status:%d;request_id:%s",
                description,
                status_code,
                request_id,
            )
        return build_graph_error(status_code, body, request_id)


def drain(response: httpx.Response) -> str:
    """Read the remaining body, close the response and return the body text."""
    try:
        response.read()
        return response.text
    except httpx.HTTPError:
        return "(failed to read response body)"
    finally:
        response.close()


def read_json(response: httpx.Response) -> dict[str, Any]:
    """Read a JSON object body and close the response."""
    try:
        response.read()
        return json.loads(response.content)  # type: ignore[no-any-return]
    finally:
        response.close()


def graph_client_from_config(config: AppConfig) -> GraphClient:
    """Construct a GraphClient from application configuration.

    Args:
        config: Application configuration instance.

    Returns:
        Configured GraphClient instance.
    """
    return GraphClient(
        token_supplier=token_supplier_from_config(config),
        base_url=config.graph_base_url,
        timeout=config.http_timeout_seconds,
    )
