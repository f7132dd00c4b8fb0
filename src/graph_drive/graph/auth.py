"""Bearer token suppliers for the Graph transport."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

import msal

from graph_drive.graph.errors import GraphAuthError

if TYPE_CHECKING:
    from graph_drive.config import AppConfig

logger = logging.getLogger(__name__)

GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]
AUTHORITY_BASE_URL = "https://login.microsoftonline.com"


class TokenSupplier(Protocol):
    """Anything that can hand out a currently valid bearer token.

    ``get_token`` may block on its own network I/O (silent refresh). The
    transport calls it once per request attempt and never retries a failure.
    """

    def get_token(self) -> str: ...


class MsalTokenSupplier:
    """Client-credentials token supplier backed by an MSAL confidential client.

    MSAL keeps an in-memory token cache, so repeated calls only hit the
    network when the cached token is about to expire.
    """

    def __init__(self, client_id: str, client_secret: str, tenant_id: str) -> None:
        """Initialise the MSAL confidential client application.

        Args:
            client_id: Azure AD application (client) ID.
            client_secret: Azure AD application client secret.
            tenant_id: Azure AD tenant ID.
        """
        authority = f"{AUTHORITY_BASE_URL}/{tenant_id}"
        self._app = msal.ConfidentialClientApplication(
            client_id=client_id,
            client_credential=client_secret,
            authority=authority,
        )

    def get_token(self) -> str:
        """Acquire a Bearer token using client credentials flow.

        Returns:
            Access token string.

        Raises:
            GraphAuthError: If MSAL cannot acquire a token.
        """
        result: dict[str, Any] = self._app.acquire_token_for_client(scopes=GRAPH_SCOPES) or {}
        if "access_token" not in result:
            error = result.get("error", "unknown_error")
            description = result.get("error_description", "No description provided")
            logger.error("[get_token] MSAL token acquisition failed; error:%s", error)
            raise GraphAuthError(f"Token acquisition failed: {error}: {description}")
        return str(result["access_token"])


def token_supplier_from_config(config: AppConfig) -> MsalTokenSupplier:
    """Construct an MsalTokenSupplier from application configuration."""
    return MsalTokenSupplier(
        client_id=config.client_id,
        client_secret=config.client_secret,
        tenant_id=config.tenant_id,
    )
