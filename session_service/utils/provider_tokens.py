"""Provider token refresh client (Azure AD B2C / Entra ID)."""

import functools
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from session_service import config
from session_service.config import logger
from session_service.core.models import ProviderTokens
from session_service.exceptions import ProviderRefreshError

DEFAULT_SCOPE = "openid offline_access profile email"
# Longest slice of a provider error body quoted in exception messages.
ERROR_BODY_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class ProviderConfig:
    """
    Settings for the provider token endpoint.

    Passed explicitly into the refresh function so the state machine never
    reads the environment.

    Attributes:
        tenant: B2C tenant name (without ``.onmicrosoft.com``).
        user_flow: B2C user flow / policy name.
        client_id: Application (client) ID.
        client_secret: Client secret, sent in the form body.
        scope: Space-separated scopes requested on refresh.
        token_endpoint: Explicit token endpoint; overrides the B2C URL (e.g. for Entra ID).
        timeout_seconds: Timeout for the refresh request.
    """

    tenant: Optional[str] = None
    user_flow: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scope: str = DEFAULT_SCOPE
    token_endpoint: Optional[str] = None
    timeout_seconds: float = 10

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        """Build a provider config from the environment-backed config module."""
        return cls(
            tenant=config.AZURE_AD_B2C_TENANT_ID,
            user_flow=config.AZURE_AD_B2C_USER_FLOW,
            client_id=config.AZURE_AD_B2C_CLIENT_ID,
            client_secret=config.AZURE_AD_B2C_CLIENT_SECRET,
            scope=config.PROVIDER_SCOPE,
            token_endpoint=config.PROVIDER_TOKEN_ENDPOINT,
            timeout_seconds=config.PROVIDER_REFRESH_TIMEOUT_SECONDS,
        )

    @property
    def resolved_token_endpoint(self) -> Optional[str]:
        """Return the token endpoint URL, or None when it cannot be built."""
        if self.token_endpoint:
            return self.token_endpoint
        if not self.tenant or not self.user_flow:
            return None
        # B2C matches tenant and user flow case-insensitively but the issuer URLs are lower-case.
        tenant = self.tenant.lower()
        user_flow = self.user_flow.lower()
        return f"https://{tenant}.b2clogin.com/{tenant}.onmicrosoft.com/{user_flow}/oauth2/v2.0/token"

    @property
    def is_complete(self) -> bool:
        return bool(self.resolved_token_endpoint and self.client_id and self.client_secret)


def _parse_token_response(response: requests.Response, refresh_token: str) -> ProviderTokens:
    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderRefreshError("Token refresh returned malformed JSON", status_code=response.status_code, body=response.text) from exc

    if not isinstance(data, dict) or not isinstance(data.get("id_token"), str):
        raise ProviderRefreshError("Token refresh response is missing id_token", status_code=response.status_code)
    if not isinstance(data.get("access_token"), str):
        raise ProviderRefreshError("Token refresh response is missing access_token", status_code=response.status_code)

    # No refresh_token in the response means the current one stays valid.
    new_refresh_token = data.get("refresh_token") if isinstance(data.get("refresh_token"), str) else refresh_token
    return ProviderTokens(access_token=data["access_token"], id_token=data["id_token"], refresh_token=new_refresh_token)


def refresh_provider_tokens(refresh_token: str, provider_config: ProviderConfig, http: Any = requests) -> Optional[ProviderTokens]:
    """
    Exchange a refresh token for new provider tokens.

    The request is made once with a bounded timeout. Retrying is left to the
    caller; the session state machine deliberately does not.

    Args:
        refresh_token: Current provider refresh token.
        provider_config: Token endpoint settings.
        http: Object exposing ``post`` with the ``requests`` signature.

    Returns:
        New provider tokens, or None when the provider is not configured.

    Raises:
        ProviderRefreshError: When the provider answers non-2xx or with an unusable body.
        requests.RequestException: On network failures and timeouts.
    """
    if not provider_config.is_complete:
        logger.warning("Provider token refresh skipped: missing provider configuration")
        return None

    data = {
        "client_id": provider_config.client_id,
        "client_secret": provider_config.client_secret,
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "scope": provider_config.scope,
    }
    headers = {"Content-Type": "application/x-www-form-urlencoded"}

    response = http.post(provider_config.resolved_token_endpoint, data=data, headers=headers, timeout=provider_config.timeout_seconds)
    if not 200 <= response.status_code < 300:
        logger.error("Failed to refresh provider token", status_code=response.status_code)
        raise ProviderRefreshError(f"Token refresh failed: {response.status_code} {(response.text or '')[:ERROR_BODY_PREVIEW_CHARS]}", status_code=response.status_code, body=response.text)

    return _parse_token_response(response, refresh_token)


def build_refresh_fn(provider_config: ProviderConfig, http: Any = requests) -> Callable[[str], Optional[ProviderTokens]]:
    """Bind a provider config into the one-argument refresh function the state machine expects."""
    return functools.partial(refresh_provider_tokens, provider_config=provider_config, http=http)
