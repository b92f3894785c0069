"""Unit tests for the provider token refresh client."""

import json
from dataclasses import dataclass, field
from typing import Any

import pytest
import requests

from session_service.core.models import RefreshOutcome
from session_service.core.refresh_state import advance, issue
from session_service.exceptions import ProviderRefreshError
from session_service.utils.provider_tokens import ERROR_BODY_PREVIEW_CHARS, ProviderConfig, build_refresh_fn, refresh_provider_tokens

CONFIG = ProviderConfig(tenant="ContosoB2C", user_flow="B2C_1_SignIn", client_id="client-id", client_secret="client-secret")


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


@dataclass
class FakeHttp:
    response: Any
    requests: list[dict] = field(default_factory=list)

    def post(self, url: str, **kwargs: Any) -> Any:
        self.requests.append({"url": url, **kwargs})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def test_b2c_endpoint_is_lower_cased() -> None:
    assert CONFIG.resolved_token_endpoint == "https://contosob2c.b2clogin.com/contosob2c.onmicrosoft.com/b2c_1_signin/oauth2/v2.0/token"


def test_explicit_endpoint_overrides_b2c_url() -> None:
    config = ProviderConfig(client_id="c", client_secret="s", token_endpoint="https://login.example.com/token")

    assert config.resolved_token_endpoint == "https://login.example.com/token"
    assert config.is_complete


def test_refresh_posts_form_and_returns_tokens() -> None:
    http = FakeHttp(FakeResponse(200, {"access_token": "at", "id_token": "id", "refresh_token": "rt-new"}))

    tokens = refresh_provider_tokens("rt-old", CONFIG, http=http)

    assert (tokens.access_token, tokens.id_token, tokens.refresh_token) == ("at", "id", "rt-new")
    sent = http.requests[0]
    assert sent["url"] == CONFIG.resolved_token_endpoint
    assert sent["data"] == {
        "client_id": "client-id",
        "client_secret": "client-secret",
        "grant_type": "refresh_token",
        "refresh_token": "rt-old",
        "scope": "openid offline_access profile email",
    }
    assert sent["headers"] == {"Content-Type": "application/x-www-form-urlencoded"}
    assert sent["timeout"] == 10


def test_missing_access_token_raises() -> None:
    http = FakeHttp(FakeResponse(200, {"id_token": "id-only", "refresh_token": "rt-new"}))

    with pytest.raises(ProviderRefreshError, match="missing access_token") as exc_info:
        refresh_provider_tokens("rt-old", CONFIG, http=http)

    assert exc_info.value.status_code == 200


def test_missing_access_token_fails_refresh_without_rotation() -> None:
    http = FakeHttp(FakeResponse(200, {"id_token": "id-only", "refresh_token": "rt-new"}))
    record = issue("user-1", "rt-old", 0)

    advanced, outcome = advance(record, 901_000, build_refresh_fn(CONFIG, http=http))

    assert outcome is RefreshOutcome.REFRESH_FAILED
    assert advanced.token_rotation_count == 0
    assert advanced.provider_refresh_token == "rt-old"
    assert advanced.error.message == "Provider ID token refresh exception"


def test_missing_refresh_token_keeps_current_one() -> None:
    http = FakeHttp(FakeResponse(200, {"access_token": "at", "id_token": "id"}))

    assert refresh_provider_tokens("rt-old", CONFIG, http=http).refresh_token == "rt-old"


def test_non_2xx_raises_with_status_and_body() -> None:
    http = FakeHttp(FakeResponse(400, {"error": "invalid_grant"}))

    with pytest.raises(ProviderRefreshError) as exc_info:
        refresh_provider_tokens("rt-old", CONFIG, http=http)

    assert exc_info.value.status_code == 400
    assert "invalid_grant" in exc_info.value.body
    assert str(exc_info.value).startswith("Token refresh failed: 400")


def test_error_message_quotes_only_a_prefix_of_the_body() -> None:
    page = "<html>" + "x" * 50_000 + "</html>"
    http = FakeHttp(FakeResponse(502, None, text=page))

    with pytest.raises(ProviderRefreshError) as exc_info:
        refresh_provider_tokens("rt-old", CONFIG, http=http)

    assert exc_info.value.body == page
    assert len(str(exc_info.value)) <= len("Token refresh failed: 502 ") + ERROR_BODY_PREVIEW_CHARS


def test_provider_error_page_does_not_bloat_the_session() -> None:
    http = FakeHttp(FakeResponse(502, None, text="x" * 300_000))
    record = issue("user-1", "rt-old", 0)

    advanced, outcome = advance(record, 901_000, build_refresh_fn(CONFIG, http=http))

    assert outcome is RefreshOutcome.REFRESH_FAILED
    assert len(advanced.error.description) <= len("Token refresh failed: 502 ") + ERROR_BODY_PREVIEW_CHARS


def test_malformed_json_raises() -> None:
    http = FakeHttp(FakeResponse(200, None, text="<html>oops</html>"))

    with pytest.raises(ProviderRefreshError, match="malformed JSON"):
        refresh_provider_tokens("rt-old", CONFIG, http=http)


def test_missing_id_token_raises() -> None:
    http = FakeHttp(FakeResponse(200, {"access_token": "at"}))

    with pytest.raises(ProviderRefreshError, match="missing id_token"):
        refresh_provider_tokens("rt-old", CONFIG, http=http)


def test_network_errors_propagate() -> None:
    http = FakeHttp(requests.ConnectionError("connection refused"))

    with pytest.raises(requests.ConnectionError):
        refresh_provider_tokens("rt-old", CONFIG, http=http)


def test_incomplete_config_skips_request() -> None:
    http = FakeHttp(FakeResponse(200, {"id_token": "id"}))

    assert refresh_provider_tokens("rt-old", ProviderConfig(tenant="t", user_flow="f"), http=http) is None
    assert http.requests == []


def test_build_refresh_fn_binds_config() -> None:
    http = FakeHttp(FakeResponse(200, {"access_token": "at", "id_token": "id", "refresh_token": "rt-new"}))
    refresh_fn = build_refresh_fn(CONFIG, http=http)

    assert refresh_fn("rt-old").refresh_token == "rt-new"
    assert http.requests[0]["data"]["refresh_token"] == "rt-old"
