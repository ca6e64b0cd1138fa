"""Tests for the token manager module."""

import json
import re
from datetime import datetime, timedelta, timezone
from unittest import mock
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session

from oauth_callback.config import ProviderConfig
from oauth_callback.exceptions import TokenExchangeError
from oauth_callback.token_manager import (
    TokenManager,
    build_authorization_url,
    generate_state_token,
)
from oauth_callback.token_storage import TokenData, TokenStorage


class TestStateToken:
    """Tests for generate_state_token."""

    def test_state_token_is_long_and_url_safe(self):
        """State tokens carry at least 256 bits as URL-safe characters."""
        token = generate_state_token()

        assert len(token) >= 43
        assert re.fullmatch(r"[A-Za-z0-9_-]+", token)

    def test_state_tokens_are_unique(self):
        """Every flow gets a fresh state token."""
        assert len({generate_state_token() for _ in range(100)}) == 100


class TestBuildAuthorizationURL:
    """Tests for build_authorization_url."""

    def test_example_scenario(self, provider_config):
        """The authorization URL carries the client, redirect, scope and state."""
        state = generate_state_token()
        url = build_authorization_url(provider_config, state)

        assert url.startswith("https://idp/auth?")
        assert "client_id=cid" in url
        assert "redirect_uri=http%3A%2F%2Flocalhost%3A4567%2Fcallback" in url
        assert "scope=scope.a" in url
        assert "response_type=code" in url

        params = parse_qs(urlsplit(url).query)
        assert params["state"] == [state]
        assert len(params["state"][0]) >= 32

    def test_requests_offline_access_and_forced_consent(self, provider_config):
        """Offline access and re-consent are always requested."""
        params = parse_qs(urlsplit(build_authorization_url(provider_config, "s")).query)

        assert params["access_type"] == ["offline"]
        assert params["approval_prompt"] == ["force"]

    def test_scopes_are_space_joined(self, provider_config):
        """Multiple scopes are sent as one space-separated parameter."""
        config = ProviderConfig(
            client_id="cid",
            client_secret="sec",
            auth_uri="https://idp/auth",
            token_uri="https://idp/token",
            redirect_url="http://localhost:4567/callback",
            scopes=("scope.a", "scope.b"),
        )
        params = parse_qs(urlsplit(build_authorization_url(config, "s")).query)

        assert params["scope"] == ["scope.a scope.b"]

    def test_existing_query_string_is_extended(self):
        """An auth URI that already has a query string gets '&' parameters."""
        config = ProviderConfig(
            client_id="cid",
            client_secret="sec",
            auth_uri="https://idp/auth?tenant=x",
            token_uri="https://idp/token",
            redirect_url="http://localhost:4567/callback",
        )
        url = build_authorization_url(config, "s")

        assert url.startswith("https://idp/auth?tenant=x&client_id=cid")

    def test_secret_is_not_in_url(self, provider_config):
        """The client secret never appears in the authorization URL."""
        url = build_authorization_url(provider_config, "s")
        assert "client_secret" not in url


class TestTokenManager:
    """Tests for TokenManager class."""

    @pytest.fixture
    def storage(self, tmp_path):
        return TokenStorage(str(tmp_path / "token.json"))

    @pytest.fixture
    def token_response(self):
        return {
            "access_token": "new_access_token",
            "refresh_token": "new_refresh_token",
            "token_type": "Bearer",
            "expires_in": 3600,
            "expires_at": 1900000000,
        }

    def test_exchange_code_success(self, provider_config, token_response):
        """exchange_code returns the token from the token endpoint."""
        manager = TokenManager(provider_config)

        with mock.patch.object(
            OAuth2Session, "fetch_token", return_value=token_response
        ) as mock_fetch:
            token = manager.exchange_code("auth_code_123")

        mock_fetch.assert_called_once()
        args, kwargs = mock_fetch.call_args
        assert args[0] == "https://idp/token"
        assert kwargs["code"] == "auth_code_123"
        assert kwargs["redirect_uri"] == "http://localhost:4567/callback"

        assert token.access_token == "new_access_token"
        assert token.refresh_token == "new_refresh_token"
        assert token.expiry is not None

    def test_exchange_code_does_not_save(self, provider_config, storage, token_response):
        """Persisting the exchanged token is left to the caller."""
        manager = TokenManager(provider_config, storage)

        with mock.patch.object(OAuth2Session, "fetch_token", return_value=token_response):
            manager.exchange_code("auth_code_123")

        assert storage.exists() is False

    def test_exchange_code_network_error(self, provider_config):
        """Network failures become TokenExchangeError."""
        manager = TokenManager(provider_config)

        with mock.patch.object(
            OAuth2Session,
            "fetch_token",
            side_effect=requests.ConnectionError("Network error"),
        ):
            with pytest.raises(TokenExchangeError, match="Network error"):
                manager.exchange_code("auth_code_123")

    def test_exchange_code_rejected_by_provider(self, provider_config):
        """OAuth error responses become TokenExchangeError."""
        manager = TokenManager(provider_config)

        with mock.patch.object(
            OAuth2Session,
            "fetch_token",
            side_effect=OAuthError(error="invalid_grant", description="Bad code"),
        ):
            with pytest.raises(TokenExchangeError, match="invalid_grant"):
                manager.exchange_code("auth_code_123")

    def test_exchange_code_invalid_json(self, provider_config):
        """Unparseable responses become TokenExchangeError."""
        manager = TokenManager(provider_config)

        with mock.patch.object(
            OAuth2Session, "fetch_token", side_effect=ValueError("Expecting value")
        ):
            with pytest.raises(TokenExchangeError, match="Invalid response"):
                manager.exchange_code("auth_code_123")

    def test_exchange_code_without_access_token(self, provider_config):
        """A response without an access token is an exchange failure."""
        manager = TokenManager(provider_config)

        with mock.patch.object(
            OAuth2Session, "fetch_token", return_value={"token_type": "Bearer"}
        ):
            with pytest.raises(TokenExchangeError, match="access_token"):
                manager.exchange_code("auth_code_123")

    def test_create_client_shares_provider_config(self, provider_config, token_data):
        """The client uses the same credentials and token endpoint as the exchange."""
        client = TokenManager(provider_config).create_client(token_data)

        assert isinstance(client, requests.Session)
        assert client.client_id == "cid"
        assert client.client_secret == "sec"
        assert client.metadata["token_endpoint"] == "https://idp/token"
        assert client.token["access_token"] == "access_123"
        assert client.token["refresh_token"] == "refresh_456"

    def test_client_attaches_access_token(self, provider_config, token_data):
        """Outgoing requests carry the access token as a Bearer header."""
        sent = []

        def fake_send(adapter, request, **kwargs):
            sent.append(request)
            response = requests.Response()
            response.status_code = 200
            response._content = b"{}"
            response.url = request.url
            response.request = request
            return response

        client = TokenManager(provider_config).create_client(token_data)
        with mock.patch("requests.adapters.HTTPAdapter.send", new=fake_send):
            response = client.get("https://api.example.com/v1/files")

        assert response.status_code == 200
        assert sent[0].headers["Authorization"] == "Bearer access_123"

    def test_refreshed_token_is_persisted(self, provider_config, storage, token_data):
        """Tokens refreshed by the client are written back to storage."""
        client = TokenManager(provider_config, storage).create_client(token_data)

        client.update_token(
            {
                "access_token": "refreshed_access",
                "refresh_token": "refresh_456",
                "token_type": "Bearer",
                "expires_at": 1900000000,
            },
            refresh_token="refresh_456",
        )

        loaded = storage.load()
        assert loaded.access_token == "refreshed_access"
        assert loaded.refresh_token == "refresh_456"

    def test_expired_token_is_refreshed_and_persisted(self, provider_config, storage):
        """An expired token is refreshed on the next request and written back."""
        expired = TokenData(
            access_token="old",
            refresh_token="r1",
            expiry=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        sent = []

        def fake_send(adapter, request, **kwargs):
            sent.append(request)
            response = requests.Response()
            response.status_code = 200
            response.headers["Content-Type"] = "application/json"
            if request.url == "https://idp/token":
                response._content = json.dumps(
                    {"access_token": "new", "token_type": "Bearer", "expires_in": 3600}
                ).encode()
            else:
                response._content = b"{}"
            response.url = request.url
            response.request = request
            return response

        client = TokenManager(provider_config, storage).create_client(expired)
        with mock.patch("requests.adapters.HTTPAdapter.send", new=fake_send):
            response = client.get("https://api.example.com/v1/files")

        assert response.status_code == 200
        assert [r.url for r in sent] == [
            "https://idp/token",
            "https://api.example.com/v1/files",
        ]
        refresh_body = parse_qs(sent[0].body)
        assert refresh_body["grant_type"] == ["refresh_token"]
        assert refresh_body["refresh_token"] == ["r1"]
        assert sent[1].headers["Authorization"] == "Bearer new"

        saved = storage.load()
        assert saved.access_token == "new"
        assert saved.refresh_token == "r1"
        assert saved.is_expired is False

    def test_refreshed_token_without_storage(self, provider_config, token_data):
        """Without storage the refresh hook is a no-op."""
        client = TokenManager(provider_config).create_client(token_data)
        client.update_token({"access_token": "refreshed"}, refresh_token=None)
