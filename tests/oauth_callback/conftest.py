"""Pytest fixtures shared by the OAuth callback tests."""

import json
import socket
from datetime import datetime, timedelta, timezone

import pytest

from oauth_callback.config import CallbackOptions, ProviderConfig
from oauth_callback.token_storage import TokenData


@pytest.fixture
def credentials_file(tmp_path):
    """Write a valid credentials file and return its path."""
    path = tmp_path / "credentials.json"
    path.write_text(
        json.dumps(
            {
                "web": {
                    "client_id": "cid",
                    "client_secret": "sec",
                    "auth_uri": "https://idp/auth",
                    "token_uri": "https://idp/token",
                    "redirect_uris": ["http://localhost:4567/callback"],
                }
            }
        )
    )
    return path


@pytest.fixture
def provider_config():
    """Create a test provider config."""
    return ProviderConfig(
        client_id="cid",
        client_secret="sec",
        auth_uri="https://idp/auth",
        token_uri="https://idp/token",
        redirect_url="http://localhost:4567/callback",
        scopes=("scope.a",),
    )


@pytest.fixture
def token_data():
    """Create valid token data (not expired)."""
    return TokenData(
        access_token="access_123",
        token_type="Bearer",
        refresh_token="refresh_456",
        expiry=(datetime.now(timezone.utc) + timedelta(hours=1)).replace(microsecond=0),
    )


@pytest.fixture
def free_port():
    """Find a loopback port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def options(tmp_path, credentials_file, free_port):
    """Create options pointing at temporary files and a free port."""
    return CallbackOptions(
        redirect_url=f"http://localhost:{free_port}/callback",
        token_path=str(tmp_path / "token.json"),
        credentials_path=str(credentials_file),
        scopes=("scope.a",),
        shutdown_timeout=5.0,
    )
