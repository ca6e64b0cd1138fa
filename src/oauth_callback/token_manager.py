"""
Token manager for the loopback OAuth callback flow.

This module covers the provider-facing side of the flow:
- CSRF state token generation
- Authorization URL construction
- Token exchange (authorization code -> access/refresh tokens)
- Authenticated client creation (attaches and refreshes access tokens)

Token exchange and refresh are delegated to authlib's requests-based
OAuth2Session.
"""

import logging
import secrets
from typing import Optional
from urllib.parse import urlencode

import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session

from .config import ProviderConfig
from .exceptions import TokenExchangeError, TokenStorageError
from .token_storage import TokenData, TokenStorage

logger = logging.getLogger(__name__)

# 32 random bytes, 43 URL-safe characters once encoded
STATE_TOKEN_BYTES = 32

EXCHANGE_TIMEOUT_SECONDS = 30


def generate_state_token() -> str:
    """
    Generate a single-use CSRF state token.

    Returns:
        URL-safe random string carrying 256 bits of entropy
    """
    return secrets.token_urlsafe(STATE_TOKEN_BYTES)


def build_authorization_url(config: ProviderConfig, state: str) -> str:
    """
    Generate the provider authorization URL.

    Offline access and forced re-consent are always requested so the
    provider hands out a refresh token on every authorization.

    Args:
        config: Provider configuration
        state: CSRF state token for this flow

    Returns:
        Complete authorization URL with query parameters
    """
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_url,
        "response_type": "code",
        "scope": " ".join(config.scopes),
        "state": state,
        "access_type": "offline",
        "approval_prompt": "force",
    }
    separator = "&" if "?" in config.auth_uri else "?"
    url = f"{config.auth_uri}{separator}{urlencode(params)}"
    logger.debug(f"Generated authorization URL for client {config.client_id}")
    return url


class TokenManager:
    """
    Exchanges authorization codes and builds authenticated clients.

    Both operations share the same ProviderConfig, so a client refreshes
    tokens against the endpoint and credentials the code was exchanged with.
    """

    def __init__(self, config: ProviderConfig, storage: Optional[TokenStorage] = None):
        """
        Initialize token manager.

        Args:
            config: Provider configuration
            storage: Token storage that refreshed tokens are written back to
        """
        self.config = config
        self.storage = storage

    def _session(self, token: Optional[dict] = None, **kwargs) -> OAuth2Session:
        return OAuth2Session(
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            token_endpoint_auth_method=self.config.token_endpoint_auth_method,
            scope=" ".join(self.config.scopes) or None,
            redirect_uri=self.config.redirect_url,
            token=token,
            token_endpoint=self.config.token_uri,
            **kwargs,
        )

    def exchange_code(self, authorization_code: str) -> TokenData:
        """
        Exchange authorization code for access and refresh tokens.

        The tokens are returned, not saved; persisting them is the caller's
        step so that exchange and persist failures stay distinguishable.

        Args:
            authorization_code: Code received from OAuth callback

        Returns:
            TokenData with access and (usually) refresh tokens

        Raises:
            TokenExchangeError: If exchange fails
        """
        logger.info("Exchanging authorization code for tokens")

        session = self._session()
        try:
            token = session.fetch_token(
                self.config.token_uri,
                code=authorization_code,
                redirect_uri=self.config.redirect_url,
                timeout=EXCHANGE_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            logger.error(f"Network error during token exchange: {e}")
            raise TokenExchangeError(f"Network error during token exchange: {e}") from e
        except OAuthError as e:
            logger.error(f"Token endpoint rejected the authorization code: {e}")
            raise TokenExchangeError(
                f"Token exchange failed: {e}. "
                f"Check that your client_id and client_secret are correct."
            ) from e
        except (KeyError, ValueError) as e:
            logger.error(f"Invalid response from token endpoint: {e}")
            raise TokenExchangeError(f"Invalid response from token endpoint: {e}") from e
        finally:
            session.close()

        try:
            token_data = TokenData.from_oauth2_token(token)
        except TokenStorageError as e:
            logger.error(f"Invalid response from token endpoint: {e}")
            raise TokenExchangeError(f"Invalid response from token endpoint: {e}") from e

        logger.info("Successfully obtained tokens")
        return token_data

    def create_client(self, token: TokenData) -> OAuth2Session:
        """
        Create an HTTP client that authenticates with the given token.

        The returned session attaches the access token to every request and,
        when the token has expired and a refresh token is present, refreshes
        it against the token endpoint first. Refreshed tokens are written
        back to storage when the manager has one.

        Args:
            token: Token to authenticate with

        Returns:
            authlib OAuth2Session (a requests.Session)
        """
        return self._session(
            token=token.to_oauth2_token(),
            update_token=self._persist_refreshed_token,
        )

    def _persist_refreshed_token(self, token: dict, refresh_token=None, access_token=None) -> None:
        """update_token hook for authlib sessions."""
        logger.info("Access token refreshed")
        if self.storage is None:
            return
        try:
            self.storage.save(TokenData.from_oauth2_token(token))
        except TokenStorageError as e:
            # The refreshed token is still usable in memory
            logger.warning(f"Could not persist refreshed token: {e}")
