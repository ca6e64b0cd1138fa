"""
OAuth coordinator for high-level OAuth operations.

This module provides the main interface for applications: hand it the
options, ask for a client, and it either reuses the cached token or runs
the interactive authorization flow first.
"""

import logging
from typing import Callable, Optional

from authlib.integrations.requests_client import OAuth2Session

from .config import CallbackOptions, ProviderConfig, load_provider_config
from .exceptions import TokenNotAvailableError, TokenStorageError
from .flow import AuthorizationFlow, AuthorizationResult
from .token_manager import TokenManager
from .token_storage import TokenData, TokenStorage

logger = logging.getLogger(__name__)


class OAuthCoordinator:
    """
    High-level coordinator for OAuth operations.

    This is the main interface that applications should use. It handles the
    token lifecycle on disk and runs the authorization flow when no usable
    token is cached.

    Example:
        coordinator = OAuthCoordinator(CallbackOptions(scopes=("scope.a",)))
        client = coordinator.get_client()
        response = client.get("https://api.example.com/v1/me")
    """

    def __init__(
        self,
        options: Optional[CallbackOptions] = None,
        url_handler: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize OAuth coordinator.

        Args:
            options: Caller options (loads from environment if not provided)
            url_handler: Called with the authorization URL when a flow runs
                (defaults to printing it to stderr)
        """
        self.options = options or CallbackOptions.from_env()
        self.storage = TokenStorage(self.options.token_path)
        self.url_handler = url_handler

    def provider_config(self) -> ProviderConfig:
        """
        Build the provider configuration from the credentials file.

        Raises:
            CredentialsUnreadableError: If the credentials file cannot be read
            CredentialsMalformedError: If the credentials file is invalid
        """
        return load_provider_config(
            self.options.credentials_path,
            self.options.redirect_url,
            self.options.scopes,
            token_endpoint_auth_method=self.options.token_endpoint_auth_method,
        )

    def get_client(self) -> OAuth2Session:
        """
        Get an HTTP client authenticated with the cached or a fresh token.

        A readable cached token is used as-is (the client refreshes it when
        needed). Otherwise the authorization flow runs, the token it saved is
        read back, and the client is built from that.

        Returns:
            authlib OAuth2Session that attaches the access token to requests

        Raises:
            ConfigurationError: If the redirect URL or credentials are invalid
            CallbackServerError: If the callback listener cannot be bound
            AuthorizationError: If the authorization flow fails
            TokenStorageError: If the freshly saved token cannot be read back
        """
        config = self.provider_config()
        token_manager = TokenManager(config, self.storage)

        token = self._load_cached_token()
        if token is None:
            logger.info("No valid tokens found, starting authorization flow")
            self._run_flow(config, token_manager).raise_for_error()
            token = self.storage.load()

        return token_manager.create_client(token)

    def ensure_authorized(self, force: bool = False) -> TokenData:
        """
        Ensure a token is cached, running the flow if needed.

        Args:
            force: Run the flow even if a token is cached

        Returns:
            The cached or newly obtained token

        Raises:
            AuthorizationError: If the authorization flow fails
        """
        if not force:
            token = self._load_cached_token()
            if token is not None:
                logger.info("Already authorized")
                return token

        return self.authenticate()

    def authenticate(self) -> TokenData:
        """
        Run the authorization flow unconditionally.

        Returns:
            Token obtained and saved by the flow

        Raises:
            ConfigurationError: If the redirect URL or credentials are invalid
            CallbackServerError: If the callback listener cannot be bound
            AuthorizationError: If the authorization flow fails
        """
        config = self.provider_config()
        result = self._run_flow(config, TokenManager(config, self.storage))
        result.raise_for_error()
        logger.info("Authorization complete! Tokens saved successfully.")
        return result.token

    def _run_flow(self, config: ProviderConfig, token_manager: TokenManager) -> AuthorizationResult:
        flow = AuthorizationFlow(
            self.options,
            provider_config=config,
            token_manager=token_manager,
            storage=self.storage,
            url_handler=self.url_handler,
        )
        return flow.run()

    def _load_cached_token(self) -> Optional[TokenData]:
        """
        Load the cached token, treating store errors as "no token".

        Returns:
            TokenData if a readable token is cached, None otherwise
        """
        try:
            return self.storage.load()
        except TokenStorageError as e:
            if self.storage.exists():
                logger.warning(f"Ignoring unusable token file, will re-authorize: {e}")
            else:
                logger.debug(f"No cached token: {e}")
            return None

    def get_access_token(self) -> str:
        """
        Get the cached access token.

        No refresh happens here; use get_client() for requests that should
        survive token expiry.

        Returns:
            Access token string

        Raises:
            TokenNotAvailableError: If no token is cached
        """
        token = self._load_cached_token()
        if token is None:
            raise TokenNotAvailableError(
                "No tokens available. Run authorization flow first."
            )
        return token.access_token

    def get_authorization_header(self) -> dict:
        """
        Get Authorization header dict for API requests.

        Returns:
            Dict with Authorization header: {"Authorization": "Bearer <token>"}

        Raises:
            TokenNotAvailableError: If not authorized
        """
        token = self.get_access_token()
        return {"Authorization": f"Bearer {token}"}

    def is_authorized(self) -> bool:
        """
        Check if a token is cached.

        Returns:
            True if a readable token is cached, False otherwise
        """
        return self._load_cached_token() is not None

    def get_status(self) -> dict:
        """
        Get current authorization status for diagnostics.

        Returns:
            Dictionary with status information including:
            - authorized: bool
            - token_file: str
            - expired: bool (if authorized)
            - expires_at: ISO timestamp or None (if authorized)
            - has_refresh_token: bool (if authorized)
            - scope: str or None (if authorized)
            - message: str (if not authorized)
        """
        token = self._load_cached_token()
        status = {"token_file": str(self.storage.token_file)}

        if token is None:
            status.update({"authorized": False, "message": "No tokens stored"})
            return status

        status.update(
            {
                "authorized": True,
                "expired": token.is_expired,
                "expires_at": token.expiry.isoformat() if token.expiry else None,
                "has_refresh_token": bool(token.refresh_token),
                "scope": token.scope,
            }
        )
        return status

    def revoke(self) -> bool:
        """
        Revoke current authorization locally.

        This deletes the cached token file. It does NOT revoke the tokens
        at the provider.

        Returns:
            True if a token file was deleted
        """
        deleted = self.storage.delete()
        if deleted:
            logger.info("Authorization revoked locally. Re-authorization required.")
        return deleted
