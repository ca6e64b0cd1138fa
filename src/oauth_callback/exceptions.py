"""
Exception classes for the loopback OAuth callback flow.

This module defines the exception hierarchy for every failure the flow can
report, grouped so callers can tell configuration problems, callback
outcomes and token-store problems apart.
"""


class OAuthCallbackError(Exception):
    """Base exception for all OAuth callback errors."""

    pass


class ConfigurationError(OAuthCallbackError):
    """Configuration error (missing or invalid configuration)."""

    pass


class InvalidRedirectURLError(ConfigurationError):
    """Redirect URL is not a syntactically valid URL."""

    pass


class CredentialsUnreadableError(ConfigurationError):
    """Credentials file could not be opened or read."""

    pass


class CredentialsMalformedError(ConfigurationError):
    """Credentials file does not match the expected client schema."""

    pass


class CallbackServerError(OAuthCallbackError):
    """Callback listener could not be bound or started."""

    pass


class AuthorizationError(OAuthCallbackError):
    """
    Authorization flow error reported by the callback handler.

    Each subclass carries the HTTP status sent back to the browser and a
    short machine-readable error code.
    """

    status_code = 500
    error_code = "authorization_failed"


class InvalidStateError(AuthorizationError):
    """Callback state parameter does not match the flow's state token."""

    status_code = 400
    error_code = "invalid_state"


class MissingAuthorizationCodeError(AuthorizationError):
    """Callback carried no authorization code."""

    status_code = 400
    error_code = "missing_code"


class TokenExchangeError(AuthorizationError):
    """Failed to exchange authorization code for tokens."""

    status_code = 500
    error_code = "token_exchange_failed"


class TokenPersistError(AuthorizationError):
    """Tokens were obtained but could not be written to the token store."""

    status_code = 500
    error_code = "token_persist_failed"


class TokenStorageError(OAuthCallbackError):
    """Token storage operation failed."""

    pass


class TokenUnreadableError(TokenStorageError):
    """Token file does not exist or could not be read."""

    pass


class TokenMalformedError(TokenStorageError):
    """Token file contents are not a valid token record."""

    pass


class TokenWriteError(TokenStorageError):
    """Token file could not be written."""

    pass


class TokenNotAvailableError(OAuthCallbackError):
    """No valid tokens available (need to authorize first)."""

    pass


class ShutdownError(OAuthCallbackError):
    """Callback listener did not stop within its shutdown deadline."""

    pass
