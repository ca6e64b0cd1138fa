"""
OAuth 2.0 loopback callback flow.

This package acquires an OAuth2 access/refresh token for a command-line or
backend process by running the Authorization Code flow against a remote
identity provider, with a short-lived local HTTP listener receiving the
provider's redirect. The token is cached on disk and reused afterwards.

Public API:
    CallbackOptions: Caller-facing configuration
    ProviderConfig: Immutable provider configuration
    TokenData: Token data structure
    TokenStorage: File-based token persistence
    TokenManager: Code exchange and authenticated client creation
    OAuthCallbackServer: Local callback listener
    AuthorizationFlow: One-shot flow orchestrator
    OAuthCoordinator: High-level OAuth interface

Exceptions:
    OAuthCallbackError: Base exception
    ConfigurationError: Invalid redirect URL or credentials
    AuthorizationError: Callback outcome failure
    TokenStorageError: Token file unreadable, malformed or unwritable
"""

from .auth_server import CallbackOutcome, OAuthCallbackServer
from .config import CallbackOptions, Credentials, ProviderConfig, load_provider_config
from .coordinator import OAuthCoordinator
from .exceptions import (
    AuthorizationError,
    CallbackServerError,
    ConfigurationError,
    CredentialsMalformedError,
    CredentialsUnreadableError,
    InvalidRedirectURLError,
    InvalidStateError,
    MissingAuthorizationCodeError,
    OAuthCallbackError,
    ShutdownError,
    TokenExchangeError,
    TokenMalformedError,
    TokenNotAvailableError,
    TokenPersistError,
    TokenStorageError,
    TokenUnreadableError,
    TokenWriteError,
)
from .flow import AuthorizationFlow, AuthorizationResult, FlowState, run_authorization_flow
from .redirect import RedirectTarget, parse_redirect_url
from .token_manager import TokenManager, build_authorization_url, generate_state_token
from .token_storage import TokenData, TokenStorage

__all__ = [
    # Configuration
    "CallbackOptions",
    "Credentials",
    "ProviderConfig",
    "load_provider_config",
    "RedirectTarget",
    "parse_redirect_url",
    # Token Storage
    "TokenData",
    "TokenStorage",
    # Token Manager
    "TokenManager",
    "build_authorization_url",
    "generate_state_token",
    # Callback Server
    "OAuthCallbackServer",
    "CallbackOutcome",
    # Flow
    "AuthorizationFlow",
    "AuthorizationResult",
    "FlowState",
    "run_authorization_flow",
    # Coordinator
    "OAuthCoordinator",
    # Exceptions
    "OAuthCallbackError",
    "ConfigurationError",
    "InvalidRedirectURLError",
    "CredentialsUnreadableError",
    "CredentialsMalformedError",
    "CallbackServerError",
    "AuthorizationError",
    "InvalidStateError",
    "MissingAuthorizationCodeError",
    "TokenExchangeError",
    "TokenPersistError",
    "TokenStorageError",
    "TokenUnreadableError",
    "TokenMalformedError",
    "TokenWriteError",
    "TokenNotAvailableError",
    "ShutdownError",
]
