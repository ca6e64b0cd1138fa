"""
Authorization flow orchestration.

This module drives one complete Authorization Code flow:
1. Derives the listener location and builds the provider configuration
2. Generates a CSRF state token
3. Starts the callback server
4. Presents the authorization URL to the user
5. Waits (without timeout) for the callback server's single outcome
6. Shuts the server down within a fixed deadline, whatever the outcome

Nothing is retried; a failed flow is reported and the caller decides
whether to start another one.
"""

import logging
import sys
import webbrowser
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TextIO

from .auth_server import CallbackOutcome, OAuthCallbackServer
from .config import CallbackOptions, ProviderConfig, load_provider_config
from .exceptions import AuthorizationError, OAuthCallbackError, ShutdownError
from .token_manager import TokenManager, build_authorization_url, generate_state_token
from .token_storage import TokenData, TokenStorage

logger = logging.getLogger(__name__)


class FlowState(Enum):
    """Lifecycle states of an AuthorizationFlow."""

    IDLE = "idle"
    SERVER_STARTING = "server_starting"
    AWAITING_CALLBACK = "awaiting_callback"
    FINISHING = "finishing"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


@dataclass
class AuthorizationResult:
    """
    Result of an OAuth authorization flow.

    Attributes:
        success: Whether a token was obtained and saved
        token: Token written to the token store (if successful)
        error: First failure reported by the callback handler (if failed)
        authorization_url: URL the user was asked to visit
        shutdown_error: Listener shutdown problem (logged, never fatal)
    """

    success: bool
    token: Optional[TokenData] = None
    error: Optional[AuthorizationError] = None
    authorization_url: Optional[str] = None
    shutdown_error: Optional[ShutdownError] = None

    def raise_for_error(self) -> None:
        """Raise the captured failure, if any."""
        if self.error is not None:
            raise self.error


class AuthorizationFlow:
    """
    One-shot orchestrator for the loopback Authorization Code flow.

    An instance runs at most once; create a new one for every attempt so
    that state tokens are never shared between flows.

    Example:
        flow = AuthorizationFlow(CallbackOptions(scopes=("openid",)))
        result = flow.run()
        result.raise_for_error()
    """

    def __init__(
        self,
        options: CallbackOptions,
        provider_config: Optional[ProviderConfig] = None,
        token_manager: Optional[TokenManager] = None,
        storage: Optional[TokenStorage] = None,
        url_handler: Optional[Callable[[str], None]] = None,
        output: Optional[TextIO] = None,
    ):
        """
        Initialize the flow.

        Args:
            options: Caller options (redirect URL, paths, scopes, listener)
            provider_config: Pre-built provider configuration (read from
                options.credentials_path when not provided)
            token_manager: Token manager used for the code exchange
            storage: Token storage the token is written to
            url_handler: Called with the authorization URL once the server
                is listening (defaults to printing it)
            output: Stream the default URL handler writes to (default: stderr)
        """
        self.options = options
        self._provider_config = provider_config
        self._token_manager = token_manager
        self.storage = storage or TokenStorage(options.token_path)
        self._url_handler = url_handler or self._present_url
        self._output = output

        self.state = FlowState.IDLE
        self.authorization_url: Optional[str] = None
        self._state_token: Optional[str] = None

    def _transition(self, state: FlowState) -> None:
        logger.debug(f"Authorization flow: {self.state.value} -> {state.value}")
        self.state = state

    def _present_url(self, url: str) -> None:
        """Write the authorization URL for the user, optionally opening a browser."""
        out = self._output or sys.stderr
        print("Authenticate this app by visiting this url:", file=out)
        print(url, file=out, flush=True)

        if self.options.open_browser:
            try:
                webbrowser.open(url)
            except Exception as e:
                logger.warning(f"Could not open browser automatically: {e}")
                print("Please copy the URL above and paste it in your browser.", file=out)

    def run(self) -> AuthorizationResult:
        """
        Run the complete authorization flow.

        Blocks until the user completes (or fails) the browser step.

        Returns:
            AuthorizationResult with the saved token or the failure

        Raises:
            ConfigurationError: If the redirect URL or credentials are invalid
            CallbackServerError: If the listener cannot be bound
            OAuthCallbackError: If the flow instance was already used
        """
        if self.state is not FlowState.IDLE:
            raise OAuthCallbackError("An AuthorizationFlow instance can only run once")

        self._transition(FlowState.SERVER_STARTING)
        try:
            target = self.options.redirect_target
            config = self._provider_config or load_provider_config(
                self.options.credentials_path,
                self.options.redirect_url,
                self.options.scopes,
                token_endpoint_auth_method=self.options.token_endpoint_auth_method,
            )
        except OAuthCallbackError:
            self._transition(FlowState.TERMINATED)
            raise

        token_manager = self._token_manager or TokenManager(config, self.storage)
        self._state_token = generate_state_token()

        server = OAuthCallbackServer(
            target,
            expected_state=self._state_token,
            exchange=token_manager.exchange_code,
            storage=self.storage,
            host=self.options.listen_host,
            ssl_cert_path=self.options.ssl_cert_path,
            ssl_key_path=self.options.ssl_key_path,
        )

        try:
            server.start()
        except OAuthCallbackError:
            self._transition(FlowState.TERMINATED)
            raise

        outcome: Optional[CallbackOutcome] = None
        try:
            self.authorization_url = build_authorization_url(config, self._state_token)
            self._transition(FlowState.AWAITING_CALLBACK)
            self._url_handler(self.authorization_url)

            logger.info("Waiting for OAuth callback")
            outcome = server.wait_for_outcome()
            self._transition(FlowState.FINISHING)
        finally:
            shutdown_error = self._shutdown(server)
            self._transition(FlowState.TERMINATED)

        if outcome.success:
            logger.info("Authorization flow completed successfully")
        else:
            logger.error(f"Authorization flow failed: {outcome.error}")

        return AuthorizationResult(
            success=outcome.success,
            token=outcome.token,
            error=outcome.error,
            authorization_url=self.authorization_url,
            shutdown_error=shutdown_error,
        )

    def _shutdown(self, server: OAuthCallbackServer) -> Optional[ShutdownError]:
        self._transition(FlowState.SHUTTING_DOWN)
        try:
            server.shutdown(self.options.shutdown_timeout)
        except ShutdownError as e:
            logger.warning(f"Server shutdown error: {e}")
            return e
        return None


def run_authorization_flow(
    options: CallbackOptions,
    url_handler: Optional[Callable[[str], None]] = None,
) -> AuthorizationResult:
    """
    Run a fresh authorization flow with the given options.

    Args:
        options: Caller options
        url_handler: Called with the authorization URL (defaults to printing it)

    Returns:
        AuthorizationResult with the saved token or the failure
    """
    return AuthorizationFlow(options, url_handler=url_handler).run()
