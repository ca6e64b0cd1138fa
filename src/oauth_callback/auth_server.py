"""
OAuth callback server for the loopback authorization flow.

This module provides the short-lived HTTP listener that receives the
provider's redirect. It validates the single callback request, exchanges
the authorization code, persists the resulting token and reports exactly
one outcome to whoever is waiting on it.

IMPORTANT: This server is designed for single-user, interactive use. It
runs only for the duration of one authorization flow.
"""

import logging
import queue
import secrets
import ssl
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from flask import Flask, Response, request
from werkzeug.serving import WSGIRequestHandler, make_server
from werkzeug.wsgi import ClosingIterator

from .exceptions import (
    AuthorizationError,
    CallbackServerError,
    InvalidStateError,
    MissingAuthorizationCodeError,
    ShutdownError,
    TokenExchangeError,
    TokenPersistError,
    TokenStorageError,
)
from .redirect import RedirectTarget, listen_address
from .token_storage import TokenData, TokenStorage

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = (
    "Authentication successful! You can close this tab and return to the console."
)


class QuietRequestHandler(WSGIRequestHandler):
    """Request handler without per-request access logging."""

    def log_request(self, code="-", size="-") -> None:
        pass


@dataclass
class CallbackOutcome:
    """
    Single outcome reported by the callback handler.

    Attributes:
        token: Token obtained and persisted (on success)
        error: Failure reported by the handler (on failure)
    """

    token: Optional[TokenData] = None
    error: Optional[AuthorizationError] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.token is not None


class OAuthCallbackServer:
    """
    Local HTTP server to handle the OAuth callback.

    The server:
    1. Binds the redirect URL's host and port and routes only its path
    2. Validates the state and code of the first callback request
    3. Exchanges the code and persists the token
    4. Reports one outcome through a single-slot queue
    5. Keeps listening, but answers later callbacks with 409

    Security:
    - State token compared in constant time
    - No exchange is attempted for a request with a bad state
    - Single-use (one outcome per server instance)
    """

    def __init__(
        self,
        target: RedirectTarget,
        expected_state: str,
        exchange: Callable[[str], TokenData],
        storage: TokenStorage,
        host: Optional[str] = None,
        ssl_cert_path: Optional[str] = None,
        ssl_key_path: Optional[str] = None,
    ):
        """
        Initialize callback server.

        Args:
            target: Port and path derived from the redirect URL
            expected_state: CSRF state token generated for this flow
            exchange: Callable turning an authorization code into a token
            storage: Token storage the token is persisted to
            host: Interface to bind (derived from the redirect URL host
                when not given)
            ssl_cert_path: TLS certificate (https redirect URLs only)
            ssl_key_path: TLS private key (https redirect URLs only)
        """
        if not expected_state:
            raise ValueError("expected_state cannot be empty")

        self.target = target
        self.host = host or listen_address(target)
        self.ssl_cert_path = ssl_cert_path
        self.ssl_key_path = ssl_key_path
        self._expected_state = expected_state
        self._exchange = exchange
        self._storage = storage

        self._outcomes: "queue.Queue[CallbackOutcome]" = queue.Queue(maxsize=1)
        self._handler_lock = threading.Lock()
        self._reported = False

        self._server = None
        self._thread: Optional[threading.Thread] = None
        self._in_flight = 0
        self._requests_done = threading.Condition()

        self.app = Flask(__name__)
        self.app.logger.setLevel(logging.WARNING)  # Suppress Flask logs
        self.app.add_url_rule(
            target.path,
            "oauth_callback",
            self._handle_callback,
            methods=["GET"],
        )

    @property
    def port(self) -> int:
        """Port actually bound (differs from the target only for port 0)."""
        if self._server is not None:
            return self._server.server_port
        return self.target.port

    @property
    def outcome_reported(self) -> bool:
        return self._reported

    def _report(self, outcome: CallbackOutcome) -> None:
        # Callers hold _handler_lock, so this runs at most once
        self._reported = True
        self._outcomes.put_nowait(outcome)

    def _fail(self, error: AuthorizationError) -> Response:
        logger.error(f"OAuth callback failed ({error.error_code}): {error}")
        self._report(CallbackOutcome(error=error))
        return Response(
            f"{error}\n",
            status=error.status_code,
            content_type="text/plain; charset=utf-8",
        )

    def _handle_callback(self) -> Response:
        """Handle OAuth callback from the provider."""
        # werkzeug also routes HEAD to GET rules; only a GET may consume the flow
        if request.method != "GET":
            return Response(
                "Method not allowed\n",
                status=405,
                headers={"Allow": "GET"},
                content_type="text/plain; charset=utf-8",
            )

        with self._handler_lock:
            if self._reported:
                logger.warning("Ignoring callback received after the flow finished")
                return Response(
                    "Authorization already completed\n",
                    status=409,
                    content_type="text/plain; charset=utf-8",
                )

            logger.info("Received OAuth callback")

            state = request.args.get("state", "")
            if not secrets.compare_digest(
                state.encode("utf-8"), self._expected_state.encode("utf-8")
            ):
                return self._fail(InvalidStateError("Invalid state token"))

            code = request.args.get("code", "")
            if not code:
                error = request.args.get("error")
                if error:
                    description = request.args.get("error_description", "Unknown error")
                    return self._fail(
                        MissingAuthorizationCodeError(
                            f"Code not found: provider returned {error}: {description}"
                        )
                    )
                return self._fail(MissingAuthorizationCodeError("Code not found"))

            try:
                token = self._exchange(code)
            except TokenExchangeError as e:
                return self._fail(e)
            except Exception as e:
                logger.exception("Unexpected error during token exchange")
                failure = TokenExchangeError(f"Failed to exchange token: {e}")
                failure.__cause__ = e
                return self._fail(failure)

            try:
                self._storage.save(token)
            except TokenStorageError as e:
                failure = TokenPersistError(f"Failed to write token file: {e}")
                failure.__cause__ = e
                return self._fail(failure)

            logger.info("Authorization code exchanged and token saved")
            self._report(CallbackOutcome(token=token))
            return Response(
                SUCCESS_MESSAGE,
                status=200,
                content_type="text/plain; charset=utf-8",
            )

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.target.is_https:
            return None

        if not (self.ssl_cert_path and self.ssl_key_path):
            logger.warning(
                "Redirect URL uses https but no TLS certificate is configured; "
                "serving plain HTTP"
            )
            return None

        cert_path = Path(self.ssl_cert_path)
        key_path = Path(self.ssl_key_path)

        if not cert_path.exists():
            raise CallbackServerError(f"SSL certificate not found at {cert_path}")

        if not key_path.exists():
            raise CallbackServerError(f"SSL key not found at {key_path}")

        try:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.load_cert_chain(str(cert_path), str(key_path))
        except (ssl.SSLError, OSError) as e:
            raise CallbackServerError(f"Could not load TLS certificate: {e}") from e

        logger.info(f"Using SSL certificate: {cert_path}")
        return context

    def _tracked_app(self, environ, start_response):
        """WSGI entry point that counts requests until their response is sent."""
        with self._requests_done:
            self._in_flight += 1
        try:
            body = self.app(environ, start_response)
        except Exception:
            self._request_finished()
            raise
        # werkzeug closes the body after the last byte is written
        return ClosingIterator(body, self._request_finished)

    def _request_finished(self) -> None:
        with self._requests_done:
            self._in_flight -= 1
            self._requests_done.notify_all()

    def _drain_requests(self, timeout: float) -> bool:
        with self._requests_done:
            return self._requests_done.wait_for(
                lambda: self._in_flight == 0, timeout=max(timeout, 0)
            )

    def start(self) -> None:
        """
        Bind the listener and serve it from a background thread.

        Binding happens before this method returns, so a port that is
        already taken fails here rather than leaving the caller waiting.

        Raises:
            CallbackServerError: If the listener cannot be bound
        """
        if self._server is not None:
            raise CallbackServerError("Callback server already started")

        ssl_context = self._ssl_context()

        try:
            self._server = make_server(
                self.host,
                self.target.port,
                self._tracked_app,
                threaded=True,
                request_handler=QuietRequestHandler,
                ssl_context=ssl_context,
            )
        except (OSError, SystemExit) as e:
            # werkzeug exits instead of raising on some bind failures
            logger.error(f"Could not bind callback server on port {self.target.port}: {e}")
            raise CallbackServerError(
                f"Could not bind callback server to {self.host}:{self.target.port}: {e}"
            ) from e

        # Request threads are drained by shutdown() within its deadline
        self._server.block_on_close = False

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="oauth-callback-server",
            daemon=True,
        )
        self._thread.start()

        logger.info(
            f"Starting OAuth callback server on {self.host}:{self.port} "
            f"(path {self.target.path})"
        )

    def wait_for_outcome(self, timeout: Optional[float] = None) -> CallbackOutcome:
        """
        Block until the handler reports its outcome.

        Args:
            timeout: Seconds to wait (None waits indefinitely)

        Returns:
            The single CallbackOutcome of this server

        Raises:
            queue.Empty: If a timeout was given and no outcome arrived
        """
        return self._outcomes.get(timeout=timeout)

    def shutdown(self, timeout: float) -> None:
        """
        Stop accepting connections, drain in-flight requests and release
        the listening socket.

        The serve loop and the requests still being answered (typically the
        callback's own response page) share one deadline.

        Args:
            timeout: Seconds allowed for the whole shutdown

        Raises:
            ShutdownError: If the serve loop did not stop or requests were
                still in flight when the deadline passed (the socket is
                closed regardless)
        """
        server = self._server
        if server is None:
            return

        logger.info("OAuth callback server shutting down")
        deadline = time.monotonic() + timeout
        stopper = threading.Thread(target=server.shutdown, daemon=True)
        stopper.start()
        stopper.join(timeout)
        stopped = not stopper.is_alive()
        drained = stopped and self._drain_requests(deadline - time.monotonic())

        server.server_close()
        self._server = None

        if not stopped:
            raise ShutdownError(
                f"Callback server did not stop within {timeout:.1f}s"
            )

        if not drained:
            raise ShutdownError(
                f"Callback requests still in flight after {timeout:.1f}s"
            )

        if self._thread is not None:
            self._thread.join(max(deadline - time.monotonic(), 0))
        logger.info("OAuth callback server stopped")
