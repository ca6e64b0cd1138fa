"""
Configuration for the loopback OAuth callback flow.

This module provides two layers of configuration:

- CallbackOptions: the caller-facing options (redirect URL, token path,
  credentials path, scopes and listener settings) with documented defaults,
  loadable from environment variables or provided programmatically.
- ProviderConfig: the immutable authorization/token-exchange configuration
  built fresh for each flow from the client credentials file.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel, Field, ValidationError

from .exceptions import (
    ConfigurationError,
    CredentialsMalformedError,
    CredentialsUnreadableError,
)
from .redirect import RedirectTarget, parse_redirect_url

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_URL = "http://localhost:4567/callback"
DEFAULT_TOKEN_PATH = "./token.json"
DEFAULT_CREDENTIALS_PATH = "./credentials.json"
DEFAULT_SHUTDOWN_TIMEOUT = 10.0

TOKEN_ENDPOINT_AUTH_METHODS = ("client_secret_basic", "client_secret_post")


def normalize_scopes(scopes: Optional[Iterable[str]]) -> tuple[str, ...]:
    """
    Normalize requested scopes to an ordered, duplicate-free tuple.

    Args:
        scopes: Scope strings in request order (None means no scopes)

    Returns:
        Tuple of scopes, first occurrence wins, blanks dropped
    """
    if scopes is None:
        return ()
    if isinstance(scopes, str):
        scopes = [scopes]

    ordered: list[str] = []
    for scope in scopes:
        scope = scope.strip()
        if scope and scope not in ordered:
            ordered.append(scope)
    return tuple(ordered)


@dataclass
class CallbackOptions:
    """
    Caller-facing configuration for the authorization flow.

    Every field is independently overridable; unset fields keep the
    documented defaults.

    Attributes:
        redirect_url: Redirect URL registered with the provider; decides the
            local listen port and callback path
        token_path: Path of the cached token file
        credentials_path: Path of the client credentials JSON file
        scopes: Requested scopes, in order
        listen_host: Interface the callback listener binds (None derives it
            from the redirect URL host)
        shutdown_timeout: Seconds allowed for the listener to stop
        open_browser: Also open the authorization URL in a browser
        ssl_cert_path: TLS certificate for an https redirect URL
        ssl_key_path: TLS private key for an https redirect URL
        token_endpoint_auth_method: How the client authenticates at the
            token endpoint ("client_secret_basic" or "client_secret_post")
    """

    redirect_url: str = DEFAULT_REDIRECT_URL
    token_path: str = DEFAULT_TOKEN_PATH
    credentials_path: str = DEFAULT_CREDENTIALS_PATH
    scopes: tuple[str, ...] = ()

    # Listener settings
    listen_host: Optional[str] = None
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    open_browser: bool = False
    ssl_cert_path: Optional[str] = None
    ssl_key_path: Optional[str] = None

    token_endpoint_auth_method: str = "client_secret_basic"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self.scopes = normalize_scopes(self.scopes)

        # Raises InvalidRedirectURLError (a ConfigurationError)
        parse_redirect_url(self.redirect_url)

        if not self.token_path:
            raise ConfigurationError("token_path cannot be empty")

        if not self.credentials_path:
            raise ConfigurationError("credentials_path cannot be empty")

        if self.shutdown_timeout <= 0:
            raise ConfigurationError(
                f"shutdown_timeout must be positive, got {self.shutdown_timeout}"
            )

        if self.token_endpoint_auth_method not in TOKEN_ENDPOINT_AUTH_METHODS:
            raise ConfigurationError(
                f"token_endpoint_auth_method must be one of "
                f"{', '.join(TOKEN_ENDPOINT_AUTH_METHODS)}, "
                f"got {self.token_endpoint_auth_method!r}"
            )

        if bool(self.ssl_cert_path) != bool(self.ssl_key_path):
            raise ConfigurationError(
                "ssl_cert_path and ssl_key_path must be provided together"
            )

    @property
    def redirect_target(self) -> RedirectTarget:
        """Listen port and callback path derived from the redirect URL."""
        return parse_redirect_url(self.redirect_url)

    @classmethod
    def from_env(cls, **overrides) -> "CallbackOptions":
        """
        Load options from environment variables.

        Optional environment variables:
            OAUTH_CALLBACK_REDIRECT_URL: Redirect URL (default: http://localhost:4567/callback)
            OAUTH_CALLBACK_TOKEN_PATH: Token file (default: ./token.json)
            OAUTH_CALLBACK_CREDENTIALS_PATH: Credentials file (default: ./credentials.json)
            OAUTH_CALLBACK_SCOPES: Scopes separated by whitespace or commas
            OAUTH_CALLBACK_LISTEN_HOST: Listener interface (default: from the redirect URL)
            OAUTH_CALLBACK_SHUTDOWN_TIMEOUT: Shutdown deadline in seconds (default: 10)
            OAUTH_CALLBACK_SSL_CERT_PATH: TLS certificate path
            OAUTH_CALLBACK_SSL_KEY_PATH: TLS private key path

        Args:
            **overrides: Field values that take precedence over the environment

        Returns:
            CallbackOptions instance

        Raises:
            ConfigurationError: If a value is invalid
        """
        env = os.environ
        values = {
            "redirect_url": env.get("OAUTH_CALLBACK_REDIRECT_URL", DEFAULT_REDIRECT_URL),
            "token_path": env.get("OAUTH_CALLBACK_TOKEN_PATH", DEFAULT_TOKEN_PATH),
            "credentials_path": env.get(
                "OAUTH_CALLBACK_CREDENTIALS_PATH", DEFAULT_CREDENTIALS_PATH
            ),
            "scopes": tuple(
                s for s in re.split(r"[\s,]+", env.get("OAUTH_CALLBACK_SCOPES", "")) if s
            ),
            "listen_host": env.get("OAUTH_CALLBACK_LISTEN_HOST") or None,
            "ssl_cert_path": env.get("OAUTH_CALLBACK_SSL_CERT_PATH") or None,
            "ssl_key_path": env.get("OAUTH_CALLBACK_SSL_KEY_PATH") or None,
        }

        timeout = env.get("OAUTH_CALLBACK_SHUTDOWN_TIMEOUT")
        if timeout:
            try:
                values["shutdown_timeout"] = float(timeout)
            except ValueError as e:
                raise ConfigurationError(
                    f"OAUTH_CALLBACK_SHUTDOWN_TIMEOUT must be a number, got {timeout!r}"
                ) from e

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ClientSecrets(BaseModel):
    """Client section of a credentials file."""

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    auth_uri: str = Field(min_length=1)
    token_uri: str = Field(min_length=1)
    # Accepted for schema compatibility; the configured redirect URL wins
    redirect_uris: list[str] = Field(default_factory=list)


class Credentials(BaseModel):
    """Credentials file as downloaded from the provider console."""

    web: ClientSecrets


@dataclass(frozen=True)
class ProviderConfig:
    """
    Immutable authorization and token-exchange configuration.

    Built fresh for each flow and never mutated. The same instance backs
    the authorization URL, the code exchange and the authenticated client.

    Attributes:
        client_id: OAuth client identifier
        client_secret: OAuth client secret
        auth_uri: Provider authorization endpoint
        token_uri: Provider token endpoint
        redirect_url: Redirect URL sent with the authorization request
        scopes: Requested scopes, in order
        token_endpoint_auth_method: Client authentication at the token endpoint
    """

    client_id: str
    client_secret: str = field(repr=False)
    auth_uri: str
    token_uri: str
    redirect_url: str
    scopes: tuple[str, ...] = ()
    token_endpoint_auth_method: str = "client_secret_basic"

    def __post_init__(self) -> None:
        if not self.client_id:
            raise ConfigurationError("client_id cannot be empty")
        if not self.client_secret:
            raise ConfigurationError("client_secret cannot be empty")
        if not self.auth_uri or not self.token_uri:
            raise ConfigurationError("auth_uri and token_uri cannot be empty")
        object.__setattr__(self, "scopes", normalize_scopes(self.scopes))

    @classmethod
    def from_credentials_file(
        cls,
        credentials_path: str,
        redirect_url: str,
        scopes: Optional[Iterable[str]] = None,
        token_endpoint_auth_method: str = "client_secret_basic",
    ) -> "ProviderConfig":
        """
        Build a provider configuration from a credentials file.

        Args:
            credentials_path: Path to the credentials JSON file
            redirect_url: Redirect URL for this flow
            scopes: Requested scopes
            token_endpoint_auth_method: Client authentication at the token endpoint

        Returns:
            ProviderConfig instance

        Raises:
            CredentialsUnreadableError: If the file cannot be opened
            CredentialsMalformedError: If the file does not match the schema
        """
        path = Path(credentials_path).expanduser().resolve()

        try:
            raw = path.read_bytes()
        except (IOError, OSError) as e:
            logger.error(f"Unable to read credentials file {path}: {e}")
            raise CredentialsUnreadableError(
                f"Unable to read credentials file {path}: {e}"
            ) from e

        try:
            credentials = Credentials.model_validate(json.loads(raw))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Unable to parse credentials file {path}: {e}")
            raise CredentialsMalformedError(
                f"Unable to parse credentials file {path}: {e}"
            ) from e

        logger.debug(f"Loaded client credentials from {path}")
        return cls(
            client_id=credentials.web.client_id,
            client_secret=credentials.web.client_secret,
            auth_uri=credentials.web.auth_uri,
            token_uri=credentials.web.token_uri,
            redirect_url=redirect_url,
            scopes=normalize_scopes(scopes),
            token_endpoint_auth_method=token_endpoint_auth_method,
        )


def load_provider_config(
    credentials_path: str,
    redirect_url: str,
    scopes: Optional[Iterable[str]] = None,
    token_endpoint_auth_method: str = "client_secret_basic",
) -> ProviderConfig:
    """Read a credentials file into a ProviderConfig."""
    return ProviderConfig.from_credentials_file(
        credentials_path,
        redirect_url,
        scopes,
        token_endpoint_auth_method=token_endpoint_auth_method,
    )
