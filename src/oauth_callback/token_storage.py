"""
Token storage for the loopback OAuth callback flow.

This module provides file-based token persistence. Tokens are stored as
plaintext JSON with user-only permissions; every write replaces the whole
file so readers never observe a partially written token.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from .exceptions import TokenMalformedError, TokenUnreadableError, TokenWriteError

logger = logging.getLogger(__name__)


def _parse_expiry(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise TokenMalformedError(f"expiry must be an ISO-8601 string, got {value!r}")

    # Go-style RFC 3339 timestamps may end in "Z" and carry nanoseconds
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, tail = text.partition(".")
        digits = len(tail) - len(tail.lstrip("0123456789"))
        fraction = tail[:digits][:6].ljust(6, "0")
        text = f"{head}.{fraction}{tail[digits:]}"

    try:
        expiry = datetime.fromisoformat(text)
    except ValueError as e:
        raise TokenMalformedError(f"Invalid expiry timestamp {value!r}") from e

    # Ensure timezone-aware
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry


@dataclass
class TokenData:
    """
    Stored OAuth token data.

    Attributes:
        access_token: Short-lived token attached to API requests
        token_type: Token type (typically "Bearer")
        refresh_token: Long-lived token for obtaining new access tokens
        expiry: When the access token expires (None if the provider did not say)
        scope: Granted scopes, if the provider reported them
    """

    access_token: str = field(repr=False)
    token_type: str = "Bearer"
    refresh_token: Optional[str] = field(default=None, repr=False)
    expiry: Optional[datetime] = None
    scope: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        """
        Check if access token is expired.

        Returns:
            True if token has expired, False if not or if expiry is unknown
        """
        if self.expiry is None:
            return False
        return datetime.now(timezone.utc) >= self.expiry

    def expires_within(self, seconds: int) -> bool:
        """
        Check if token expires within given seconds.

        Args:
            seconds: Number of seconds to check

        Returns:
            True if token will expire within the specified time, False otherwise
        """
        if self.expiry is None:
            return False
        buffer_time = datetime.now(timezone.utc) + timedelta(seconds=seconds)
        return buffer_time >= self.expiry

    def to_dict(self) -> dict:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation of token data
        """
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "refresh_token": self.refresh_token,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TokenData":
        """
        Create TokenData from a decoded JSON document.

        Unknown keys are ignored.

        Args:
            data: Dictionary with token data fields

        Returns:
            TokenData instance

        Raises:
            TokenMalformedError: If the document is not a valid token record
        """
        if not isinstance(data, dict):
            raise TokenMalformedError(
                f"Token record must be a JSON object, got {type(data).__name__}"
            )

        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise TokenMalformedError("Token record has no access_token")

        refresh_token = data.get("refresh_token") or None
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise TokenMalformedError("refresh_token must be a string")

        return cls(
            access_token=access_token,
            token_type=data.get("token_type") or "Bearer",
            refresh_token=refresh_token,
            expiry=_parse_expiry(data.get("expiry")),
            scope=data.get("scope") or None,
        )

    def to_oauth2_token(self) -> dict:
        """
        Convert to the token dict understood by authlib sessions.

        Returns:
            Dictionary with access_token, token_type and, when known,
            refresh_token and expires_at (epoch seconds)
        """
        token: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
        }
        if self.refresh_token:
            token["refresh_token"] = self.refresh_token
        if self.expiry is not None:
            token["expires_at"] = int(self.expiry.timestamp())
        if self.scope:
            token["scope"] = self.scope
        return token

    @classmethod
    def from_oauth2_token(cls, token: dict) -> "TokenData":
        """
        Create TokenData from a token endpoint response.

        Args:
            token: Token dict as returned by authlib (expires_at or expires_in)

        Returns:
            TokenData instance

        Raises:
            TokenMalformedError: If the response carries no access token
        """
        access_token = token.get("access_token")
        if not access_token:
            raise TokenMalformedError("Token response has no access_token")

        expiry = None
        if token.get("expires_at"):
            expiry = datetime.fromtimestamp(int(token["expires_at"]), tz=timezone.utc)
        elif token.get("expires_in"):
            expiry = datetime.now(timezone.utc) + timedelta(seconds=int(token["expires_in"]))

        scope = token.get("scope")
        if isinstance(scope, (list, tuple)):
            scope = " ".join(scope)

        return cls(
            access_token=access_token,
            token_type=token.get("token_type") or "Bearer",
            refresh_token=token.get("refresh_token") or None,
            expiry=expiry,
            scope=scope or None,
        )


class TokenStorage:
    """
    File-based token storage (plaintext JSON).

    The path is resolved to an absolute path once, so behavior does not
    depend on the caller's working directory changing later. No locking is
    done; a single orchestrating process per path is assumed.
    """

    def __init__(self, token_file: str):
        """
        Initialize token storage.

        Args:
            token_file: Path to token storage file (relative paths are
                        resolved against the current directory)
        """
        self.token_file = Path(token_file).expanduser().resolve()

    def _set_secure_permissions(self, path: Path) -> None:
        """Set file permissions to user-only read/write (600)."""
        try:
            path.chmod(0o600)
            logger.debug(f"Set secure permissions (600) on {path}")
        except (OSError, PermissionError) as e:
            logger.warning(f"Could not set secure permissions: {e}")

    def save(self, token_data: TokenData) -> None:
        """
        Save tokens to file.

        The JSON is written to a temporary file next to the target and then
        moved over it, so the token file is always either the old record or
        the new one.

        Args:
            token_data: Token data to save

        Raises:
            TokenWriteError: If save operation fails
        """
        tmp_path = None
        try:
            self.token_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.token_file.parent,
                prefix=f".{self.token_file.name}.",
                suffix=".tmp",
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(token_data.to_dict(), f, indent=2)

            self._set_secure_permissions(tmp_path)
            os.replace(tmp_path, self.token_file)
            tmp_path = None

            logger.info(f"Tokens saved to {self.token_file}")
        except (IOError, OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save tokens: {e}")
            raise TokenWriteError(f"Failed to save tokens to {self.token_file}: {e}") from e
        finally:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()

    def load(self) -> TokenData:
        """
        Load tokens from file.

        Returns:
            TokenData read from the token file

        Raises:
            TokenUnreadableError: If the file is missing or cannot be read
            TokenMalformedError: If the file is not a valid token record
        """
        try:
            raw = self.token_file.read_bytes()
        except (IOError, OSError) as e:
            logger.debug(f"Could not read token file {self.token_file}: {e}")
            raise TokenUnreadableError(
                f"Unable to read token file {self.token_file}: {e}"
            ) from e

        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Invalid token file at {self.token_file}: {e}")
            raise TokenMalformedError(
                f"Unable to parse token file {self.token_file}: {e}"
            ) from e

        token_data = TokenData.from_dict(data)
        logger.debug(f"Tokens loaded from {self.token_file}")
        return token_data

    def delete(self) -> bool:
        """
        Delete token file.

        Returns:
            True if file was deleted, False if file didn't exist

        Raises:
            TokenWriteError: If the file exists but cannot be removed
        """
        if self.token_file.exists():
            try:
                self.token_file.unlink()
                logger.info(f"Token file deleted: {self.token_file}")
                return True
            except (OSError, PermissionError) as e:
                logger.error(f"Failed to delete token file: {e}")
                raise TokenWriteError(f"Failed to delete token file: {e}") from e

        logger.debug(f"Token file does not exist: {self.token_file}")
        return False

    def exists(self) -> bool:
        """
        Check if token file exists.

        Returns:
            True if token file exists, False otherwise
        """
        return self.token_file.exists()
