"""Service credentials.

Logging in to a service is done elsewhere; what ends up here is the token
file the login wrote in the cache directory. Tokens are used as opaque
bearer strings.
"""

import json
import os
import time
from dataclasses import dataclass
from typing import Dict, Generic, Optional, TypeVar, Union

from gamesync import settings
from gamesync.exceptions import AuthenticationError
from gamesync.savesync.catalog import parse_timestamp
from gamesync.util.log import logger

T = TypeVar("T")

GOG_SCOPE = "gog"
EGS_SCOPE = "egs"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    reason: str

    @property
    def is_ok(self) -> bool:
        return False

    def unwrap(self):
        raise AuthenticationError(self.reason)


Result = Union[Ok[T], Err]


@dataclass(frozen=True)
class Credentials:
    access_token: str
    refresh_token: str = ""
    expiry: float = 0.0
    user_id: str = ""

    @property
    def is_expired(self) -> bool:
        return bool(self.expiry) and self.expiry <= time.time()

    def __repr__(self) -> str:
        return "Credentials(user_id=%s, expiry=%s)" % (self.user_id, self.expiry)


def get_token_path(scope: str) -> str:
    return os.path.join(settings.CACHE_DIR, ".%s.token" % scope)


def parse_token(token: dict, token_mtime: float = 0.0) -> Credentials:
    """Build credentials from a token as saved by a service login.

    GOG tokens carry ``expires_in`` relative to when they were written and a
    ``user_id``, Epic tokens an ISO ``expires_at`` and an ``account_id``.
    """
    expiry = 0.0
    if token.get("expires_at"):
        expiry = parse_timestamp(token["expires_at"]) or 0.0
    elif token.get("expires_in") and token_mtime:
        expiry = token_mtime + float(token["expires_in"])
    return Credentials(
        access_token=token.get("access_token", ""),
        refresh_token=token.get("refresh_token", ""),
        expiry=expiry,
        user_id=str(token.get("user_id") or token.get("account_id") or ""),
    )


class TokenFileProvider:
    """Reads service tokens from ``<cache>/.<scope>.token`` files"""

    def __init__(self, token_paths: Optional[Dict[str, str]] = None) -> None:
        self.token_paths = token_paths or {}

    def get_token_path(self, scope: str) -> str:
        return self.token_paths.get(scope) or get_token_path(scope)

    def load_token(self, scope: str) -> dict:
        """Return the raw token dict. Raises AuthenticationError if there is none."""
        token_path = self.get_token_path(scope)
        if not os.path.exists(token_path):
            raise AuthenticationError("No %s token available" % scope)
        try:
            with open(token_path, encoding="utf-8") as token_file:
                token = json.loads(token_file.read())
        except (OSError, ValueError) as ex:
            raise AuthenticationError("Unreadable %s token: %s" % (scope, ex)) from ex
        if not isinstance(token, dict):
            raise AuthenticationError("Invalid %s token" % scope)
        return token

    def get_credentials(self, scope: str) -> Result[Credentials]:
        try:
            token = self.load_token(scope)
        except AuthenticationError as ex:
            logger.warning("Could not load credentials for %s: %s", scope, ex)
            return Err(ex.message)
        credentials = parse_token(token, os.path.getmtime(self.get_token_path(scope)))
        if not credentials.access_token and not credentials.refresh_token:
            return Err("The %s token has no access or refresh token" % scope)
        if credentials.is_expired and not credentials.refresh_token:
            return Err("The %s token has expired" % scope)
        return Ok(credentials)
