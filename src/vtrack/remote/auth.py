"""
Bearer-token credentials for the remote tabular API, persisted on disk.

The token file holds:

    {
        "access_token":  "...",
        "refresh_token": "...",
        "expires_at":    "2026-01-01T12:00:00"   # naive UTC
    }

It is written with owner-only permissions (dir 0700, file 0600). The
password used during setup is exchanged for tokens once and never stored.

get_token() never talks to the network: it returns the cached access token
or raises CredentialExpiredError, and the caller decides to refresh().
"""
import json
import logging
import os
import stat
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx

from vtrack.sync.backoff import retry_async
from vtrack.sync.errors import (
    AuthError,
    CredentialExpiredError,
    NetworkError,
    NoCredentialsError,
    raise_for_response,
)

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

CREDENTIALS_DIR_DEFAULT = Path.home() / ".vtrack" / "credentials"
CREDENTIALS_FILE_NAME = "token.json"
EXPIRY_SKEW = timedelta(seconds=30)  # treat tokens this close to expiry as expired


# ── Main class ────────────────────────────────────────────────────────────────

class CredentialProvider:
    """
    Supplies and refreshes the bearer token.

    Usage:
        creds = CredentialProvider(token_url="https://.../oauth/token")
        if not creds.has_credentials():
            await creds.authenticate_and_save(username, password)
        token = creds.get_token()        # may raise CredentialExpiredError
        token = await creds.refresh()    # exchanges the refresh token
    """

    def __init__(
        self,
        credentials_dir: Path = CREDENTIALS_DIR_DEFAULT,
        token_url: str = "",
        *,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._credentials_dir = Path(credentials_dir)
        self._credentials_file = self._credentials_dir / CREDENTIALS_FILE_NAME
        self._token_url = token_url
        self._timeout = timeout
        self._transport = transport
        self._clock = clock

    # ── Persistence ───────────────────────────────────────────────────────────

    def has_credentials(self) -> bool:
        return self._credentials_file.exists()

    def save(self, data: Dict[str, Any]) -> None:
        """Persist token data with owner-only permissions."""
        self._credentials_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._credentials_dir, stat.S_IRWXU)  # 0700

        self._credentials_file.write_text(json.dumps(data, indent=2))
        os.chmod(self._credentials_file, stat.S_IRUSR | stat.S_IWUSR)  # 0600

    def load(self) -> Dict[str, Any]:
        """
        Raises:
            NoCredentialsError: if setup has not been run.
        """
        if not self._credentials_file.exists():
            raise NoCredentialsError(
                f"No API credentials found at {self._credentials_file}. "
                "Run `python -m vtrack setup` to authenticate."
            )
        return json.loads(self._credentials_file.read_text())

    def clear(self) -> None:
        if self._credentials_file.exists():
            self._credentials_file.unlink()

    # ── Tokens ────────────────────────────────────────────────────────────────

    def get_token(self) -> str:
        """
        Return the stored access token.

        Raises:
            NoCredentialsError: nothing stored.
            CredentialExpiredError: the token is (about to be) expired.
        """
        data = self.load()
        token = data.get("access_token")
        if not token:
            raise CredentialExpiredError("Stored credential has no access token")
        expires_at = data.get("expires_at")
        if expires_at and datetime.fromisoformat(expires_at) <= self._clock() + EXPIRY_SKEW:
            raise CredentialExpiredError("Access token expired")
        return token

    async def refresh(self) -> str:
        """
        Exchange the stored refresh token for a new access token.

        Raises:
            NoCredentialsError: nothing stored.
            AuthError: the refresh token was rejected; setup must be re-run.
            NetworkError: the token endpoint was unreachable.
        """
        data = self.load()
        refresh_token = data.get("refresh_token")
        if not refresh_token:
            raise AuthError("No refresh token stored; run `python -m vtrack setup`")

        body = await retry_async(
            lambda: self._post_token({"grant_type": "refresh_token", "refresh_token": refresh_token}),
            label="token refresh",
            retry_on=(NetworkError,),
        )
        if "refresh_token" not in body:
            body["refresh_token"] = refresh_token  # servers may keep the old one valid
        token = self._store(body)
        logger.info("Access token refreshed")
        return token

    async def authenticate_and_save(self, username: str, password: str) -> str:
        """Log in once with a password grant and persist the resulting tokens."""
        body = await self._post_token(
            {"grant_type": "password", "username": username, "password": password}
        )
        return self._store(body)

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _store(self, body: Dict[str, Any]) -> str:
        token = body.get("access_token")
        if not token:
            raise AuthError("Token endpoint returned no access_token")
        expires_in = int(body.get("expires_in", 3600))
        self.save({
            "access_token": token,
            "refresh_token": body.get("refresh_token"),
            "expires_at": (self._clock() + timedelta(seconds=expires_in)).isoformat(),
        })
        return token

    async def _post_token(self, form: Dict[str, str]) -> Dict[str, Any]:
        if not self._token_url:
            raise AuthError("No token URL configured")
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._token_url, data=form)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Token endpoint timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise NetworkError(f"Token endpoint unreachable: {exc}") from exc
        if response.status_code in (400, 401, 403):
            raise AuthError(f"Token request rejected: HTTP {response.status_code}")
        raise_for_response(response)
        return response.json()
