# sso_portal/client/session.py
"""
Client-side session bootstrapper.

Turns the server's post-login redirect into a persisted client session:
- on load, an existing stored token is checked against GET /auth/me
- at the same time, ?token=...&refreshToken=... on the current URL is
  captured, stored, stripped from the URL, and the user is sent to the
  landing page

An expired or garbage token is an expected state, not an error: any
failure during the check quietly demotes the client to "not logged in".
"""

import asyncio
import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Protocol
from urllib.parse import parse_qs, urlsplit

import httpx

from sso_portal.auth.utils import strip_query

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "auth_token"
REFRESH_TOKEN_KEY = "refresh_token"
DEFAULT_STORAGE_PATH = Path.home() / ".sso_portal" / "session.json"


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CHECKING = "checking"
    AUTHENTICATED = "authenticated"


class TokenStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class Navigator(Protocol):
    def replace(self, url: str) -> None:
        """Rewrite the current location without navigating."""

    def assign(self, url: str) -> None:
        """Full navigation to another page."""


class MemoryTokenStorage:
    def __init__(self, initial: dict | None = None):
        self._data = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class FileTokenStorage:
    """Tokens kept in a JSON file readable only by the owner."""

    def __init__(self, path: Path = DEFAULT_STORAGE_PATH):
        self.path = Path(path)

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except json.JSONDecodeError:
            logger.warning(f"Ignoring corrupt token file {self.path}")
            return {}

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data))
        os.chmod(self.path, 0o600)

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


class HistoryNavigator:
    """Keeps a current location and the list of pages navigated to."""

    def __init__(self, location: str = "/"):
        self.location = location
        self.history = [location]

    def replace(self, url: str) -> None:
        self.location = url
        self.history[-1] = url

    def assign(self, url: str) -> None:
        self.location = url
        self.history.append(url)


class SessionBootstrapper:
    """Client session state machine: unauthenticated -> checking -> authenticated."""

    def __init__(
        self,
        api_url: str,
        storage: TokenStorage | None = None,
        navigator: Navigator | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        landing_path: str = "/dashboard",
        entry_path: str = "/",
    ):
        self.api_url = api_url.rstrip("/")
        self.storage = storage if storage is not None else FileTokenStorage()
        self.navigator = navigator if navigator is not None else HistoryNavigator()
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self.timeout = timeout
        self.landing_path = landing_path
        self.entry_path = entry_path

        self.state = SessionState.UNAUTHENTICATED
        self.user: dict | None = None
        self.is_loading = True

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    async def load(self, current_url: str) -> SessionState:
        """Run once per page load. Settles only after both paths finish."""
        self.is_loading = True
        try:
            await asyncio.gather(
                self.check_session(),
                self.capture_callback(current_url),
            )
        finally:
            self.is_loading = False
        return self.state

    async def check_session(self) -> None:
        token = self.storage.get(ACCESS_TOKEN_KEY)
        if not token:
            self.state = SessionState.UNAUTHENTICATED
            return

        while token:
            self.state = SessionState.CHECKING
            profile = await self._fetch_profile(token)

            current = self.storage.get(ACCESS_TOKEN_KEY)
            if current != token:
                # A callback stored a new pair while this check was in flight
                token = current
                continue

            if profile is None:
                self._clear()
            else:
                self.user = profile
                self.state = SessionState.AUTHENTICATED
            return

        self._clear()

    async def _fetch_profile(self, token: str) -> dict | None:
        """GET /auth/me with the given token. None on any failure."""
        try:
            response = await asyncio.wait_for(
                self._client.get(
                    f"{self.api_url}/auth/me",
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Auth check failed: {type(e).__name__}")
            return None

    async def capture_callback(self, current_url: str) -> bool:
        """Store tokens handed over in the URL. Returns True if any were found."""
        params = parse_qs(urlsplit(current_url).query)
        token = params.get("token", [""])[0]
        refresh_token = params.get("refreshToken", [""])[0]

        if not (token and refresh_token):
            return False

        self.storage.set(ACCESS_TOKEN_KEY, token)
        self.storage.set(REFRESH_TOKEN_KEY, refresh_token)

        # Clean up URL, then go to the landing page
        self.navigator.replace(strip_query(current_url))
        self.navigator.assign(self.landing_path)
        return True

    async def logout(self) -> None:
        """Best-effort server revoke; local state is always cleared."""
        token = self.storage.get(ACCESS_TOKEN_KEY)
        if token:
            try:
                await asyncio.wait_for(
                    self._client.post(
                        f"{self.api_url}/auth/logout",
                        headers={"Authorization": f"Bearer {token}"},
                        timeout=self.timeout,
                    ),
                    timeout=self.timeout,
                )
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                logger.warning(f"Logout error: {type(e).__name__}: {e}")

        self._clear()
        self.navigator.assign(self.entry_path)

    def login_with_idp(self) -> None:
        """Full-page navigation to the SP login endpoint (cross-origin hop to the IdP)."""
        self.navigator.assign(f"{self.api_url}/auth/login")

    def _clear(self) -> None:
        self.storage.remove(ACCESS_TOKEN_KEY)
        self.storage.remove(REFRESH_TOKEN_KEY)
        self.user = None
        self.state = SessionState.UNAUTHENTICATED

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()
