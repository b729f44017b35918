"""Interactive Spotify authorization-code login.

The token obtained here lives only for this process. There is no refresh
token handling and nothing is written to disk; when Spotify rejects the token
the remote observer raises `AuthExpiredError` and the user logs in again.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
import webbrowser
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlparse

import aiohttp

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"
SCOPES = ("user-read-currently-playing",)
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8888/callback"

CLIENT_ID_ENV = "SPOTIFY_CLIENT_ID"
CLIENT_SECRET_ENV = "SPOTIFY_CLIENT_SECRET"
REDIRECT_URI_ENV = "SPOTIFY_REDIRECT_URI"


class AuthorizationError(Exception):
    """Login could not be completed."""


@dataclass(frozen=True)
class SpotifyCredentials:
    client_id: str
    client_secret: str
    redirect_uri: str = DEFAULT_REDIRECT_URI

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> SpotifyCredentials:
        """Read app credentials; secrets have no defaults."""
        client_id = environ.get(CLIENT_ID_ENV, "").strip()
        client_secret = environ.get(CLIENT_SECRET_ENV, "").strip()
        missing = [
            name
            for name, value in (
                (CLIENT_ID_ENV, client_id),
                (CLIENT_SECRET_ENV, client_secret),
            )
            if not value
        ]
        if missing:
            raise AuthorizationError(
                "Missing Spotify credentials: " + ", ".join(missing)
            )
        redirect_uri = (
            environ.get(REDIRECT_URI_ENV, "").strip() or DEFAULT_REDIRECT_URI
        )
        return cls(client_id, client_secret, redirect_uri)


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else now
        return current >= self.expires_at


def build_authorize_url(
    client_id: str,
    redirect_uri: str,
    state: str,
    scopes: tuple[str, ...] = SCOPES,
) -> str:
    params = urlencode(
        {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
        }
    )
    return f"{AUTHORIZE_URL}?{params}"


def parse_redirect_url(url: str, expected_state: str) -> str:
    """Extract the authorization code from the URL the browser landed on."""
    query = parse_qs(urlparse(url.strip()).query)
    error = query.get("error", [""])[0]
    if error:
        raise AuthorizationError(f"Spotify refused authorization: {error}")
    state = query.get("state", [""])[0]
    if state != expected_state:
        raise AuthorizationError("State mismatch in redirect URL")
    code = query.get("code", [""])[0]
    if not code:
        raise AuthorizationError("Redirect URL carries no authorization code")
    return code


async def exchange_code(
    session: aiohttp.ClientSession,
    credentials: SpotifyCredentials,
    code: str,
    *,
    timeout_s: float = 10.0,
) -> AccessToken:
    """Trade an authorization code for a bearer token."""
    try:
        async with session.post(
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": credentials.redirect_uri,
            },
            auth=aiohttp.BasicAuth(credentials.client_id, credentials.client_secret),
            timeout=aiohttp.ClientTimeout(total=timeout_s),
        ) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise AuthorizationError(
                    f"Token exchange failed ({resp.status}): {body[:200]}"
                )
            data = await resp.json()
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise AuthorizationError(f"Token exchange failed: {exc}") from exc
    token = data.get("access_token")
    if not isinstance(token, str) or not token:
        raise AuthorizationError("Token response carried no access_token")
    expires_in = data.get("expires_in", 3600)
    if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
        expires_in = 3600
    logger.info("Spotify access token granted (expires in %ds)", int(expires_in))
    return AccessToken(value=token, expires_at=time.monotonic() + float(expires_in))


async def prompt_for_token(
    session: aiohttp.ClientSession,
    credentials: SpotifyCredentials,
    *,
    read_line: Callable[[str], str] = input,
    open_browser: Callable[[str], object] = webbrowser.open,
) -> AccessToken:
    """Walk the user through the browser login and return a fresh token."""
    state = secrets.token_urlsafe(16)
    url = build_authorize_url(credentials.client_id, credentials.redirect_uri, state)
    print("Open this URL to authorize cava-art with Spotify:")
    print(url)
    try:
        open_browser(url)
    except Exception as exc:  # browser launch is best effort
        logger.debug("Could not open browser: %s", exc)
    pasted = await asyncio.to_thread(
        read_line, "Paste the URL you were redirected to: "
    )
    code = parse_redirect_url(pasted, state)
    return await exchange_code(session, credentials, code)
