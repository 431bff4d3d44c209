"""Access token lifecycle for provider calls.

The TokenManager owns the access/refresh credential pair of every session.
It hands out access tokens, refreshes them shortly before they expire or when
the provider rejects them, and makes sure concurrent callers of the same
session share a single refresh exchange.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from aiohttp import ClientError, ClientSession, ClientTimeout

from .config import ProviderConfig
from .errors import NoCredential, ProviderError, ProviderUnreachable, RefreshFailed
from .provider import ProviderClient

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_S = 3600

T = TypeVar("T")


@dataclass(slots=True)
class CredentialPair:
    """Access and refresh token of one session."""

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None
    """Seconds since epoch when the access token expires, None if unknown."""


@dataclass(frozen=True, slots=True)
class SessionIdentity:
    """Who is behind an authenticated session."""

    user_id: str
    display_name: str


class CredentialStore:
    """
    Session scoped credential storage.

    Plays the role of the cookie jar of the HTTP layer: credentials are kept
    in memory only and never persisted.
    """

    def __init__(self) -> None:
        """Create an empty store."""
        self._pairs: dict[str, CredentialPair] = {}

    def get(self, session_key: str) -> CredentialPair | None:
        """Return the credentials of a session, if any."""
        return self._pairs.get(session_key)

    def set(self, session_key: str, pair: CredentialPair) -> None:
        """Store the credentials of a session."""
        self._pairs[session_key] = pair

    def clear(self, session_key: str) -> None:
        """Forget the credentials of a session."""
        self._pairs.pop(session_key, None)

    def __contains__(self, session_key: object) -> bool:
        """Return True if credentials are stored for the session."""
        return session_key in self._pairs


def fallback_display_name(profile_id: str, display_name: str | None, email: str | None) -> str:
    """Pick a display name, deriving one from the email or id when missing."""
    if display_name:
        return display_name
    if email:
        local = email.split("@")[0]
        for sep in "._-":
            local = local.replace(sep, " ")
        words = [w[:1].upper() + w[1:] for w in local.split() if w]
        if words:
            return " ".join(words)
    return profile_id


class TokenManager:
    """Keeps every provider call authorized."""

    def __init__(
        self,
        session: ClientSession,
        config: ProviderConfig | None = None,
        *,
        store: CredentialStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the token manager.

        Args:
            session: aiohttp session used for the refresh-token exchange.
            config: Provider settings (token url, client credentials, margins).
            store: Credential store, a fresh in-memory one when omitted.
            clock: Returns the current time in seconds since epoch.
        """
        self._session = session
        self._config = config or ProviderConfig()
        self._store = store or CredentialStore()
        self._clock = clock
        self._refreshes: dict[str, asyncio.Task[str]] = {}

    @property
    def store(self) -> CredentialStore:
        """The credential store backing this manager."""
        return self._store

    def login(
        self,
        session_key: str,
        *,
        access_token: str | None,
        refresh_token: str | None = None,
        expires_in: float | None = None,
    ) -> None:
        """Store the credentials obtained by the authorization code exchange."""
        expires_at = self._clock() + expires_in if expires_in else None
        self._store.set(session_key, CredentialPair(access_token, refresh_token, expires_at))
        logger.debug("Stored credentials for session %s", session_key)

    def logout(self, session_key: str) -> None:
        """Drop the credentials of a session."""
        self._store.clear(session_key)

    async def get_valid_access_token(self, session_key: str) -> str:
        """
        Return an access token usable for provider calls.

        A present, not expiring access token is returned as-is without
        validation. Otherwise the refresh token is exchanged for a new one.

        Raises:
            NoCredential: Neither an access nor a refresh token is stored.
            RefreshFailed: The provider rejected the refresh-token exchange.
        """
        pair = self._store.get(session_key)
        if pair is None or (not pair.access_token and not pair.refresh_token):
            raise NoCredential
        if pair.access_token and not self._is_expiring(pair):
            return pair.access_token
        if pair.refresh_token:
            return await self.refresh(session_key)
        assert pair.access_token is not None
        return pair.access_token

    # The HTTP layer knows this operation under this name.
    refresh_or_validate = get_valid_access_token

    async def refresh(self, session_key: str, *, stale_token: str | None = None) -> str:
        """
        Exchange the refresh token of a session for a new access token.

        Concurrent calls for the same session share one exchange. When
        ``stale_token`` is given and the stored access token already differs
        from it, another caller refreshed in the meantime and the stored token
        is returned without a new exchange.
        """
        pair = self._store.get(session_key)
        if pair is None or not pair.refresh_token:
            raise NoCredential
        if (
            stale_token is not None
            and pair.access_token
            and pair.access_token != stale_token
            and not self._is_expiring(pair)
        ):
            return pair.access_token

        task = self._refreshes.get(session_key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._exchange(session_key))
            self._refreshes[session_key] = task

            def _forget(done: asyncio.Task[str]) -> None:
                if self._refreshes.get(session_key) is done:
                    del self._refreshes[session_key]

            task.add_done_callback(_forget)
        else:
            logger.debug("Joining in-flight refresh for session %s", session_key)
        return await asyncio.shield(task)

    async def run_authorized(
        self, session_key: str, operation: Callable[[str], Awaitable[T]]
    ) -> T:
        """
        Run a provider call with a valid access token.

        If the provider answers 401 and a refresh token is available, the token
        is refreshed and the call retried exactly once. A second 401 is raised
        to the caller. Rate limiting (429) is raised untouched.
        """
        token = await self.get_valid_access_token(session_key)
        try:
            return await operation(token)
        except ProviderError as err:
            pair = self._store.get(session_key)
            if err.status != 401 or pair is None or not pair.refresh_token:
                raise
            logger.debug("Provider rejected token of session %s, refreshing", session_key)
        token = await self.refresh(session_key, stale_token=token)
        return await operation(token)

    async def identify(self, session_key: str, provider: ProviderClient) -> SessionIdentity:
        """Authenticate a session and derive its identity from the provider profile."""
        profile = await self.run_authorized(session_key, provider.get_profile)
        return SessionIdentity(
            user_id=profile.id,
            display_name=fallback_display_name(profile.id, profile.display_name, profile.email),
        )

    def _is_expiring(self, pair: CredentialPair) -> bool:
        if pair.expires_at is None:
            return False
        return self._clock() >= pair.expires_at - self._config.refresh_margin_s

    async def _exchange(self, session_key: str) -> str:
        pair = self._store.get(session_key)
        if pair is None or not pair.refresh_token:
            raise NoCredential
        logger.debug("Refreshing access token for session %s", session_key)
        form = {
            "grant_type": "refresh_token",
            "refresh_token": pair.refresh_token,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }
        body: Any
        try:
            async with self._session.post(
                self._config.token_url,
                data=form,
                timeout=ClientTimeout(total=self._config.timeout_s),
            ) as resp:
                status = resp.status
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
        except (ClientError, TimeoutError) as err:
            logger.warning("Refresh for session %s could not reach the provider: %r", session_key, err)
            raise ProviderUnreachable(f"token exchange: {type(err).__name__}") from err
        if status != 200 or not isinstance(body, dict) or not body.get("access_token"):
            logger.warning("Refresh for session %s failed with HTTP %d", session_key, status)
            raise RefreshFailed(status, body)

        expires_in = body.get("expires_in") or DEFAULT_EXPIRES_IN_S
        refreshed = CredentialPair(
            access_token=body["access_token"],
            # The provider may rotate the refresh token
            refresh_token=body.get("refresh_token") or pair.refresh_token,
            expires_at=self._clock() + float(expires_in),
        )
        self._store.set(session_key, refreshed)
        logger.info("Access token refreshed for session %s (expires in %ss)", session_key, expires_in)
        assert refreshed.access_token is not None
        return refreshed.access_token
