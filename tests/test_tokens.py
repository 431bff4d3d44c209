"""Tests for the access token lifecycle."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from aiohttp import ClientSession

from aiocelebeaty.errors import (
    NoCredential,
    ProviderError,
    ProviderRateLimited,
    ProviderUnreachable,
    RefreshFailed,
)
from aiocelebeaty.provider import ProviderClient
from aiocelebeaty.tokens import TokenManager, fallback_display_name

from .conftest import UNREACHABLE_URL
from .fake_api import provider_config

KEY = "s1"


def _manager(http_session: ClientSession, fake_api, **kwargs) -> TokenManager:
    _, server = fake_api
    return TokenManager(http_session, provider_config(server), **kwargs)


class TestGetValidAccessToken:
    """Tests for TokenManager.get_valid_access_token."""

    async def test_unknown_session(self, http_session: ClientSession, fake_api) -> None:
        """Without any credential the manager fails with NoCredential."""
        manager = _manager(http_session, fake_api)

        with pytest.raises(NoCredential):
            await manager.get_valid_access_token(KEY)

    async def test_empty_credentials(self, http_session: ClientSession, fake_api) -> None:
        """A stored pair without tokens is no credential either."""
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token=None)

        with pytest.raises(NoCredential, match="no_token"):
            await manager.refresh_or_validate(KEY)

    async def test_access_token_returned_as_is(self, http_session: ClientSession, fake_api) -> None:
        """A present access token is not validated eagerly."""
        api, _ = fake_api
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token="a1", refresh_token="r1", expires_in=3600)

        assert await manager.get_valid_access_token(KEY) == "a1"
        assert api.refresh_count == 0

    async def test_refresh_token_only(self, http_session: ClientSession, fake_api) -> None:
        """Only a refresh token triggers an exchange and stores the result."""
        api, _ = fake_api
        manager = _manager(http_session, fake_api, clock=lambda: 1000.0)
        manager.login(KEY, access_token=None, refresh_token="r1")

        token = await manager.get_valid_access_token(KEY)

        assert token == "refreshed-1"
        assert api.refresh_forms == [
            {
                "grant_type": "refresh_token",
                "refresh_token": "r1",
                "client_id": "client",
                "client_secret": "secret",
            }
        ]
        pair = manager.store.get(KEY)
        assert pair is not None
        assert pair.access_token == "refreshed-1"
        assert pair.refresh_token == "r1"
        assert pair.expires_at == 1000.0 + 3600

    async def test_rotated_refresh_token_is_stored(
        self, http_session: ClientSession, fake_api
    ) -> None:
        """A refresh token returned by the exchange replaces the old one."""
        api, _ = fake_api
        api.rotate_refresh_token = True
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token=None, refresh_token="r1")

        await manager.get_valid_access_token(KEY)

        pair = manager.store.get(KEY)
        assert pair is not None
        assert pair.refresh_token == "rotated-1"

    async def test_refresh_failure(self, http_session: ClientSession, fake_api) -> None:
        """A non-200 exchange fails with RefreshFailed carrying the status."""
        api, _ = fake_api
        api.refresh_status = 400
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token=None, refresh_token="r1")

        with pytest.raises(RefreshFailed) as err:
            await manager.get_valid_access_token(KEY)

        assert err.value.status == 400
        assert err.value.body == {"error": "invalid_grant"}

    async def test_unreachable_token_endpoint(
        self, http_session: ClientSession, fake_api
    ) -> None:
        """A refused connection is reported as ProviderUnreachable."""
        _, server = fake_api
        config = replace(provider_config(server), token_url=f"{UNREACHABLE_URL}/api/token")
        manager = TokenManager(http_session, config)
        manager.login(KEY, access_token=None, refresh_token="r1")

        with pytest.raises(ProviderUnreachable) as err:
            await manager.get_valid_access_token(KEY)

        assert isinstance(err.value, ProviderError)
        assert err.value.status == 0

    async def test_slow_token_endpoint_times_out(
        self, http_session: ClientSession, fake_api
    ) -> None:
        """An exchange that does not answer within the timeout is unreachable."""
        api, server = fake_api
        api.refresh_delay = 0.5
        manager = TokenManager(http_session, replace(provider_config(server), timeout_s=0.05))
        manager.login(KEY, access_token=None, refresh_token="r1")

        with pytest.raises(ProviderUnreachable, match="Timeout"):
            await manager.get_valid_access_token(KEY)

    async def test_expiring_token_is_refreshed_early(
        self, http_session: ClientSession, fake_api
    ) -> None:
        """A token within the refresh margin is renewed before use."""
        api, _ = fake_api
        now = [1000.0]
        manager = _manager(http_session, fake_api, clock=lambda: now[0])
        manager.login(KEY, access_token="a1", refresh_token="r1", expires_in=100)

        assert await manager.get_valid_access_token(KEY) == "a1"
        now[0] += 71

        assert await manager.get_valid_access_token(KEY) == "refreshed-1"
        assert api.refresh_count == 1

    async def test_concurrent_refreshes_share_one_exchange(
        self, http_session: ClientSession, fake_api
    ) -> None:
        """Simultaneous callers of one session trigger a single exchange."""
        api, _ = fake_api
        api.refresh_delay = 0.05
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token=None, refresh_token="r1")

        tokens = await asyncio.gather(
            *(manager.get_valid_access_token(KEY) for _ in range(5))
        )

        assert tokens == ["refreshed-1"] * 5
        assert api.refresh_count == 1

    async def test_sessions_refresh_independently(
        self, http_session: ClientSession, fake_api
    ) -> None:
        """Single-flight is per session."""
        api, _ = fake_api
        manager = _manager(http_session, fake_api)
        manager.login("s1", access_token=None, refresh_token="r1")
        manager.login("s2", access_token=None, refresh_token="r2")

        await asyncio.gather(
            manager.get_valid_access_token("s1"), manager.get_valid_access_token("s2")
        )

        assert sorted(form["refresh_token"] for form in api.refresh_forms) == ["r1", "r2"]

    async def test_logout(self, http_session: ClientSession, fake_api) -> None:
        """Logging out drops the credentials."""
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token="a1")
        manager.logout(KEY)

        assert KEY not in manager.store
        with pytest.raises(NoCredential):
            await manager.get_valid_access_token(KEY)


class TestRunAuthorized:
    """Tests for TokenManager.run_authorized."""

    async def test_retries_once_after_401(self, http_session: ClientSession, fake_api) -> None:
        """A rejected token is refreshed and the call retried once."""
        api, server = fake_api
        api.rejected_tokens = {"a1"}
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token="a1", refresh_token="r1")
        provider = ProviderClient(http_session, provider_config(server))

        playback = await manager.run_authorized(KEY, provider.get_current_playback)

        assert playback.item.id == "A"
        assert api.seen_tokens == ["a1", "refreshed-1"]
        assert api.refresh_count == 1

    async def test_second_401_is_surfaced(self, http_session: ClientSession, fake_api) -> None:
        """A 401 after the refresh is not retried again."""
        api, server = fake_api
        api.rejected_tokens = {"a1", "refreshed-1"}
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token="a1", refresh_token="r1")
        provider = ProviderClient(http_session, provider_config(server))

        with pytest.raises(ProviderError) as err:
            await manager.run_authorized(KEY, provider.get_current_playback)

        assert err.value.status == 401
        assert api.refresh_count == 1
        assert api.seen_tokens == ["a1", "refreshed-1"]

    async def test_401_without_refresh_token(self, http_session: ClientSession, fake_api) -> None:
        """Without a refresh token the 401 goes straight to the caller."""
        api, server = fake_api
        api.rejected_tokens = {"a1"}
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token="a1")
        provider = ProviderClient(http_session, provider_config(server))

        with pytest.raises(ProviderError):
            await manager.run_authorized(KEY, provider.get_current_playback)

        assert api.refresh_count == 0

    async def test_rate_limit_passes_through(self, http_session: ClientSession, fake_api) -> None:
        """429 is raised with its retry hint and never retried."""
        api, server = fake_api
        api.rate_limit_retry_after = "7"
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token="a1", refresh_token="r1")
        provider = ProviderClient(http_session, provider_config(server))

        with pytest.raises(ProviderRateLimited) as err:
            await manager.run_authorized(KEY, provider.get_current_playback)

        assert err.value.retry_after == 7.0
        assert err.value.status == 429
        assert api.seen_tokens == ["a1"]
        assert api.refresh_count == 0


class TestIdentify:
    """Tests for deriving the session identity."""

    async def test_identify_uses_profile(self, http_session: ClientSession, fake_api) -> None:
        """The identity comes from the provider profile."""
        _, server = fake_api
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token="a1")

        identity = await manager.identify(KEY, ProviderClient(http_session, provider_config(server)))

        assert identity.user_id == "alice"
        assert identity.display_name == "Alice"

    async def test_identify_falls_back_to_email(
        self, http_session: ClientSession, fake_api
    ) -> None:
        """A missing display name is derived from the email address."""
        api, server = fake_api
        api.profile = {"id": "u1", "display_name": None, "email": "jane.doe@example.com"}
        manager = _manager(http_session, fake_api)
        manager.login(KEY, access_token="a1")

        identity = await manager.identify(KEY, ProviderClient(http_session, provider_config(server)))

        assert identity.display_name == "Jane Doe"

    def test_fallback_display_name(self) -> None:
        """Display name, then email local part, then user id."""
        assert fallback_display_name("u1", "Name", "x@y.z") == "Name"
        assert fallback_display_name("u1", None, "mary_ann-smith@y.z") == "Mary Ann Smith"
        assert fallback_display_name("u1", "", None) == "u1"
