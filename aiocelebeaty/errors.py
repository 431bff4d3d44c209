"""Errors raised by celebeaty components."""

from __future__ import annotations


class CelebeatyError(Exception):
    """Base class for all celebeaty errors."""


class AuthError(CelebeatyError):
    """No usable access credential could be obtained."""


class NoCredential(AuthError):
    """Neither an access token nor a refresh token is present."""

    def __init__(self) -> None:
        """Initialize the error."""
        super().__init__("no_token")


class RefreshFailed(AuthError):
    """The provider rejected the refresh-token exchange."""

    def __init__(self, status: int, body: object = None) -> None:
        """Initialize the error with the provider response."""
        super().__init__(f"refresh_failed: HTTP {status}")
        self.status = status
        self.body = body


class ProviderError(CelebeatyError):
    """The playback provider answered with an HTTP error status."""

    def __init__(self, status: int, body: object = None) -> None:
        """Initialize the error with the provider response."""
        super().__init__(f"provider_error: HTTP {status}")
        self.status = status
        self.body = body


class ProviderRateLimited(ProviderError):
    """The provider answered 429, retry after ``retry_after`` seconds."""

    def __init__(self, retry_after: float, body: object = None) -> None:
        """Initialize the error with the Retry-After hint."""
        super().__init__(429, body)
        self.retry_after = retry_after

    def __str__(self) -> str:
        """Return a readable description including the retry hint."""
        return f"rate_limited: retry after {self.retry_after:g}s"


class ProviderUnreachable(ProviderError):
    """The provider could not be reached or did not answer within the timeout."""

    def __init__(self, detail: str) -> None:
        """Initialize the error with a description of the transport failure."""
        super().__init__(0, detail)
        self.detail = detail

    def __str__(self) -> str:
        """Return a readable description of the failure."""
        return f"provider_unreachable: {self.detail}"


class NoActiveItem(CelebeatyError):
    """Nothing is playing right now (nothing at all, an ad, a private session...)."""

    def __init__(self, reason: str = "no_item") -> None:
        """Initialize the error with the reason reported by the provider."""
        super().__init__(reason)
        self.reason = reason


class NoPlaybackDevice(CelebeatyError):
    """The user has no device that could play audio."""

    def __init__(self, detail: str = "no_playback_device") -> None:
        """Initialize the error."""
        super().__init__(detail)


class TransportOriginRejected(CelebeatyError):
    """A websocket connection came from an origin that is not allowed."""

    def __init__(self, origin: str | None) -> None:
        """Initialize the error with the rejected origin."""
        super().__init__(f"origin rejected: {origin}")
        self.origin = origin


class MalformedMessage(CelebeatyError):
    """A payload could not be parsed as a protocol message."""
