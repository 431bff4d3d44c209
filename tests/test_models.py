"""Tests for the realtime message models."""

from __future__ import annotations

import orjson
import pytest

from aiocelebeaty.errors import MalformedMessage
from aiocelebeaty.models import (
    DirectoryEntry,
    DirectoryMessage,
    FollowMessage,
    HelloMessage,
    PauseMessage,
    PresenceAction,
    PresenceMessage,
    SnapshotRequestMessage,
    SyncKind,
    TrackMessage,
    TrackSummary,
    decode_message,
    parse_message,
)


class TestParseMessage:
    """Tests for parse_message."""

    def test_hello_uses_camel_case(self) -> None:
        """Hello is parsed from its wire field names."""
        message = parse_message('{"type": "hello", "userId": "alice", "name": "Alice"}')

        assert isinstance(message, HelloMessage)
        assert message.user_id == "alice"
        assert message.name == "Alice"

    def test_presence(self) -> None:
        """Presence actions are parsed into the enum."""
        message = parse_message('{"type": "presence", "action": "ping", "user": "a", "ts": 5}')

        assert isinstance(message, PresenceMessage)
        assert message.action is PresenceAction.PING
        assert message.name is None

    def test_req_snapshot(self) -> None:
        """The snapshot request keeps its wire type name."""
        message = parse_message(
            '{"type": "req_snapshot", "targetUserId": "alice", "user": "bob", "ts": 1}'
        )

        assert isinstance(message, SnapshotRequestMessage)
        assert message.target_user_id == "alice"

    def test_track_and_pause_are_distinguished(self) -> None:
        """Track and pause share their shape but not their type."""
        payload = {
            "user": "alice",
            "trackId": "A",
            "positionMs": 5000,
            "name": "Song",
            "artists": ["Artist"],
            "isPlaying": True,
            "ts": 10,
        }
        track = parse_message(orjson.dumps({**payload, "type": "track"}))
        pause = parse_message(orjson.dumps({**payload, "type": "pause", "isPlaying": False}))

        assert type(track) is TrackMessage
        assert track.kind is SyncKind.TRACK
        assert track.artwork_url is None
        assert not track.is_seek
        assert isinstance(pause, PauseMessage)
        assert pause.kind is SyncKind.PAUSE
        assert pause.position_ms == 5000

    def test_malformed_payloads_are_dropped(self) -> None:
        """Anything that is not a known, complete message parses to None."""
        assert parse_message("not json") is None
        assert parse_message("[]") is None
        assert parse_message('{"type": "nope"}') is None
        assert parse_message('{"type": "follow", "user": "bob"}') is None

    def test_decode_raises_on_malformed_payloads(self) -> None:
        """The strict decoder reports what the lenient parser drops."""
        with pytest.raises(MalformedMessage):
            decode_message('{"type": "nope"}')


class TestSerialization:
    """Tests for the serialized form of messages."""

    def test_track_serializes_by_alias(self) -> None:
        """Outgoing messages use the wire field names."""
        message = TrackMessage(
            user="alice",
            track_id="A",
            position_ms=1000,
            name="Song",
            artists=["Artist"],
            is_playing=True,
            ts=42,
            is_seek=True,
        )

        data = orjson.loads(message.to_json())

        assert data["type"] == "track"
        assert data["trackId"] == "A"
        assert data["positionMs"] == 1000
        assert data["isPlaying"] is True
        assert data["isSeek"] is True
        assert "track_id" not in data

    def test_follow_serializes_target(self) -> None:
        """Follow carries the target under targetUserId."""
        data = orjson.loads(FollowMessage(target_user_id="alice", user="bob", ts=1).to_json())

        assert data == {"targetUserId": "alice", "user": "bob", "ts": 1, "type": "follow"}

    def test_directory_nests_entries(self) -> None:
        """Directory entries and their track are serialized by alias."""
        directory = DirectoryMessage(
            lives=[
                DirectoryEntry(
                    user_id="alice",
                    name="Alice",
                    since=1,
                    last_seen=2,
                    listeners=3,
                    track=TrackSummary(track_id="A", name="Song", artists=[], is_playing=False),
                )
            ],
            ts=5,
        )

        data = orjson.loads(directory.to_json())

        entry = data["lives"][0]
        assert entry["userId"] == "alice"
        assert entry["lastSeen"] == 2
        assert entry["listeners"] == 3
        assert entry["track"]["trackId"] == "A"
        assert entry["track"]["isPlaying"] is False
