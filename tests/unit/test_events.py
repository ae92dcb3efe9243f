"""
Unit tests for connection event parsing.
"""

import json

import pytest

from relgraph_server.graph.events import (
    AddFriendEvent,
    EventParseError,
    ReferralEvent,
    RegisterEvent,
    UnfriendEvent,
    UnknownEvent,
    event_from_dict,
    parse_event,
)


class TestParseEvent:
    """Tests for parse_event and event_from_dict."""

    def test_register(self):
        payload, event = parse_event(b'{"type": "register", "name": "alice", "created_at": "2024-01-01T00:00:00Z"}')

        assert event == RegisterEvent(name="alice", created_at="2024-01-01T00:00:00Z")
        assert event.type == "register"
        assert payload == {"type": "register", "name": "alice", "created_at": "2024-01-01T00:00:00Z"}

    def test_referral_uses_wire_names(self):
        _, event = parse_event(json.dumps({"type": "referral", "referredBy": "alice", "user": "bob"}))

        assert isinstance(event, ReferralEvent)
        assert event.referred_by == "alice"
        assert event.user == "bob"

    def test_friend_events(self):
        add = event_from_dict({"type": "addfriend", "user1_name": "a", "user2_name": "b"})
        remove = event_from_dict({"type": "unfriend", "user1": "a", "user2": "b"})

        assert add == AddFriendEvent(user1="a", user2="b")
        assert remove == UnfriendEvent(user1="a", user2="b")

    def test_unknown_type_is_not_an_error(self):
        event = event_from_dict({"type": "poke", "created_at": "2024-01-01T00:00:00Z"})

        assert isinstance(event, UnknownEvent)
        assert event.type == "poke"

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b"[1, 2, 3]",
            b'{"name": "alice"}',
            b'{"type": "register"}',
            b'{"type": "referral", "user": "bob"}',
            b'{"type": "addfriend", "user1_name": "a"}',
            b"\xff\xfe",
        ],
    )
    def test_malformed_payloads(self, raw):
        with pytest.raises(EventParseError):
            parse_event(raw)
