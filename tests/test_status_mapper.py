"""Tests for provider status mapping and the forward-only status guard."""

import pytest

from relay.models import MessageStatusValue
from relay.status_mapper import is_status_advance, map_status


class TestMapStatus:
    """Test provider status normalization."""

    @pytest.mark.parametrize(
        "provider_status, expected",
        [
            ("sent", MessageStatusValue.SENT),
            ("delivered", MessageStatusValue.DELIVERED),
            ("read", MessageStatusValue.READ),
            ("failed", MessageStatusValue.FAILED),
            (" READ ", MessageStatusValue.READ),
        ],
    )
    def test_known_statuses(self, provider_status, expected):
        assert map_status(provider_status) is expected

    @pytest.mark.parametrize("provider_status", ["deleted", "warning", "", None])
    def test_unknown_falls_back_to_received(self, provider_status):
        assert map_status(provider_status) is MessageStatusValue.RECEIVED


class TestStatusAdvance:
    """Test which transitions are applied."""

    def test_happy_path_moves_forward(self):
        assert is_status_advance("sending", "sent")
        assert is_status_advance("sent", "delivered")
        assert is_status_advance("delivered", "read")
        assert is_status_advance("sent", "read")

    def test_never_regresses(self):
        assert not is_status_advance("read", "delivered")
        assert not is_status_advance("delivered", "sent")
        assert not is_status_advance("read", "sent")

    def test_repeated_status_is_not_a_change(self):
        assert not is_status_advance("delivered", "delivered")
        assert not is_status_advance("received", "received")

    def test_failed_only_before_delivery(self):
        assert is_status_advance("sending", "failed")
        assert is_status_advance("sent", "failed")
        assert not is_status_advance("delivered", "failed")
        assert not is_status_advance("read", "failed")

    def test_failed_is_terminal(self):
        assert not is_status_advance("failed", "sent")
        assert not is_status_advance("failed", "read")

    def test_inbound_message_can_be_read(self):
        assert is_status_advance("received", "read")

    def test_new_row_accepts_anything(self):
        assert is_status_advance(None, "delivered")

    def test_accepts_enum_members(self):
        assert is_status_advance(MessageStatusValue.SENT, MessageStatusValue.READ)
