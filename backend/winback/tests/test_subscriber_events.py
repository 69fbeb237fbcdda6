"""Tests for delivery receipts and inbound keywords.

WHAT: apply_delivery_status and handle_inbound (STOP / HELP)
WHY: A delivered first message opens the recovery window; STOP must stop
     every later message

REFERENCES:
  - winback/services/subscriber_events.py
"""

import asyncio

import pytest

from winback.models import MessageStatusEnum, RecoveryStateEnum, SubscriberStatusEnum, UnsubscribeReasonEnum
from winback.services.claim_manager import ClaimManager
from winback.services.eligibility import EligibilityScanner
from winback.services.message_templates import help_response, stop_confirmation
from winback.services.quiet_hours import QuietHoursClock
from winback.services.subscriber_events import SubscriberEventService


@pytest.fixture
def events(store, transport):
    return SubscriberEventService(store, transport)


class TestDeliveryStatus:

    def test_first_message_delivered(self, events, store, make_subscriber):
        sub = make_subscriber(first_message_status=MessageStatusEnum.queued, first_message_id="m-1")

        assert events.apply_delivery_status("m-1", "delivered") == "first"

        row = store.get(sub.id)
        assert row.first_message_status == MessageStatusEnum.delivered
        assert row.total_messages_delivered == 1

    def test_duplicate_receipt_does_not_double_count(self, events, store, make_subscriber):
        sub = make_subscriber(first_message_status=MessageStatusEnum.queued, first_message_id="m-2")

        events.apply_delivery_status("m-2", "delivered")
        events.apply_delivery_status("m-2", "delivered")

        assert store.get(sub.id).total_messages_delivered == 1

    def test_late_sent_receipt_does_not_undo_delivered(self, events, store, make_subscriber, config, clock):
        sub = make_subscriber(first_message_status=MessageStatusEnum.queued, first_message_id="m-x")

        assert events.apply_delivery_status("m-x", "delivered") == "first"
        assert events.apply_delivery_status("m-x", "sent") is None

        row = store.get(sub.id)
        assert row.first_message_status == MessageStatusEnum.delivered
        assert row.total_messages_delivered == 1
        quiet_hours = QuietHoursClock("America/New_York", clock=clock)
        scanner = EligibilityScanner(store, quiet_hours, config, clock)
        assert [s.id for s in scanner.find_schedulable()] == [sub.id]

    def test_receipts_move_forward(self, events, store, make_subscriber):
        sub = make_subscriber(first_message_status=MessageStatusEnum.queued, first_message_id="m-y")

        events.apply_delivery_status("m-y", "sent")
        assert store.get(sub.id).first_message_status == MessageStatusEnum.sent

        events.apply_delivery_status("m-y", "queued")
        assert store.get(sub.id).first_message_status == MessageStatusEnum.sent

        events.apply_delivery_status("m-y", "delivery_failed")
        assert store.get(sub.id).first_message_status == MessageStatusEnum.failed

    def test_recovery_message_failure(self, events, store, make_subscriber):
        sub = make_subscriber(
            recovery_message_id="r-1",
            recovery_status=MessageStatusEnum.sent,
            recovery_state=RecoveryStateEnum.sent,
            recovery_sent=True,
        )

        assert events.apply_delivery_status("r-1", "delivery_failed", "Unreachable") == "recovery"

        row = store.get(sub.id)
        assert row.recovery_status == MessageStatusEnum.failed
        assert row.recovery_error == "Unreachable"
        assert row.total_messages_failed == 1

    def test_unknown_message_id(self, events):
        assert events.apply_delivery_status("nope", "delivered") is None


class TestInbound:

    def test_stop_unsubscribes(self, events, store, make_subscriber, transport):
        sub = make_subscriber(phone="+12015550150")

        outcome = asyncio.run(events.handle_inbound("+12015550150", "  Stop "))

        assert outcome == "unsubscribed"
        row = store.get(sub.id)
        assert row.status == SubscriberStatusEnum.unsubscribed
        assert row.unsubscribe_reason == UnsubscribeReasonEnum.stop_keyword
        assert row.unsubscribe_after_message == "first"
        assert transport.sent == [("+12015550150", stop_confirmation())]

    def test_stop_after_recovery_message(self, events, store, make_subscriber):
        sub = make_subscriber(phone="+12015550151", recovery_message_id="r-9")

        asyncio.run(events.handle_inbound("2015550151", "UNSUBSCRIBE"))

        assert store.get(sub.id).unsubscribe_after_message == "recovery"

    def test_second_stop_is_noop(self, events, make_subscriber, transport):
        make_subscriber(phone="+12015550152")
        asyncio.run(events.handle_inbound("+12015550152", "STOP"))

        assert asyncio.run(events.handle_inbound("+12015550152", "STOP")) == "already_unsubscribed"
        assert len(transport.sent) == 1

    def test_unsubscribed_subscriber_cannot_be_claimed(self, events, store, make_subscriber):
        sub = make_subscriber(phone="+12015550153", recovery_state=RecoveryStateEnum.scheduled)
        asyncio.run(events.handle_inbound("+12015550153", "stop"))

        assert ClaimManager(store).try_claim(sub.id) is None

    def test_help(self, events, make_subscriber, transport):
        make_subscriber(phone="+12015550154")

        assert asyncio.run(events.handle_inbound("+12015550154", "help")) == "help"
        assert transport.sent == [("+12015550154", help_response())]

    def test_other_text_ignored(self, events, make_subscriber, transport):
        make_subscriber(phone="+12015550155")

        assert asyncio.run(events.handle_inbound("+12015550155", "Love these pickles")) == "ignored"
        assert transport.sent == []

    def test_unknown_number(self, events):
        assert asyncio.run(events.handle_inbound("+12015559999", "STOP")) == "unknown_number"
