"""Tests for the transaction and dispute state machine guards.

These tests verify that:
    1. The courier and pickup forward paths are allowed end to end.
    2. Courier-only steps are refused for pickup trades (and vice versa).
    3. Side-states (cancel, dispute) and dispute outcomes behave correctly.
    4. The convenience functions validate transitions without side effects.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from escrow_coordinator.domain.state_machine import (
    DisputeStateMachine,
    TransactionStateMachine,
    can_fire,
    next_dispute_status,
    next_transaction_status,
)


class TestCourierPath:
    """PENDING -> COMPLETED for a trade shipped by courier."""

    def test_full_lifecycle(self) -> None:
        sm = TransactionStateMachine("PENDING", use_courier=True)

        sm.join()
        assert sm.status == "ACTIVE"

        sm.request_delivery_details()
        assert sm.status == "WAITING_FOR_DELIVERY_DETAILS"

        sm.provide_delivery_details()
        assert sm.status == "WAITING_FOR_PAYMENT"

        sm.make_payment()
        assert sm.status == "WAITING_FOR_SHIPMENT"

        sm.confirm_shipment()
        assert sm.status == "WAITING_FOR_BUYER_CONFIRMATION"

        sm.confirm_receipt()
        assert sm.status == "COMPLETED"

    def test_imported_delivery_details(self) -> None:
        sm = TransactionStateMachine("ACTIVE", use_courier=True)
        sm.import_delivery_details()
        assert sm.status == "DELIVERY_DETAILS_IMPORTED"

        sm.make_payment()
        assert sm.status == "WAITING_FOR_SHIPMENT"

    def test_buyer_may_provide_details_unprompted(self) -> None:
        assert next_transaction_status("ACTIVE", True, "provide_delivery_details") == (
            "WAITING_FOR_PAYMENT"
        )


class TestPickupPath:
    """PENDING -> COMPLETED for a trade collected in person."""

    def test_full_lifecycle(self) -> None:
        sm = TransactionStateMachine("PENDING", use_courier=False)
        sm.join()
        sm.make_payment()
        assert sm.status == "PAYMENT_MADE"

        sm.confirm_shipment()
        assert sm.status == "SHIPMENT_CONFIRMED"

        sm.confirm_receipt()
        assert sm.status == "COMPLETED"

    def test_delivery_details_refused(self) -> None:
        sm = TransactionStateMachine("ACTIVE", use_courier=False)
        with pytest.raises(TransitionNotAllowed):
            sm.request_delivery_details()
        assert sm.status == "ACTIVE"

    def test_courier_payment_branch_not_taken(self) -> None:
        assert next_transaction_status("WAITING_FOR_PAYMENT", False, "make_payment") == (
            "PAYMENT_MADE"
        )
        assert next_transaction_status("WAITING_FOR_PAYMENT", True, "make_payment") == (
            "WAITING_FOR_SHIPMENT"
        )


class TestSideStates:
    @pytest.mark.parametrize(
        "status",
        [
            "PENDING",
            "ACTIVE",
            "WAITING_FOR_PAYMENT",
            "WAITING_FOR_SHIPMENT",
            "WAITING_FOR_BUYER_CONFIRMATION",
        ],
    )
    def test_cancel_from_open_status(self, status: str) -> None:
        assert next_transaction_status(status, True, "cancel") == "CANCELLED"

    def test_dispute_needs_a_joined_trade(self) -> None:
        assert not can_fire("PENDING", True, "raise_dispute")
        assert can_fire("ACTIVE", True, "raise_dispute")

    def test_dispute_outcomes(self) -> None:
        assert next_transaction_status("DISPUTED", True, "release_payment") == "COMPLETED"
        assert next_transaction_status("DISPUTED", True, "refund") == "CANCELLED"

    def test_disputed_cannot_be_cancelled(self) -> None:
        assert not can_fire("DISPUTED", True, "cancel")


class TestIllegalTransitions:
    def test_pending_to_completed(self) -> None:
        sm = TransactionStateMachine("PENDING")
        with pytest.raises(TransitionNotAllowed):
            sm.confirm_receipt()

    def test_no_skipping_payment(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            next_transaction_status("WAITING_FOR_PAYMENT", True, "confirm_shipment")

    def test_completed_is_final(self) -> None:
        sm = TransactionStateMachine("COMPLETED")
        assert sm.get_allowed_events() == []

    def test_cancelled_is_final(self) -> None:
        assert not can_fire("CANCELLED", True, "raise_dispute")
        assert not can_fire("CANCELLED", True, "join")


class TestAllowedEvents:
    def test_pending_allowed(self) -> None:
        allowed = TransactionStateMachine("PENDING").get_allowed_events()
        assert set(allowed) == {"join", "cancel"}

    def test_disputed_allowed(self) -> None:
        allowed = TransactionStateMachine("DISPUTED").get_allowed_events()
        assert set(allowed) == {"release_payment", "refund"}


class TestDisputeMachine:
    def test_escalate_then_resolve_then_close(self) -> None:
        sm = DisputeStateMachine("OPEN")
        sm.escalate()
        sm.resolve()
        sm.close()
        assert sm.status == "CLOSED"

    def test_next_dispute_status(self) -> None:
        assert next_dispute_status("OPEN", "IN_REVIEW") == "IN_REVIEW"
        assert next_dispute_status("OPEN", "RESOLVED") == "RESOLVED"
        assert next_dispute_status("RESOLVED", "CLOSED") == "CLOSED"

    def test_no_way_back_to_open(self) -> None:
        with pytest.raises(ValueError, match="No dispute event"):
            next_dispute_status("IN_REVIEW", "OPEN")

    def test_resolved_cannot_escalate(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            next_dispute_status("RESOLVED", "IN_REVIEW")


class TestConvenienceFunctions:
    def test_unknown_action(self) -> None:
        with pytest.raises(ValueError, match="Unknown action"):
            next_transaction_status("ACTIVE", True, "teleport")

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            TransactionStateMachine("INVALID_STATUS")
