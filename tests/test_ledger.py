"""
Tests for the transaction ledger.
"""
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from payment_systems.core.enums import PaymentMethodKind, TransactionStatus, TransactionType
from payment_systems.core.exceptions import (
    IdempotencyConflictError,
    NotFoundError,
    PaymentValidationError,
)
from payment_systems.core.ledger import DUPLICATE_MESSAGE
from payment_systems.core.types import CaptureRequest, RefundRequest, VoidRequest
from payment_systems.database.models import Transaction
from payment_systems.integrations.gateway import GatewayError, GatewayErrorType, GatewayResult

from tests.conftest import decline, make_instrument, payment_request


async def count_transactions(db) -> int:
    return await db.scalar(select(func.count()).select_from(Transaction))


class TestPurchase:
    """Purchases and idempotent replays."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_purchase_success(self, services, gateway, test_db) -> None:
        """A successful purchase is COMPLETED with the gateway's reference."""
        gateway.script(
            "purchase",
            GatewayResult(success=True, gateway_ref="g1", auth_code="A1", raw_payload={"id": "g1"}),
        )

        response = await services.ledger.create_purchase(payment_request("order-1"), test_db)

        assert response.status == TransactionStatus.COMPLETED
        assert response.operation == TransactionType.PURCHASE
        assert response.gateway_reference == "g1"
        assert response.auth_code == "A1"
        assert response.amount == Decimal("100.00")
        assert response.currency == "USD"
        assert response.duplicate is False
        assert response.succeeded
        assert gateway.count("purchase") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_key_returns_existing_without_gateway_call(
        self, services, gateway, test_db
    ) -> None:
        first = await services.ledger.create_purchase(payment_request("order-1"), test_db)
        second = await services.ledger.create_purchase(payment_request("order-1"), test_db)

        assert second.duplicate is True
        assert second.message == DUPLICATE_MESSAGE
        assert second.transaction_id == first.transaction_id
        assert second.status == TransactionStatus.COMPLETED
        assert gateway.count("purchase") == 1
        assert await count_transactions(test_db) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_decline_is_recorded_and_replayed(self, services, gateway, test_db) -> None:
        """A decline is a FAILED row, and retrying the same key echoes it."""
        gateway.script("purchase", decline("Insufficient funds"))

        response = await services.ledger.create_purchase(payment_request("order-2"), test_db)
        replay = await services.ledger.create_purchase(payment_request("order-2"), test_db)

        assert response.status == TransactionStatus.FAILED
        assert response.message == "Insufficient funds"
        assert not response.succeeded
        assert replay.duplicate is True
        assert replay.status == TransactionStatus.FAILED
        assert gateway.count("purchase") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_in_flight_key_conflicts(self, services, gateway, test_db) -> None:
        test_db.add(
            Transaction(
                id=uuid.uuid4(),
                merchant_reference="txn_in_flight",
                transaction_type=TransactionType.PURCHASE,
                status=TransactionStatus.PROCESSING,
                payment_method=PaymentMethodKind.CREDIT_CARD,
                amount=Decimal("100.00"),
                refunded_amount=Decimal("0.00"),
                currency="USD",
                idempotency_key="order-3",
                customer_id="cus_test_123",
            )
        )
        await test_db.commit()

        with pytest.raises(IdempotencyConflictError):
            await services.ledger.create_purchase(payment_request("order-3"), test_db)
        assert gateway.count("purchase") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_key_reused_for_other_operation_conflicts(
        self, services, gateway, test_db
    ) -> None:
        await services.ledger.create_purchase(payment_request("order-4"), test_db)

        with pytest.raises(IdempotencyConflictError, match="purchase"):
            await services.ledger.create_authorization(payment_request("order-4"), test_db)
        assert gateway.count("authorize") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount,currency,match",
        [
            ("0.00", "USD", "Amount must be positive"),
            ("-5.00", "USD", "Amount must be positive"),
            ("10.001", "USD", "two decimal places"),
            ("100000000.00", "USD", "exceeds maximum"),
            ("10.00", "US", "Currency must be 3-letter code"),
        ],
    )
    async def test_invalid_request_writes_nothing(
        self, services, gateway, test_db, amount, currency, match
    ) -> None:
        with pytest.raises(PaymentValidationError, match=match):
            await services.ledger.create_purchase(
                payment_request("order-5", amount=amount, currency=currency), test_db
            )
        assert gateway.calls == []
        assert await count_transactions(test_db) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_idempotency_key_rejected(self, services, test_db) -> None:
        with pytest.raises(PaymentValidationError, match="Idempotency key is required"):
            await services.ledger.create_purchase(payment_request("  "), test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_instrument_rejected(self, services, gateway, test_db) -> None:
        request = payment_request("order-6", instrument=make_instrument(is_active=False))

        with pytest.raises(PaymentValidationError, match="not active"):
            await services.ledger.create_purchase(request, test_db)
        assert gateway.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_error_rolls_back_and_key_stays_usable(
        self, services, gateway, test_db
    ) -> None:
        """An infrastructure error leaves no row, so the caller can retry the same key."""
        gateway.script(
            "purchase", GatewayError("Stripe is unavailable", GatewayErrorType.TRANSIENT)
        )

        with pytest.raises(GatewayError):
            await services.ledger.create_purchase(payment_request("order-7"), test_db)
        assert await count_transactions(test_db) == 0

        retried = await services.ledger.create_purchase(payment_request("order-7"), test_db)
        assert retried.status == TransactionStatus.COMPLETED
        assert retried.duplicate is False
        assert gateway.count("purchase") == 2


class TestFollowUpOperations:
    """Capture, refund and void against a parent transaction."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_capture_leaves_authorization_unchanged(
        self, services, gateway, test_db
    ) -> None:
        auth = await services.ledger.create_authorization(payment_request("auth-1"), test_db)

        capture = await services.ledger.capture_payment(
            CaptureRequest(
                idempotency_key="cap-1",
                transaction_id=auth.transaction_id,
                amount=Decimal("50.00"),
            ),
            test_db,
        )

        assert capture.status == TransactionStatus.COMPLETED
        assert capture.operation == TransactionType.CAPTURE
        assert capture.amount == Decimal("50.00")
        assert capture.parent_transaction_id == auth.transaction_id
        parent = await services.ledger.get_transaction(auth.transaction_id, test_db)
        assert parent.amount == Decimal("100.00")
        assert parent.status == TransactionStatus.COMPLETED
        assert gateway.calls[-1] == (
            "capture",
            {"gateway_ref": auth.gateway_reference, "amount": Decimal("50.00")},
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_defaults_to_authorized_amount(self, services, test_db) -> None:
        auth = await services.ledger.create_authorization(
            payment_request("auth-2", amount="75.50"), test_db
        )

        capture = await services.ledger.capture_payment(
            CaptureRequest(idempotency_key="cap-2", transaction_id=auth.transaction_id),
            test_db,
        )

        assert capture.amount == Decimal("75.50")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_over_authorized_amount_rejected(
        self, services, gateway, test_db
    ) -> None:
        auth = await services.ledger.create_authorization(payment_request("auth-3"), test_db)

        with pytest.raises(PaymentValidationError, match="exceeds authorized amount"):
            await services.ledger.capture_payment(
                CaptureRequest(
                    idempotency_key="cap-3",
                    transaction_id=auth.transaction_id,
                    amount=Decimal("100.01"),
                ),
                test_db,
            )
        assert gateway.count("capture") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_captures_cannot_add_up_past_authorized_amount(
        self, services, gateway, test_db
    ) -> None:
        """Capture 80 of 100, then a second capture of 80 is rejected because only 20 remain."""
        auth = await services.ledger.create_authorization(payment_request("auth-5"), test_db)
        await services.ledger.capture_payment(
            CaptureRequest(
                idempotency_key="cap-5a",
                transaction_id=auth.transaction_id,
                amount=Decimal("80.00"),
            ),
            test_db,
        )

        with pytest.raises(PaymentValidationError, match="exceeds uncaptured amount 20.00"):
            await services.ledger.capture_payment(
                CaptureRequest(
                    idempotency_key="cap-5b",
                    transaction_id=auth.transaction_id,
                    amount=Decimal("80.00"),
                ),
                test_db,
            )
        rest = await services.ledger.capture_payment(
            CaptureRequest(idempotency_key="cap-5c", transaction_id=auth.transaction_id),
            test_db,
        )

        assert rest.amount == Decimal("20.00")
        assert gateway.count("capture") == 2
        with pytest.raises(PaymentValidationError, match="already been fully captured"):
            await services.ledger.capture_payment(
                CaptureRequest(idempotency_key="cap-5d", transaction_id=auth.transaction_id),
                test_db,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declined_capture_does_not_use_up_authorization(
        self, services, gateway, test_db
    ) -> None:
        auth = await services.ledger.create_authorization(payment_request("auth-6"), test_db)
        gateway.script("capture", decline("Authorization expired"))
        await services.ledger.capture_payment(
            CaptureRequest(idempotency_key="cap-6a", transaction_id=auth.transaction_id),
            test_db,
        )

        capture = await services.ledger.capture_payment(
            CaptureRequest(idempotency_key="cap-6b", transaction_id=auth.transaction_id),
            test_db,
        )

        assert capture.status == TransactionStatus.COMPLETED
        assert capture.amount == Decimal("100.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_captured_authorization_cannot_be_voided(
        self, services, gateway, test_db
    ) -> None:
        auth = await services.ledger.create_authorization(payment_request("auth-7"), test_db)
        await services.ledger.capture_payment(
            CaptureRequest(
                idempotency_key="cap-7",
                transaction_id=auth.transaction_id,
                amount=Decimal("40.00"),
            ),
            test_db,
        )

        with pytest.raises(PaymentValidationError, match="has been captured"):
            await services.ledger.cancel_payment(
                VoidRequest(idempotency_key="void-7", transaction_id=auth.transaction_id),
                test_db,
            )

        parent = await services.ledger.get_transaction(auth.transaction_id, test_db)
        assert parent.status == TransactionStatus.COMPLETED
        assert gateway.count("void") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_of_purchase_rejected(self, services, test_db) -> None:
        purchase = await services.ledger.create_purchase(payment_request("p-1"), test_db)

        with pytest.raises(PaymentValidationError, match="Only authorizations can be captured"):
            await services.ledger.capture_payment(
                CaptureRequest(idempotency_key="cap-4", transaction_id=purchase.transaction_id),
                test_db,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_then_excess_refund(self, services, gateway, test_db) -> None:
        """Refund 30 of 100, then a refund of 80 is rejected because only 70 remains."""
        purchase = await services.ledger.create_purchase(payment_request("p-2"), test_db)

        refund = await services.ledger.refund_payment(
            RefundRequest(
                idempotency_key="ref-1",
                transaction_id=purchase.transaction_id,
                amount=Decimal("30.00"),
                reason="requested_by_customer",
            ),
            test_db,
        )

        assert refund.status == TransactionStatus.COMPLETED
        assert refund.operation == TransactionType.REFUND
        parent = await services.ledger.get_transaction(purchase.transaction_id, test_db)
        assert parent.refunded_amount == Decimal("30.00")
        assert parent.status == TransactionStatus.PARTIALLY_REFUNDED

        with pytest.raises(PaymentValidationError, match="remaining refundable amount 70.00"):
            await services.ledger.refund_payment(
                RefundRequest(
                    idempotency_key="ref-2",
                    transaction_id=purchase.transaction_id,
                    amount=Decimal("80.00"),
                ),
                test_db,
            )
        assert gateway.count("refund") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_defaults_to_remaining_and_completes_parent(
        self, services, gateway, test_db
    ) -> None:
        purchase = await services.ledger.create_purchase(payment_request("p-3"), test_db)
        await services.ledger.refund_payment(
            RefundRequest(
                idempotency_key="ref-3",
                transaction_id=purchase.transaction_id,
                amount=Decimal("25.00"),
            ),
            test_db,
        )

        rest = await services.ledger.refund_payment(
            RefundRequest(idempotency_key="ref-4", transaction_id=purchase.transaction_id),
            test_db,
        )

        assert rest.amount == Decimal("75.00")
        parent = await services.ledger.get_transaction(purchase.transaction_id, test_db)
        assert parent.refunded_amount == Decimal("100.00")
        assert parent.status == TransactionStatus.REFUNDED
        assert gateway.calls[-1][1]["instrument_hint"] == "4242"

        with pytest.raises(PaymentValidationError, match="Cannot refund"):
            await services.ledger.refund_payment(
                RefundRequest(idempotency_key="ref-5", transaction_id=purchase.transaction_id),
                test_db,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declined_refund_leaves_parent_untouched(
        self, services, gateway, test_db
    ) -> None:
        purchase = await services.ledger.create_purchase(payment_request("p-4"), test_db)
        gateway.script("refund", decline("Charge already disputed"))

        refund = await services.ledger.refund_payment(
            RefundRequest(
                idempotency_key="ref-6",
                transaction_id=purchase.transaction_id,
                amount=Decimal("10.00"),
            ),
            test_db,
        )

        assert refund.status == TransactionStatus.FAILED
        assert refund.message == "Charge already disputed"
        parent = await services.ledger.get_transaction(purchase.transaction_id, test_db)
        assert parent.refunded_amount == Decimal("0.00")
        assert parent.status == TransactionStatus.COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_of_capture(self, services, test_db) -> None:
        auth = await services.ledger.create_authorization(payment_request("auth-4"), test_db)
        capture = await services.ledger.capture_payment(
            CaptureRequest(
                idempotency_key="cap-5",
                transaction_id=auth.transaction_id,
                amount=Decimal("60.00"),
            ),
            test_db,
        )

        refund = await services.ledger.refund_payment(
            RefundRequest(idempotency_key="ref-7", transaction_id=capture.transaction_id),
            test_db,
        )

        assert refund.amount == Decimal("60.00")
        parent = await services.ledger.get_transaction(capture.transaction_id, test_db)
        assert parent.status == TransactionStatus.REFUNDED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_of_authorization_rejected(self, services, test_db) -> None:
        auth = await services.ledger.create_authorization(payment_request("auth-5"), test_db)

        with pytest.raises(PaymentValidationError, match="Only purchases and captures"):
            await services.ledger.refund_payment(
                RefundRequest(idempotency_key="ref-8", transaction_id=auth.transaction_id),
                test_db,
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_void_cancels_authorization(self, services, gateway, test_db) -> None:
        auth = await services.ledger.create_authorization(payment_request("auth-6"), test_db)

        void = await services.ledger.cancel_payment(
            VoidRequest(idempotency_key="void-1", transaction_id=auth.transaction_id),
            test_db,
        )

        assert void.status == TransactionStatus.COMPLETED
        assert void.operation == TransactionType.VOID
        parent = await services.ledger.get_transaction(auth.transaction_id, test_db)
        assert parent.status == TransactionStatus.CANCELLED

        with pytest.raises(PaymentValidationError, match="Cannot capture"):
            await services.ledger.capture_payment(
                CaptureRequest(idempotency_key="cap-6", transaction_id=auth.transaction_id),
                test_db,
            )
        assert gateway.count("capture") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_follow_up_replay(self, services, gateway, test_db) -> None:
        auth = await services.ledger.create_authorization(payment_request("auth-7"), test_db)
        request = CaptureRequest(idempotency_key="cap-7", transaction_id=auth.transaction_id)

        first = await services.ledger.capture_payment(request, test_db)
        second = await services.ledger.capture_payment(request, test_db)

        assert second.duplicate is True
        assert second.transaction_id == first.transaction_id
        assert gateway.count("capture") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_parent(self, services, test_db) -> None:
        with pytest.raises(NotFoundError):
            await services.ledger.refund_payment(
                RefundRequest(idempotency_key="ref-9", transaction_id=uuid.uuid4()), test_db
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_child_transactions(self, services, test_db) -> None:
        purchase = await services.ledger.create_purchase(payment_request("p-5"), test_db)
        for key in ("ref-10", "ref-11"):
            await services.ledger.refund_payment(
                RefundRequest(
                    idempotency_key=key,
                    transaction_id=purchase.transaction_id,
                    amount=Decimal("10.00"),
                ),
                test_db,
            )

        children = await services.ledger.list_child_transactions(
            purchase.transaction_id, test_db
        )

        assert [child.operation for child in children] == [TransactionType.REFUND] * 2
        assert all(child.parent_transaction_id == purchase.transaction_id for child in children)


class TestGetTransaction:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_unknown_transaction(self, services, test_db) -> None:
        with pytest.raises(NotFoundError):
            await services.ledger.get_transaction(uuid.uuid4(), test_db)
