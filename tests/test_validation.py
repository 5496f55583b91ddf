"""
Unit tests for ledger preconditions.
"""
import uuid
from decimal import Decimal

import pytest

from payment_systems.core.enums import PaymentMethodKind, TransactionStatus, TransactionType
from payment_systems.core.exceptions import PaymentValidationError
from payment_systems.core.validation import (
    Precondition,
    check_amount,
    check_capture,
    check_currency,
    check_payment,
    check_refund,
    check_void,
)
from payment_systems.database.models import Transaction


def transaction(
    transaction_type: TransactionType,
    status: TransactionStatus = TransactionStatus.COMPLETED,
    amount: str = "100.00",
    refunded: str = "0.00",
    gateway_reference: str = "pi_123",
) -> Transaction:
    return Transaction(
        id=uuid.uuid4(),
        merchant_reference="txn_test",
        transaction_type=transaction_type,
        status=status,
        payment_method=PaymentMethodKind.CREDIT_CARD,
        amount=Decimal(amount),
        refunded_amount=Decimal(refunded),
        currency="USD",
        idempotency_key="key",
        customer_id="cus_test_123",
        gateway_reference=gateway_reference,
    )


class TestAmountAndCurrency:
    @pytest.mark.unit
    def test_valid_amount_is_quantized(self) -> None:
        assert check_amount(Decimal("10.5")).require() == Decimal("10.50")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "amount,reason",
        [
            (Decimal("0"), "Amount must be positive"),
            (Decimal("-5.00"), "Amount must be positive"),
            (Decimal("NaN"), "Amount must be positive"),
            (Decimal("1.005"), "at most two decimal places"),
            (Decimal("100000000.00"), "exceeds maximum"),
        ],
    )
    def test_invalid_amount(self, amount, reason) -> None:
        result = check_amount(amount)

        assert not result.allowed
        assert reason in result.reason

    @pytest.mark.unit
    @pytest.mark.parametrize("currency", ["US", "USDX", "U$D", ""])
    def test_invalid_currency(self, currency) -> None:
        assert not check_currency(currency).allowed

    @pytest.mark.unit
    def test_payment_checks_currency_first(self) -> None:
        result = check_payment(Decimal("-1"), "XX")

        assert result.reason == "Currency must be 3-letter code"

    @pytest.mark.unit
    def test_require_raises_reason(self) -> None:
        with pytest.raises(PaymentValidationError, match="nope"):
            Precondition.deny("nope").require()


class TestCapture:
    @pytest.mark.unit
    def test_defaults_to_authorized_amount(self) -> None:
        auth = transaction(TransactionType.AUTHORIZATION)

        assert check_capture(auth).amount == Decimal("100.00")

    @pytest.mark.unit
    def test_partial_capture(self) -> None:
        auth = transaction(TransactionType.AUTHORIZATION)

        assert check_capture(auth, Decimal("40.00")).amount == Decimal("40.00")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "parent,amount,reason",
        [
            (transaction(TransactionType.PURCHASE), None, "Only authorizations"),
            (
                transaction(TransactionType.AUTHORIZATION, TransactionStatus.CANCELLED),
                None,
                "status: cancelled",
            ),
            (transaction(TransactionType.AUTHORIZATION), Decimal("100.01"), "exceeds authorized"),
            (
                transaction(TransactionType.AUTHORIZATION, gateway_reference=None),
                None,
                "no gateway reference",
            ),
        ],
    )
    def test_denied(self, parent, amount, reason) -> None:
        assert reason in check_capture(parent, amount).reason

    @pytest.mark.unit
    def test_earlier_captures_reduce_the_balance(self) -> None:
        auth = transaction(TransactionType.AUTHORIZATION)

        assert check_capture(auth, captured=Decimal("80.00")).amount == Decimal("20.00")
        assert "exceeds uncaptured amount 20.00" in (
            check_capture(auth, Decimal("80.00"), Decimal("80.00")).reason
        )
        assert not check_capture(auth, captured=Decimal("100.00")).allowed


class TestRefund:
    @pytest.mark.unit
    def test_defaults_to_remaining_balance(self) -> None:
        purchase = transaction(
            TransactionType.PURCHASE, TransactionStatus.PARTIALLY_REFUNDED, refunded="30.00"
        )

        assert check_refund(purchase).amount == Decimal("70.00")

    @pytest.mark.unit
    def test_exact_remaining_balance_allowed(self) -> None:
        capture = transaction(
            TransactionType.CAPTURE, TransactionStatus.PARTIALLY_REFUNDED, refunded="30.00"
        )

        assert check_refund(capture, Decimal("70.00")).allowed

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "parent,amount,reason",
        [
            (
                transaction(
                    TransactionType.PURCHASE, TransactionStatus.PARTIALLY_REFUNDED, refunded="30.00"
                ),
                Decimal("80.00"),
                "exceeds remaining refundable amount 70.00",
            ),
            (transaction(TransactionType.AUTHORIZATION), None, "Only purchases and captures"),
            (
                transaction(TransactionType.PURCHASE, TransactionStatus.REFUNDED, refunded="100.00"),
                None,
                "status: refunded",
            ),
            (transaction(TransactionType.PURCHASE, TransactionStatus.FAILED), None, "status: failed"),
        ],
    )
    def test_denied(self, parent, amount, reason) -> None:
        assert reason in check_refund(parent, amount).reason


class TestVoid:
    @pytest.mark.unit
    def test_completed_authorization(self) -> None:
        assert check_void(transaction(TransactionType.AUTHORIZATION)).allowed

    @pytest.mark.unit
    def test_purchase_cannot_be_voided(self) -> None:
        assert check_void(transaction(TransactionType.PURCHASE)).reason == (
            "Only authorizations can be voided"
        )

    @pytest.mark.unit
    def test_captured_authorization_cannot_be_voided(self) -> None:
        result = check_void(transaction(TransactionType.AUTHORIZATION), Decimal("0.01"))

        assert result.reason == "Cannot void an authorization that has been captured"

    @pytest.mark.unit
    def test_voided_authorization_cannot_be_voided_again(self) -> None:
        voided = transaction(TransactionType.AUTHORIZATION, TransactionStatus.CANCELLED)

        assert not check_void(voided).allowed
