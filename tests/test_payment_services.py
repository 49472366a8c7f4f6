"""Tests for the payment service implementations."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from hubplate.core.config import Settings
from hubplate.services.payment.mock import MockPaymentService
from hubplate.services.payment.stripe import StripePaymentService


# ── Mock service ──────────────────────────────────────────────────────────


class TestMockPaymentService:

    @pytest.fixture()
    def service(self):
        return MockPaymentService(failure_rate=0.0, min_latency=0, max_latency=0)

    async def test_terminal_intent_waits_for_reader(self, service):
        result = await service.create_terminal_payment_intent(2500, metadata={"order_id": "o-1"})

        assert result.success
        assert result.status == "requires_payment_method"
        assert result.payment_intent_id.startswith("pi_mock_")
        assert result.client_secret == f"{result.payment_intent_id}_secret_mock"
        assert not result.succeeded

    async def test_pay_at_table_intent_waits_for_guest(self, service):
        result = await service.create_payment_intent(2900, metadata={"order_id": "o-1"})

        assert result.success
        assert result.status == "requires_payment_method"
        assert service.intents[result.payment_intent_id]["amount"] == 2900

    async def test_manual_charge_succeeds(self, service):
        result = await service.create_and_confirm_payment_intent(2500, "pm_card_visa")
        assert result.succeeded

    async def test_declined_test_card(self, service):
        result = await service.create_and_confirm_payment_intent(2500, "pm_card_chargeDeclined")

        assert not result.success
        assert result.error_code == "card_declined"
        assert service.intents == {}

    async def test_authentication_required_test_card(self, service):
        result = await service.create_and_confirm_payment_intent(2500, "pm_card_authenticationRequired")

        assert result.success
        assert result.status == "requires_action"
        assert not result.succeeded

    async def test_random_declines(self):
        service = MockPaymentService(failure_rate=1.0, min_latency=0, max_latency=0)
        result = await service.create_and_confirm_payment_intent(2500, "pm_card_visa")
        assert not result.success
        assert result.error_code in {code for code, _ in MockPaymentService.DECLINE_REASONS}

    @pytest.mark.parametrize("amount", [0, -100])
    async def test_non_positive_amount(self, service, amount):
        result = await service.create_terminal_payment_intent(amount)
        assert not result.success
        assert result.error_code == "invalid_amount"


# ── Stripe service ────────────────────────────────────────────────────────


def _intent(**overrides):
    fields = dict(
        id="pi_live_1",
        status="succeeded",
        client_secret="pi_live_1_secret",
        amount=2500,
        currency="usd",
        metadata={"order_id": "o-1"},
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


@pytest.fixture()
def stripe_service():
    settings = Settings(_env_file=None, env_mode="staging", stripe_secret_key="sk_test_123")
    with patch("hubplate.services.payment.stripe.get_settings", return_value=settings):
        yield StripePaymentService()


class TestStripePaymentService:

    def test_requires_secret_key(self):
        settings = Settings(_env_file=None, env_mode="production", stripe_secret_key=None)
        with patch("hubplate.services.payment.stripe.get_settings", return_value=settings):
            with pytest.raises(ValueError):
                StripePaymentService()

    async def test_terminal_intent_parameters(self, stripe_service):
        with patch("stripe.PaymentIntent.create", return_value=_intent(status="requires_payment_method")) as create:
            result = await stripe_service.create_terminal_payment_intent(
                2500,
                metadata={"order_id": "o-1"},
                destination_account="acct_1",
                application_fee_cents=63,
            )

        assert result.success
        kwargs = create.call_args.kwargs
        assert kwargs["payment_method_types"] == ["card_present"]
        assert kwargs["capture_method"] == "automatic"
        assert kwargs["transfer_data"] == {"destination": "acct_1"}
        assert kwargs["application_fee_amount"] == 63

    async def test_pay_at_table_parameters(self, stripe_service):
        with patch("stripe.PaymentIntent.create", return_value=_intent(status="requires_payment_method")) as create:
            result = await stripe_service.create_payment_intent(
                2900, metadata={"order_id": "o-1"}, destination_account="acct_1", application_fee_cents=73
            )

        assert result.client_secret == "pi_live_1_secret"
        kwargs = create.call_args.kwargs
        assert kwargs["automatic_payment_methods"] == {"enabled": True}
        assert "confirm" not in kwargs
        assert "payment_method_types" not in kwargs
        assert kwargs["transfer_data"] == {"destination": "acct_1"}
        assert kwargs["application_fee_amount"] == 73

    async def test_manual_charge_disables_redirects(self, stripe_service):
        with patch("stripe.PaymentIntent.create", return_value=_intent()) as create:
            result = await stripe_service.create_and_confirm_payment_intent(2500, "pm_card_visa")

        assert result.succeeded
        kwargs = create.call_args.kwargs
        assert kwargs["confirm"] is True
        assert kwargs["automatic_payment_methods"] == {"enabled": True, "allow_redirects": "never"}
        assert "transfer_data" not in kwargs
        assert "application_fee_amount" not in kwargs

    async def test_card_error(self, stripe_service):
        error = stripe.CardError("Your card has insufficient funds.", None, "card_declined")
        with patch("stripe.PaymentIntent.create", side_effect=error):
            result = await stripe_service.create_and_confirm_payment_intent(2500, "pm_card_visa")

        assert not result.success
        assert result.error_code == "card_declined"

    async def test_connection_error(self, stripe_service):
        with patch("stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("timeout")):
            result = await stripe_service.create_terminal_payment_intent(2500)

        assert not result.success
        assert result.error_code == "connection_error"

    async def test_connection_token(self, stripe_service):
        with patch("stripe.terminal.ConnectionToken.create", return_value=SimpleNamespace(secret="pst_live_1")):
            result = await stripe_service.create_connection_token()

        assert result.success
        assert result.secret == "pst_live_1"
