"""
Tests for the checkout session state machine.

Tests cover:
- create / update merge semantics
- complete with delegated and direct payment references
- cancel, finalization and expiry transitions
"""
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from agentic_checkout.exceptions import (
    AmountExceedsAllowanceError,
    PaymentDeclinedError,
    ProcessingError,
    SessionExpiredError,
    SessionFinalizedError,
    SessionNotFoundError,
    SessionNotReadyError,
    TokenAlreadyUsedError,
)
from agentic_checkout.models.checkout import (
    Address,
    Buyer,
    CreateCheckoutSessionRequest,
    DelegatedPaymentReference,
    DirectPaymentReference,
    Item,
    UpdateCheckoutSessionRequest,
)
from agentic_checkout.models.delegated_payment import Allowance
from agentic_checkout.mocks.payment_processor import UNAVAILABLE_TOKEN, charge_payment
from agentic_checkout.services.checkout_service import CheckoutSessionMachine

from conftest import SHIPPING_ADDRESS, RecordingNotifier


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def machine(services, notifier, clock):
    return CheckoutSessionMachine(
        services.session_factory,
        pricing=services.pricing,
        vault=services.vault,
        charge=charge_payment,
        notifier=notifier,
        base_url="https://shop.example.com",
        expiry_minutes=30,
        clock=clock,
    )


async def ready_session(machine):
    session = await machine.create(CreateCheckoutSessionRequest(
        items=[Item(id="item_123", quantity=1)],
        fulfillment_address=Address(**SHIPPING_ADDRESS),
    ))
    return await machine.update(session.id, UpdateCheckoutSessionRequest(fulfillment_option_id="shipping_standard"))


async def issue_token(services, clock, session_id, max_amount=430, currency="usd"):
    response = await services.vault.issue("tok_visa_test", Allowance(
        reason="one_time",
        max_amount=max_amount,
        currency=currency,
        checkout_session_id=session_id,
        merchant_id="merchant_demo",
        expires_at=clock() + timedelta(hours=1),
    ))
    return response.id


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_without_address(self, machine, clock):
        session = await machine.create(CreateCheckoutSessionRequest(items=[Item(id="item_123", quantity=1)]))

        assert session.id.startswith("cs_")
        assert session.status == "not_ready_for_payment"
        assert session.fulfillment_options == []
        assert session.currency == "usd"
        assert session.expires_at == clock() + timedelta(minutes=30)
        assert session.order is None

    @pytest.mark.asyncio
    async def test_create_keeps_unknown_items_as_errors(self, machine):
        session = await machine.create(CreateCheckoutSessionRequest(
            items=[Item(id="item_123", quantity=1), Item(id="ghost", quantity=1)],
            fulfillment_address=Address(**SHIPPING_ADDRESS),
        ))

        assert session.status == "not_ready_for_payment"
        assert [li.item.id for li in session.line_items] == ["item_123"]
        assert any(m.type == "error" and "ghost" in m.param for m in session.messages)

    @pytest.mark.asyncio
    async def test_get_returns_stored_session(self, machine):
        created = await machine.create(CreateCheckoutSessionRequest(items=[Item(id="item_123", quantity=1)]))
        fetched = await machine.get(created.id)
        assert fetched == created

    @pytest.mark.asyncio
    async def test_get_unknown(self, machine):
        with pytest.raises(SessionNotFoundError):
            await machine.get("cs_missing")


class TestUpdate:

    @pytest.mark.asyncio
    async def test_update_reaches_ready(self, machine):
        session = await ready_session(machine)

        assert session.status == "ready_for_payment"
        assert session.fulfillment_option_id == "shipping_standard"
        assert session.amount_of("total") == 430

    @pytest.mark.asyncio
    async def test_omitted_fields_keep_prior_values(self, machine):
        session = await ready_session(machine)

        updated = await machine.update(session.id, UpdateCheckoutSessionRequest(
            buyer=Buyer(first_name="Ada", email="ada@example.com"),
        ))

        assert updated.buyer.first_name == "Ada"
        assert updated.fulfillment_address == session.fulfillment_address
        assert updated.fulfillment_option_id == "shipping_standard"
        assert [li.item for li in updated.line_items] == [li.item for li in session.line_items]
        assert updated.created_at == session.created_at

    @pytest.mark.asyncio
    async def test_items_replaced_and_repriced(self, machine):
        session = await ready_session(machine)

        updated = await machine.update(session.id, UpdateCheckoutSessionRequest(
            items=[Item(id="item_123", quantity=3)],
        ))

        assert updated.amount_of("subtotal") == 900
        assert updated.amount_of("total") == 900 + 90 + 100

    @pytest.mark.asyncio
    async def test_unresolved_items_survive_updates(self, machine):
        session = await machine.create(CreateCheckoutSessionRequest(
            items=[Item(id="ghost", quantity=1), Item(id="item_123", quantity=1)],
        ))

        updated = await machine.update(session.id, UpdateCheckoutSessionRequest(
            fulfillment_address=Address(**SHIPPING_ADDRESS),
        ))

        assert any(m.type == "error" and "ghost" in m.param for m in updated.messages)

    @pytest.mark.asyncio
    async def test_option_selected_before_address(self, machine):
        session = await machine.create(CreateCheckoutSessionRequest(items=[Item(id="item_123", quantity=1)]))

        selected = await machine.update(session.id, UpdateCheckoutSessionRequest(
            fulfillment_option_id="shipping_standard",
        ))

        assert selected.status == "not_ready_for_payment"
        assert selected.fulfillment_option_id is None
        errors = [m for m in selected.messages if m.type == "error"]
        assert [m.param for m in errors] == ["$.fulfillment_option_id"]

        addressed = await machine.update(session.id, UpdateCheckoutSessionRequest(
            fulfillment_address=Address(**SHIPPING_ADDRESS),
            fulfillment_option_id="shipping_standard",
        ))
        assert addressed.status == "ready_for_payment"
        assert addressed.fulfillment_option_id == "shipping_standard"

    @pytest.mark.asyncio
    async def test_update_unknown(self, machine):
        with pytest.raises(SessionNotFoundError):
            await machine.update("cs_missing", UpdateCheckoutSessionRequest())

    @pytest.mark.asyncio
    async def test_update_after_cancel_rejected(self, machine):
        session = await ready_session(machine)
        await machine.cancel(session.id)

        with pytest.raises(SessionFinalizedError) as exc_info:
            await machine.update(session.id, UpdateCheckoutSessionRequest())
        assert exc_info.value.status_code == 405

    @pytest.mark.asyncio
    async def test_update_after_expiry_cancels(self, machine, clock):
        session = await ready_session(machine)
        clock.advance(minutes=31)

        with pytest.raises(SessionExpiredError):
            await machine.update(session.id, UpdateCheckoutSessionRequest())

        stored = await machine.get(session.id)
        assert stored.status == "canceled"

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_not_lost(self, machine):
        """Should apply each concurrent patch on top of the previous one."""
        session = await ready_session(machine)

        await asyncio.gather(
            machine.update(session.id, UpdateCheckoutSessionRequest(
                buyer=Buyer(first_name="Ada", email="ada@example.com"),
            )),
            machine.update(session.id, UpdateCheckoutSessionRequest(
                fulfillment_option_id="shipping_express",
            )),
        )

        stored = await machine.get(session.id)
        assert stored.buyer.first_name == "Ada"
        assert stored.fulfillment_option_id == "shipping_express"


class TestComplete:

    @pytest.mark.asyncio
    async def test_complete_with_delegated_token(self, machine, services, clock, notifier):
        session = await ready_session(machine)
        token_id = await issue_token(services, clock, session.id)

        completed = await machine.complete(session.id, DelegatedPaymentReference(token_id))

        assert completed.status == "completed"
        assert completed.order.id.startswith("ord_")
        assert completed.order.checkout_session_id == session.id
        assert completed.order.permalink_url == f"https://shop.example.com/orders/{completed.order.id}"
        assert completed.completed_at == clock()

        token = await services.vault.get_token(token_id)
        assert token.used is True

        order = await machine.get_order(session.id)
        assert order["id"] == completed.order.id
        assert order["payment"]["charge_id"].startswith("ch_")

        assert [e.type for e in notifier.events] == ["order_created"]
        assert notifier.events[0].checkout_session_id == session.id

    @pytest.mark.asyncio
    async def test_complete_with_direct_credential(self, machine, services):
        session = await ready_session(machine)

        completed = await machine.complete(session.id, DirectPaymentReference("tok_visa"))

        assert completed.status == "completed"
        assert (await machine.get(session.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_complete_not_ready(self, machine):
        session = await machine.create(CreateCheckoutSessionRequest(items=[Item(id="item_123", quantity=1)]))

        with pytest.raises(SessionNotReadyError):
            await machine.complete(session.id, DirectPaymentReference("tok_visa"))

    @pytest.mark.asyncio
    async def test_vault_failure_leaves_session_unchanged(self, machine, services, clock):
        session = await ready_session(machine)
        token_id = await issue_token(services, clock, session.id, max_amount=429)

        with pytest.raises(AmountExceedsAllowanceError):
            await machine.complete(session.id, DelegatedPaymentReference(token_id))

        stored = await machine.get(session.id)
        assert stored.status == "ready_for_payment"
        assert stored.order is None
        assert (await services.vault.get_token(token_id)).used is False

    @pytest.mark.asyncio
    async def test_decline_leaves_session_unchanged(self, machine, notifier):
        session = await ready_session(machine)

        with pytest.raises(PaymentDeclinedError) as exc_info:
            await machine.complete(session.id, DirectPaymentReference("tok_decline"))

        assert exc_info.value.error_type == "processing_error"
        assert exc_info.value.code == "payment_declined"
        assert (await machine.get(session.id)).status == "ready_for_payment"
        assert await machine.get_order(session.id) is None
        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_processor_unavailable(self, machine):
        session = await ready_session(machine)

        with pytest.raises(ProcessingError) as exc_info:
            await machine.complete(session.id, DirectPaymentReference(UNAVAILABLE_TOKEN))
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_second_complete_with_spent_token(self, machine, services, clock):
        session = await ready_session(machine)
        token_id = await issue_token(services, clock, session.id)
        await machine.complete(session.id, DelegatedPaymentReference(token_id))

        with pytest.raises(TokenAlreadyUsedError):
            await machine.complete(session.id, DelegatedPaymentReference(token_id))

    @pytest.mark.asyncio
    async def test_second_complete_with_direct_credential(self, machine):
        session = await ready_session(machine)
        await machine.complete(session.id, DirectPaymentReference("tok_visa"))

        with pytest.raises(SessionFinalizedError):
            await machine.complete(session.id, DirectPaymentReference("tok_visa"))

    @pytest.mark.asyncio
    async def test_concurrent_completes_create_one_order(self, machine):
        session = await ready_session(machine)

        results = await asyncio.gather(
            *(machine.complete(session.id, DirectPaymentReference("tok_visa")) for _ in range(3)),
            return_exceptions=True,
        )

        completed = [r for r in results if not isinstance(r, Exception)]
        assert len(completed) == 1
        assert all(isinstance(r, SessionFinalizedError) for r in results if isinstance(r, Exception))

    @pytest.mark.asyncio
    async def test_concurrent_completes_with_one_token(self, machine, services, clock, notifier):
        """Should let exactly one holder of a delegated token complete the session."""
        session = await ready_session(machine)
        token_id = await issue_token(services, clock, session.id)

        results = await asyncio.gather(
            *(machine.complete(session.id, DelegatedPaymentReference(token_id)) for _ in range(5)),
            return_exceptions=True,
        )

        completed = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(completed) == 1
        assert completed[0].status == "completed"
        assert len(failures) == 4
        assert all(isinstance(r, TokenAlreadyUsedError) for r in failures)
        assert len(notifier.events) == 1

    @pytest.mark.asyncio
    async def test_complete_after_expiry(self, machine, clock):
        session = await ready_session(machine)
        clock.advance(minutes=31)

        with pytest.raises(SessionExpiredError):
            await machine.complete(session.id, DirectPaymentReference("tok_visa"))
        assert (await machine.get(session.id)).status == "canceled"


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_open_session(self, machine, clock):
        session = await ready_session(machine)

        canceled = await machine.cancel(session.id)

        assert canceled.status == "canceled"
        assert canceled.canceled_at == clock()

    @pytest.mark.asyncio
    async def test_cancel_twice_returns_same_document(self, machine, clock):
        session = await ready_session(machine)
        first = await machine.cancel(session.id)
        clock.advance(minutes=1)

        second = await machine.cancel(session.id)
        assert second == first

    @pytest.mark.asyncio
    async def test_cancel_completed_rejected(self, machine):
        session = await ready_session(machine)
        await machine.complete(session.id, DirectPaymentReference("tok_visa"))

        with pytest.raises(SessionFinalizedError):
            await machine.cancel(session.id)

    @pytest.mark.asyncio
    async def test_cancel_expired_session(self, machine, clock):
        session = await ready_session(machine)
        clock.advance(minutes=31)

        canceled = await machine.cancel(session.id)
        assert canceled.status == "canceled"

    @pytest.mark.asyncio
    async def test_get_marks_expired_session_canceled(self, machine, clock):
        session = await ready_session(machine)
        clock.advance(minutes=31)

        fetched = await machine.get(session.id)

        assert fetched.status == "canceled"
        assert fetched.canceled_at == clock()
