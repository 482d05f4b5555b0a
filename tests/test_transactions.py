#!/usr/bin/env python3
"""
Tests for the transaction engine: checkout, settlement exactly once,
provider callbacks, cancellation, expiry and status polling.
"""

import json
import unittest
from datetime import timedelta
from decimal import Decimal
from common.error_handling import (AmountTooSmallError, InvalidSignatureError, NotFoundError,
                                   PaymentLinkUnavailableError, StateConflictError, ValidationError)
from common.schemas import CreatePaymentLinkRequest, DirectPaymentRequest, PaymentLinkCheckout
from common.security import sign_payload
from ledger_service import ledger, payment_links
from ledger_service.realtime import RealtimeBroker
from ledger_service.transactions import TransactionEngine
from tests.helpers import (Clock, FakeSubscriber, RecordingEventPublisher, make_session_factory, scripted_gateways,
                           seed_merchant)


def direct_request(amount="500", method="mtn_momo", merchant_id="m_1") -> DirectPaymentRequest:
    return DirectPaymentRequest.model_validate({
        "merchantId": merchant_id,
        "amount": amount,
        "paymentMethod": method,
        "description": "Order 42",
        "customer": {"name": "Akol", "phoneNumber": "+211912345678"},
    })


class TransactionEngineCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.sessions = make_session_factory()
        self.merchant_id = seed_merchant(self.sessions, available="1000")
        self.gateways = scripted_gateways()
        self.events = RecordingEventPublisher()
        self.broker = RealtimeBroker()
        self.clock = Clock()
        self.engine = TransactionEngine(self.sessions, self.gateways, broker=self.broker, events=self.events,
                                        clock=self.clock)

    def balance(self):
        with self.sessions() as db:
            return ledger.get_balance(db, self.merchant_id)


class TestCheckout(TransactionEngineCase):
    """Test creation and dispatch to the provider"""

    async def test_direct_checkout_goes_to_processing(self):
        transaction = await self.engine.checkout(direct_request())
        self.assertEqual(transaction.status, "processing")
        self.assertEqual(transaction.external_transaction_id, f"ext_{transaction.transaction_id}")
        self.assertEqual(transaction.platform_fee_cents, 1750)
        self.assertEqual(transaction.merchant_receives, Decimal("482.50"))
        self.assertEqual(transaction.provider_response["instructions"], {"message": "Approve on your phone"})
        self.assertEqual(self.events.types(), ["TransactionProcessing"])
        # nothing is credited before the provider confirms
        self.assertEqual(self.balance().available, Decimal("1000.00"))
        print(f"✅ {transaction.transaction_id} sent to provider")

    async def test_declined_initiation_fails_transaction(self):
        self.engine.gateways["mtn_momo"].succeed = False
        transaction = await self.engine.checkout(direct_request())
        self.assertEqual(transaction.status, "failed")
        self.assertEqual(transaction.provider_response["responseMessage"], "Customer declined")
        self.assertEqual(self.events.types(), ["TransactionFailed"])

    async def test_provider_exception_fails_transaction(self):
        self.engine.gateways["digicash"].error = RuntimeError("boom")
        transaction = await self.engine.checkout(direct_request(method="digicash"))
        self.assertEqual(transaction.status, "failed")
        self.assertEqual(transaction.provider_response["responseCode"], "500")

    async def test_amount_must_cover_fee(self):
        with self.assertRaises(AmountTooSmallError):
            self.engine.create(direct_request(amount="5"))

    async def test_unknown_merchant(self):
        with self.assertRaises(NotFoundError):
            self.engine.create(direct_request(merchant_id="ghost"))

    async def test_link_checkout(self):
        with self.sessions() as db:
            link = payment_links.create_link(db, self.merchant_id, CreatePaymentLinkRequest.model_validate({
                "title": "Coffee beans", "description": "One kilo of roasted beans", "amount": "500",
                "isMultiUse": False,
            }), self.clock())
            db.commit()
        request = PaymentLinkCheckout.model_validate({
            "linkId": link.link_id,
            "paymentMethod": "digicash",
            "customer": {"phoneNumber": "+211912345678"},
            "metadata": {"orderId": "42"},
        })
        transaction = await self.engine.checkout(request)
        self.assertEqual(transaction.payment_link_id, link.link_id)
        self.assertEqual(transaction.meta, {"source": "payment_link", "orderId": "42"})

        await self.engine.reconcile(transaction.transaction_id, "COMPLETED")
        with self.sessions() as db:
            link = payment_links.get_by_link_id(db, link.link_id)
        self.assertEqual(link.status, "completed")
        self.assertEqual(link.conversions, 1)

        # used up: the next checkout is refused before any transaction exists
        with self.assertRaises(PaymentLinkUnavailableError):
            self.engine.create(request)
        self.assertEqual(len(self.engine.list_for_merchant(self.merchant_id)), 1)


class TestReconcile(TransactionEngineCase):
    """Test that a provider verdict is applied exactly once"""

    async def test_success_credits_merchant_once(self):
        subscriber = FakeSubscriber()
        self.broker.subscribe(self.merchant_id, subscriber)
        transaction = await self.engine.checkout(direct_request())

        settled = await self.engine.reconcile(transaction.transaction_id, "SUCCESSFUL")
        self.assertEqual(settled.status, "successful")
        self.assertTrue(settled.reconciled)
        self.assertEqual(self.balance().available, Decimal("1482.50"))

        again = await self.engine.reconcile(transaction.transaction_id, "SUCCESSFUL", source="poll")
        self.assertEqual(again.status, "successful")
        self.assertEqual(self.balance().available, Decimal("1482.50"))

        self.assertEqual(self.events.types(), ["TransactionProcessing", "TransactionSucceeded"])
        self.assertEqual(subscriber.messages[0]["balance"]["available"], "1482.50")
        print("✅ Duplicate success did not double-credit")

    async def test_failure_after_success_is_ignored(self):
        transaction = await self.engine.checkout(direct_request())
        await self.engine.reconcile(transaction.transaction_id, "SUCCESSFUL")
        late = await self.engine.reconcile(transaction.transaction_id, "FAILED")
        self.assertEqual(late.status, "successful")
        self.assertEqual(self.balance().available, Decimal("1482.50"))

    async def test_in_flight_status_changes_nothing(self):
        transaction = await self.engine.checkout(direct_request())
        still = await self.engine.reconcile(transaction.transaction_id, "PENDING")
        self.assertEqual(still.status, "processing")

    async def test_failure_credits_nothing(self):
        transaction = await self.engine.checkout(direct_request())
        failed = await self.engine.reconcile(transaction.transaction_id, "REJECTED")
        self.assertEqual(failed.status, "failed")
        self.assertEqual(self.balance().available, Decimal("1000.00"))


class TestProviderCallback(TransactionEngineCase):
    """Test inbound provider webhooks"""

    async def asyncSetUp(self):
        self.transaction = await self.engine.checkout(direct_request())

    def body(self, status="SUCCESSFUL", **extra):
        payload = {"transactionId": self.transaction.transaction_id, "status": status, **extra}
        return json.dumps(payload).encode()

    async def test_signed_callback_settles(self):
        raw = self.body()
        settled = await self.engine.handle_callback("mtn", raw, sign_payload(raw, "whsec_test"))
        self.assertEqual(settled.status, "successful")
        self.assertEqual(settled.provider_response["settlement"]["source"], "webhook")

    async def test_lookup_by_external_id(self):
        raw = json.dumps({"externalTransactionId": self.transaction.external_transaction_id,
                          "status": "FAILED"}).encode()
        settled = await self.engine.handle_callback("mtn", raw, sign_payload(raw, "whsec_test"))
        self.assertEqual(settled.status, "failed")

    async def test_rejections(self):
        raw = self.body()
        with self.assertRaises(NotFoundError):
            await self.engine.handle_callback("paypal", raw, sign_payload(raw, "whsec_test"))
        with self.assertRaises(InvalidSignatureError):
            await self.engine.handle_callback("mtn", raw, None)
        with self.assertRaises(InvalidSignatureError):
            await self.engine.handle_callback("mtn", raw, sign_payload(raw, "wrong-secret"))
        with self.assertRaises(ValidationError):
            await self.engine.handle_callback("mtn", b"not json", "deadbeef")
        with self.assertRaises(ValidationError):
            await self.engine.handle_callback("digicash", raw, sign_payload(raw, "whsec_test"))
        missing = json.dumps({"transactionId": "txn_missing", "status": "SUCCESSFUL"}).encode()
        with self.assertRaises(NotFoundError):
            await self.engine.handle_callback("mtn", missing, sign_payload(missing, "whsec_test"))

        self.assertEqual(self.engine.get(self.transaction.transaction_id).status, "processing")
        self.assertEqual(self.balance().available, Decimal("1000.00"))


class TestCancelAndExpire(TransactionEngineCase):
    """Test merchant cancellation and the expiry sweep"""

    async def test_cancel_pending(self):
        transaction = self.engine.create(direct_request())
        cancelled = self.engine.cancel(transaction.transaction_id, "customer changed mind")
        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(cancelled.meta["cancellationReason"], "customer changed mind")
        with self.assertRaises(StateConflictError):
            self.engine.cancel(transaction.transaction_id)
        with self.assertRaises(NotFoundError):
            self.engine.cancel("txn_missing")

    async def test_processing_cannot_be_cancelled(self):
        transaction = await self.engine.checkout(direct_request())
        with self.assertRaises(StateConflictError):
            self.engine.cancel(transaction.transaction_id)

    async def test_expire_stale(self):
        stale = self.engine.create(direct_request())
        self.clock.advance(hours=23)
        fresh = self.engine.create(direct_request())

        expired = self.engine.expire_stale(self.clock.advance(hours=2))
        self.assertEqual(expired, 1)
        self.assertEqual(self.engine.get(stale.transaction_id).status, "expired")
        self.assertEqual(self.engine.get(fresh.transaction_id).status, "pending")
        self.assertEqual(self.events.types(), ["TransactionExpired"])


class TestPolling(TransactionEngineCase):
    """Test reconciliation by status check"""

    async def test_poll_settles_old_transactions(self):
        old = await self.engine.checkout(direct_request())
        self.clock.advance(minutes=10)
        young = await self.engine.checkout(direct_request())
        self.gateways["mtn_momo"].status = "SUCCESSFUL"

        summary = await self.engine.poll_pending(self.clock.now + timedelta(minutes=1))
        self.assertEqual(summary, {"checked": 1, "settled": 1, "errors": 0})
        self.assertEqual(self.gateways["mtn_momo"].checked, [old.external_transaction_id])

        old = self.engine.get(old.transaction_id)
        self.assertEqual(old.status, "successful")
        self.assertEqual(old.retry_count, 1)
        self.assertEqual(old.provider_response["statusCheck"]["status"], "SUCCESSFUL")
        self.assertEqual(self.engine.get(young.transaction_id).status, "processing")

    async def test_poll_keeps_in_flight(self):
        transaction = await self.engine.checkout(direct_request())
        summary = await self.engine.poll_pending(self.clock.now + timedelta(minutes=10))
        self.assertEqual(summary, {"checked": 1, "settled": 0, "errors": 0})
        self.assertEqual(self.engine.get(transaction.transaction_id).status, "processing")


if __name__ == "__main__":
    unittest.main()
