#!/usr/bin/env python3
"""
Tests for the payout engine and its balance holds.
"""

import unittest
from unittest import mock
from decimal import Decimal
from sqlalchemy import func, select
from common.schemas import DirectPaymentRequest
from common.error_handling import (AmountTooSmallError, InsufficientBalanceError, InvalidMethodError,
                                   NotFoundError, StateConflictError, TooManyPendingError, ValidationError)
from ledger_service import ledger
from ledger_service.fees import to_cents
from ledger_service.models import Payout
from ledger_service.payouts import PayoutEngine
from ledger_service.realtime import RealtimeBroker
from ledger_service.transactions import TransactionEngine
from tests.helpers import (Clock, FakeSubscriber, RecordingEventPublisher, make_session_factory, scripted_gateways,
                           seed_merchant)

BANK = {"bankName": "Ivory Bank", "accountNumber": "0012345", "accountName": "Juba Coffee"}
MOBILE = {"phoneNumber": "+211912345678", "provider": "mtn"}


class PayoutEngineCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.sessions = make_session_factory()
        self.merchant_id = seed_merchant(self.sessions, available="1482.50")
        self.events = RecordingEventPublisher()
        self.broker = RealtimeBroker()
        self.engine = PayoutEngine(self.sessions, broker=self.broker, events=self.events, clock=Clock())

    def balance(self):
        with self.sessions() as db:
            return ledger.get_balance(db, self.merchant_id)

    def payout_count(self):
        with self.sessions() as db:
            return db.execute(select(func.count(Payout.payout_id))).scalar_one()


class TestPayoutRequest(PayoutEngineCase):
    """Test request validation and the immediate hold"""

    async def test_request_holds_amount_plus_fee(self):
        subscriber = FakeSubscriber()
        self.broker.subscribe(self.merchant_id, subscriber)

        payout = await self.engine.request(self.merchant_id, Decimal("1000"), "SSP", "bank_transfer", BANK)
        self.assertEqual(payout.status, "pending")
        self.assertTrue(payout.funds_held)
        self.assertEqual(payout.total_fees_cents, 2500)
        self.assertEqual(payout.net_amount, Decimal("975.00"))
        self.assertTrue(payout.requires_verification)
        self.assertEqual(len(payout.verification_code), 6)

        balance = self.balance()
        self.assertEqual(balance.available, Decimal("457.50"))
        self.assertEqual(balance.pending, Decimal("1025.00"))
        self.assertEqual(self.events.types(), ["PayoutRequested"])
        self.assertEqual(subscriber.messages[-1]["reason"], "payout_requested")
        print(f"✅ Payout {payout.payout_id} holding {balance.pending}")

    async def test_insufficient_balance_leaves_nothing(self):
        with self.assertRaises(InsufficientBalanceError):
            await self.engine.request(self.merchant_id, Decimal("1500"), "SSP", "bank_transfer", BANK)
        self.assertEqual(self.payout_count(), 0)
        self.assertEqual(self.balance().available, Decimal("1482.50"))
        self.assertEqual(self.balance().pending, Decimal("0.00"))

    async def test_fee_pushes_hold_over_balance(self):
        # 1470 passes the amount check, 1470 + 25 does not fit
        with self.assertRaises(InsufficientBalanceError):
            await self.engine.request(self.merchant_id, Decimal("1470"), "SSP", "bank_transfer", BANK)
        self.assertEqual(self.payout_count(), 0)
        self.assertEqual(self.balance().available, Decimal("1482.50"))

    async def test_validation(self):
        with self.assertRaises(InvalidMethodError):
            await self.engine.request(self.merchant_id, Decimal("100"), "SSP", "cheque", BANK)
        with self.assertRaises(ValidationError):
            await self.engine.request(self.merchant_id, Decimal("100"), "SSP", "bank_transfer", {"bankName": "X"})
        with self.assertRaises(ValidationError):
            await self.engine.request(self.merchant_id, Decimal("100"), "SSP", "mobile_money",
                                      {"phoneNumber": "+211912345678", "provider": "zain"})
        with self.assertRaises(AmountTooSmallError):
            await self.engine.request(self.merchant_id, Decimal("5"), "SSP", "bank_transfer", BANK)
        with self.assertRaises(AmountTooSmallError):
            await self.engine.request(self.merchant_id, Decimal("20"), "SSP", "bank_transfer", BANK)
        self.assertEqual(self.payout_count(), 0)

    async def test_too_many_pending(self):
        for _ in range(3):
            await self.engine.request(self.merchant_id, Decimal("100"), "SSP", "mobile_money", MOBILE)
        with self.assertRaises(TooManyPendingError):
            await self.engine.request(self.merchant_id, Decimal("100"), "SSP", "mobile_money", MOBILE)
        self.assertEqual(self.payout_count(), 3)

    async def test_request_locks_merchant_row(self):
        with mock.patch.object(ledger, "get_balance", wraps=ledger.get_balance) as read:
            await self.engine.request(self.merchant_id, Decimal("100"), "SSP", "mobile_money", MOBILE)
        self.assertTrue(read.call_args_list[0].kwargs["for_update"])


class TestPayoutLifecycle(PayoutEngineCase):
    """Test admin processing, completion, failure and cancellation"""

    async def asyncSetUp(self):
        self.payout = await self.engine.request(self.merchant_id, Decimal("1000"), "SSP", "bank_transfer", BANK)

    async def test_complete_releases_hold(self):
        processing = await self.engine.process(self.payout.payout_id, "ops")
        self.assertEqual(processing.status, "processing")
        self.assertEqual(processing.processed_by, "ops")
        # already held at request time
        self.assertEqual(self.balance().available, Decimal("457.50"))

        completed = await self.engine.complete(self.payout.payout_id, "BANK-REF-1")
        self.assertEqual(completed.status, "completed")
        self.assertEqual(completed.external_reference, "BANK-REF-1")
        self.assertFalse(completed.funds_held)
        balance = self.balance()
        self.assertEqual(balance.available, Decimal("457.50"))
        self.assertEqual(balance.pending, Decimal("0.00"))
        self.assertEqual(self.events.types(), ["PayoutRequested", "PayoutProcessing", "PayoutCompleted"])

    async def test_cancel_refunds_hold(self):
        cancelled = await self.engine.cancel(self.payout.payout_id, "changed plans", merchant_id=self.merchant_id)
        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(cancelled.rejection_reason, "changed plans")
        self.assertEqual(self.balance().available, Decimal("1482.50"))
        self.assertEqual(self.balance().pending, Decimal("0.00"))

    async def test_only_pending_can_be_cancelled(self):
        await self.engine.process(self.payout.payout_id, "ops")
        with self.assertRaises(StateConflictError) as ctx:
            await self.engine.cancel(self.payout.payout_id)
        self.assertEqual(ctx.exception.context["status"], "processing")
        self.assertEqual(self.balance().pending, Decimal("1025.00"))

    async def test_other_merchant_cannot_cancel(self):
        with self.assertRaises(NotFoundError):
            await self.engine.cancel(self.payout.payout_id, merchant_id="m_other")

    async def test_reject_processing_refunds(self):
        await self.engine.process(self.payout.payout_id, "ops")
        rejected = await self.engine.reject(self.payout.payout_id, "Account closed", operator="ops")
        self.assertEqual(rejected.status, "failed")
        self.assertEqual(rejected.rejection_reason, "Account closed")
        self.assertEqual(rejected.processed_by, "ops")
        self.assertEqual(self.balance().available, Decimal("1482.50"))

    async def test_rejecting_completed_payout_changes_nothing(self):
        await self.engine.approve(self.payout.payout_id, "ops", external_reference="BANK-REF-3")
        with self.assertRaises(StateConflictError):
            await self.engine.reject(self.payout.payout_id, "too late", operator="auditor")

        stored = self.engine.get(self.payout.payout_id)
        self.assertEqual(stored.status, "completed")
        self.assertEqual(stored.processed_by, "ops")
        self.assertIsNone(stored.rejection_reason)
        self.assertEqual(self.balance().pending, Decimal("0.00"))
        print("✅ Completed payout untouched by a late reject")

    async def test_terminal_states_are_final(self):
        with self.assertRaises(StateConflictError):
            await self.engine.complete(self.payout.payout_id, "REF")
        await self.engine.fail(self.payout.payout_id, "bank down")
        with self.assertRaises(StateConflictError):
            await self.engine.process(self.payout.payout_id, "ops")
        with self.assertRaises(StateConflictError):
            await self.engine.fail(self.payout.payout_id, "again")
        self.assertEqual(self.balance().available, Decimal("1482.50"))
        self.assertEqual(self.balance().pending, Decimal("0.00"))

    async def test_approve_with_reference_completes(self):
        payout = await self.engine.approve(self.payout.payout_id, "ops", external_reference="BANK-REF-9")
        self.assertEqual(payout.status, "completed")
        self.assertEqual(self.balance().pending, Decimal("0.00"))

    async def test_verify(self):
        with self.assertRaises(ValidationError):
            self.engine.verify(self.payout.payout_id, "000000")
        verified = self.engine.verify(self.payout.payout_id, self.payout.verification_code.lower())
        self.assertIsNotNone(verified.verified_at)

    async def test_missing_payout(self):
        with self.assertRaises(NotFoundError):
            await self.engine.process("payout_missing", "ops")


class TestUnheldPayout(PayoutEngineCase):
    """Test that processing a payout without a hold applies it"""

    async def test_process_applies_hold(self):
        with self.sessions() as db:
            db.add(Payout(payout_id="payout_legacy", merchant_id=self.merchant_id, amount_cents=to_cents(100),
                          currency="SSP", method="mobile_money", destination=MOBILE, status="pending",
                          processing_fee_cents=1500, total_fees_cents=1500, net_amount_cents=8500,
                          funds_held=False))
            db.commit()

        payout = await self.engine.process("payout_legacy", "ops")
        self.assertTrue(payout.funds_held)
        self.assertEqual(self.balance().available, Decimal("1367.50"))
        self.assertEqual(self.balance().pending, Decimal("115.00"))

        await self.engine.complete("payout_legacy", "MM-1")
        self.assertEqual(self.balance().pending, Decimal("0.00"))


class TestEndToEnd(unittest.IsolatedAsyncioTestCase):
    """Payment in, payout out, balances checked at each step"""

    async def test_payment_then_payout(self):
        sessions = make_session_factory()
        merchant_id = seed_merchant(sessions, available="1000")
        payments = TransactionEngine(sessions, scripted_gateways())
        payouts = PayoutEngine(sessions)

        transaction = await payments.checkout(DirectPaymentRequest.model_validate({
            "merchantId": merchant_id, "amount": "500", "paymentMethod": "mtn_momo",
            "description": "Order 42", "customer": {"phoneNumber": "+211912345678"},
        }))
        await payments.reconcile(transaction.transaction_id, "SUCCESSFUL")

        def balance():
            with sessions() as db:
                return ledger.get_balance(db, merchant_id)

        self.assertEqual(balance().available, Decimal("1482.50"))

        payout = await payouts.request(merchant_id, Decimal("1000"), "SSP", "bank_transfer", BANK)
        self.assertEqual((balance().available, balance().pending), (Decimal("457.50"), Decimal("1025.00")))

        await payouts.approve(payout.payout_id, "ops", external_reference="BANK-REF-1")
        self.assertEqual((balance().available, balance().pending), (Decimal("457.50"), Decimal("0.00")))
        print("✅ 1000 + 482.50 - 1025 = 457.50 available")


if __name__ == "__main__":
    unittest.main()
