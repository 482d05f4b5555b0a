#!/usr/bin/env python3
"""
Unit tests for merchant balance mutations.
"""

import unittest
from decimal import Decimal
from sqlalchemy.dialects import mysql
from common.error_handling import InsufficientBalanceError, NotFoundError
from ledger_service import ledger
from tests.helpers import make_session_factory, seed_merchant


class TestLedger(unittest.TestCase):
    """Test credits, holds, releases and refunds on one merchant row"""

    def setUp(self):
        self.sessions = make_session_factory()
        self.merchant_id = seed_merchant(self.sessions, available="1000")

    def balance(self):
        with self.sessions() as db:
            return ledger.get_balance(db, self.merchant_id)

    def test_credit_available(self):
        with self.sessions() as db:
            ledger.credit_available(db, self.merchant_id, 48250)
            db.commit()
        self.assertEqual(self.balance().available, Decimal("1482.50"))
        self.assertEqual(self.balance().pending, Decimal("0.00"))

    def test_hold_moves_available_to_pending(self):
        with self.sessions() as db:
            ledger.hold(db, self.merchant_id, 25000)
            db.commit()
        balance = self.balance()
        self.assertEqual(balance.available, Decimal("750.00"))
        self.assertEqual(balance.pending, Decimal("250.00"))
        print(f"✅ Hold applied: {balance.to_dict()}")

    def test_short_hold_changes_nothing(self):
        with self.sessions() as db:
            with self.assertRaises(InsufficientBalanceError) as ctx:
                ledger.hold(db, self.merchant_id, 100001)
            db.commit()
        self.assertEqual(ctx.exception.context["available"], "1000.00")
        balance = self.balance()
        self.assertEqual(balance.available, Decimal("1000.00"))
        self.assertEqual(balance.pending, Decimal("0.00"))

    def test_release_and_refund(self):
        with self.sessions() as db:
            ledger.hold(db, self.merchant_id, 40000)
            ledger.release_hold(db, self.merchant_id, 10000)
            ledger.refund_hold(db, self.merchant_id, 30000)
            db.commit()
        balance = self.balance()
        self.assertEqual(balance.available, Decimal("900.00"))
        self.assertEqual(balance.pending, Decimal("0.00"))

    def test_unknown_merchant(self):
        with self.sessions() as db:
            with self.assertRaises(NotFoundError):
                ledger.get_balance(db, "nobody")
            with self.assertRaises(NotFoundError):
                ledger.credit_available(db, "nobody", 100)
            with self.assertRaises(NotFoundError):
                ledger.hold(db, "nobody", 100)

    def test_locking_balance_read(self):
        plain = str(ledger.balance_query(self.merchant_id).compile(dialect=mysql.dialect()))
        locked = str(ledger.balance_query(self.merchant_id, for_update=True).compile(dialect=mysql.dialect()))
        self.assertNotIn("FOR UPDATE", plain)
        self.assertTrue(locked.endswith("FOR UPDATE"))
        with self.sessions() as db:
            self.assertEqual(ledger.get_balance(db, self.merchant_id, for_update=True).available, Decimal("1000.00"))


if __name__ == "__main__":
    unittest.main()
