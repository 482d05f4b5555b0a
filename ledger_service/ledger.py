"""
Merchant balance mutations.

Every change is a single `col = col +/- x` UPDATE on one merchant row, so two
requests for the same merchant never lose each other's writes. The caller
owns the session and decides when to commit.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from common.error_handling import InsufficientBalanceError, NotFoundError
from ledger_service.fees import from_cents
from ledger_service.models import Merchant

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class Balance:
    merchant_id: str
    available: Decimal
    pending: Decimal
    currency: str

    def to_dict(self) -> dict:
        return {
            "available": str(self.available),
            "pending": str(self.pending),
            "currency": self.currency,
        }

def _execute(db: Session, stmt) -> int:
    result = db.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount

def balance_query(merchant_id: str, for_update: bool = False):
    stmt = (select(Merchant.balance_available_cents, Merchant.balance_pending_cents, Merchant.balance_currency)
            .where(Merchant.id == merchant_id))
    if for_update:
        stmt = stmt.with_for_update()
    return stmt

def get_balance(db: Session, merchant_id: str, for_update: bool = False) -> Balance:
    """With for_update the merchant row stays locked until the caller commits"""
    row = db.execute(balance_query(merchant_id, for_update)).first()
    if row is None:
        raise NotFoundError(f"Merchant {merchant_id} not found", field="merchant_id")
    return Balance(merchant_id, from_cents(row[0]), from_cents(row[1]), row[2])

def credit_available(db: Session, merchant_id: str, cents: int) -> None:
    """Settled payment money lands in the spendable balance"""
    stmt = (update(Merchant)
            .where(Merchant.id == merchant_id)
            .values(balance_available_cents=Merchant.balance_available_cents + cents))
    if _execute(db, stmt) == 0:
        raise NotFoundError(f"Merchant {merchant_id} not found", field="merchant_id")
    logger.info(f"Ledger credit: merchant={merchant_id} available += {from_cents(cents)}")

def hold(db: Session, merchant_id: str, cents: int) -> None:
    """Move cents from available to pending. The balance check and the move are
    one conditional UPDATE; nothing changes when the balance is short."""
    stmt = (update(Merchant)
            .where(Merchant.id == merchant_id, Merchant.balance_available_cents >= cents)
            .values(balance_available_cents=Merchant.balance_available_cents - cents,
                    balance_pending_cents=Merchant.balance_pending_cents + cents))
    if _execute(db, stmt) == 0:
        # distinguish unknown merchant from short balance
        balance = get_balance(db, merchant_id)
        raise InsufficientBalanceError(
            "Insufficient balance for payout",
            field="amount",
            context={"available": str(balance.available), "required": str(from_cents(cents))},
        )
    logger.info(f"Ledger hold: merchant={merchant_id} {from_cents(cents)} available -> pending")

def release_hold(db: Session, merchant_id: str, cents: int) -> None:
    """Held funds have left the platform"""
    stmt = (update(Merchant)
            .where(Merchant.id == merchant_id)
            .values(balance_pending_cents=Merchant.balance_pending_cents - cents))
    if _execute(db, stmt) == 0:
        raise NotFoundError(f"Merchant {merchant_id} not found", field="merchant_id")
    logger.info(f"Ledger release: merchant={merchant_id} pending -= {from_cents(cents)}")

def refund_hold(db: Session, merchant_id: str, cents: int) -> None:
    """Held funds go back to available"""
    stmt = (update(Merchant)
            .where(Merchant.id == merchant_id)
            .values(balance_available_cents=Merchant.balance_available_cents + cents,
                    balance_pending_cents=Merchant.balance_pending_cents - cents))
    if _execute(db, stmt) == 0:
        raise NotFoundError(f"Merchant {merchant_id} not found", field="merchant_id")
    logger.info(f"Ledger refund: merchant={merchant_id} {from_cents(cents)} pending -> available")
