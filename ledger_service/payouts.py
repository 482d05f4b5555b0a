"""
Payout engine: money leaving the platform.

A payout holds `amount + fees` from the merchant's available balance the
moment it is requested. Completing it releases the hold (the money is gone);
failing or cancelling it refunds the hold. Every transition is a
compare-and-set on status, committed together with its ledger change.
"""
import hmac
import logging
import secrets
import string
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy import func, select, update
from common.error_handling import (AmountTooSmallError, InsufficientBalanceError, InvalidMethodError,
                                   NotFoundError, StateConflictError, TooManyPendingError, ValidationError)
from common.settings import settings
from ledger_service import ledger
from ledger_service.events import EventPublisher
from ledger_service.fees import from_cents, payout_fees, round2, to_cents
from ledger_service.models import Payout, utcnow
from ledger_service.realtime import RealtimeBroker, balance_update_message

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")

REQUIRED_DESTINATION_FIELDS = {
    "bank_transfer": ("bankName", "accountNumber", "accountName"),
    "mobile_money": ("phoneNumber", "provider"),
    "cash_pickup": ("pickupLocation", "recipientName", "recipientPhone"),
}
MOBILE_MONEY_PROVIDERS = ("mtn", "digicash")

def new_payout_id() -> str:
    return "payout_" + uuid.uuid4().hex[:12]

def new_verification_code() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(6))

def validate_destination(method: str, destination: Dict[str, Any]) -> None:
    if method not in REQUIRED_DESTINATION_FIELDS:
        raise InvalidMethodError(f"Unsupported payout method: {method}", field="method")
    for name in REQUIRED_DESTINATION_FIELDS[method]:
        if not str(destination.get(name) or "").strip():
            raise ValidationError(f"destination.{name} is required for {method}", field=f"destination.{name}")
    if method == "mobile_money" and destination.get("provider") not in MOBILE_MONEY_PROVIDERS:
        raise ValidationError("Mobile money provider must be mtn or digicash", field="destination.provider")

def to_public_dict(payout: Payout) -> Dict[str, Any]:
    return {
        "payoutId": payout.payout_id,
        "amount": str(payout.amount),
        "currency": payout.currency,
        "method": payout.method,
        "status": payout.status,
        "fees": {
            "processingFee": str(from_cents(payout.processing_fee_cents)),
            "bankFee": str(from_cents(payout.bank_fee_cents)),
            "totalFees": str(from_cents(payout.total_fees_cents)),
        },
        "netAmount": str(payout.net_amount),
        "requiresVerification": payout.requires_verification,
        "externalReference": payout.external_reference,
        "rejectionReason": payout.rejection_reason,
        "createdAt": payout.created_at.isoformat() if payout.created_at else None,
        "completedAt": payout.completed_at.isoformat() if payout.completed_at else None,
    }

class PayoutEngine:
    def __init__(
        self,
        session_factory: Callable,
        notifier=None,
        broker: Optional[RealtimeBroker] = None,
        events: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.broker = broker
        self.events = events or EventPublisher()
        self.clock = clock

    async def request(
        self,
        merchant_id: str,
        amount,
        currency: str,
        method: str,
        destination: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> Payout:
        amount = round2(amount)
        destination = destination or {}
        validate_destination(method, destination)
        if amount < round2(settings.min_payout_amount):
            raise AmountTooSmallError(f"Minimum payout amount is {round2(settings.min_payout_amount)}",
                                      field="amount")
        now = self.clock()

        with self.session_factory() as db:
            # the merchant row lock serializes the open-payout count with the insert below
            balance = ledger.get_balance(db, merchant_id, for_update=True)
            if balance.available < amount:
                raise InsufficientBalanceError(
                    f"Insufficient balance. Available: {currency} {balance.available}, Requested: {currency} {amount}",
                    field="amount",
                    context={"available": str(balance.available), "requested": str(amount)},
                )

            open_payouts = db.execute(
                select(func.count(Payout.payout_id))
                .where(Payout.merchant_id == merchant_id, Payout.status.in_(OPEN_STATUSES))
            ).scalar_one()
            if open_payouts >= settings.max_pending_payouts:
                raise TooManyPendingError("You have too many pending payouts. Please wait for them to be processed.",
                                          context={"pending": open_payouts})

            fees = payout_fees(amount, method)
            if fees.net_amount <= 0:
                raise AmountTooSmallError("Amount is too small after processing fees", field="amount",
                                          context={"processingFee": str(fees.processing_fee)})

            payout = Payout(
                payout_id=new_payout_id(),
                merchant_id=merchant_id,
                amount_cents=to_cents(amount),
                currency=currency,
                method=method,
                destination=destination,
                status="pending",
                processing_fee_cents=to_cents(fees.processing_fee),
                bank_fee_cents=to_cents(fees.bank_fee),
                total_fees_cents=to_cents(fees.total_fees),
                net_amount_cents=to_cents(fees.net_amount),
                funds_held=True,
                merchant_notes=notes,
                created_at=now,
                updated_at=now,
            )
            if amount >= round2(settings.payout_verification_threshold):
                payout.verification_code = new_verification_code()
                payout.requires_verification = True

            # check and move in one statement; a short balance leaves nothing behind
            ledger.hold(db, merchant_id, payout.hold_cents)
            db.add(payout)
            db.commit()

        logger.info(f"💸 Payout {payout.payout_id} requested by {merchant_id}: {amount} {currency} via {method}, "
                    f"fee {fees.total_fees}, held {from_cents(payout.hold_cents)}")
        await self._after_change(payout, "payout_requested")
        return payout

    async def process(self, payout_id: str, operator: str, notes: Optional[str] = None) -> Payout:
        now = self.clock()
        with self.session_factory() as db:
            payout = self._load(db, payout_id)
            already_held = payout.funds_held
            values = {"status": "processing", "processed_by": operator, "processed_at": now,
                      "funds_held": True, "updated_at": now}
            if notes:
                values["admin_notes"] = notes
            self._transition(db, payout_id, ("pending",), values, "process")
            if not already_held:
                ledger.hold(db, payout.merchant_id, payout.hold_cents)
            db.commit()
            payout = db.get(Payout, payout_id, populate_existing=True)

        logger.info(f"Payout {payout_id} processing by {operator}")
        await self._after_change(payout, "payout_processing")
        return payout

    async def complete(self, payout_id: str, external_reference: Optional[str] = None,
                       notes: Optional[str] = None) -> Payout:
        now = self.clock()
        with self.session_factory() as db:
            payout = self._load(db, payout_id)
            values = {"status": "completed", "completed_at": now, "external_reference": external_reference,
                      "funds_held": False, "reconciled": True, "reconciled_at": now, "updated_at": now}
            if notes:
                values["admin_notes"] = notes
            self._transition(db, payout_id, ("processing",), values, "complete")
            ledger.release_hold(db, payout.merchant_id, payout.hold_cents)
            db.commit()
            payout = db.get(Payout, payout_id, populate_existing=True)

        logger.info(f"✅ Payout {payout_id} completed, reference {external_reference}")
        await self._after_change(payout, "payout_completed")
        return payout

    async def fail(self, payout_id: str, reason: str, operator: Optional[str] = None) -> Payout:
        payout = await self._refund(payout_id, ("pending", "processing"), "failed", reason, operator)
        logger.warning(f"Payout {payout_id} failed: {reason}")
        await self._after_change(payout, "payout_failed", reason)
        return payout

    async def cancel(self, payout_id: str, reason: Optional[str] = None, merchant_id: Optional[str] = None) -> Payout:
        if merchant_id is not None:
            # merchants only see their own payouts
            self.get(payout_id, merchant_id)
        payout = await self._refund(payout_id, ("pending",), "cancelled", reason or "Cancelled by merchant")
        logger.info(f"Payout {payout_id} cancelled: {payout.rejection_reason}")
        await self._after_change(payout, "payout_cancelled", payout.rejection_reason)
        return payout

    async def _refund(self, payout_id: str, allowed: tuple, target: str, reason: Optional[str],
                      operator: Optional[str] = None) -> Payout:
        now = self.clock()
        with self.session_factory() as db:
            payout = self._load(db, payout_id)
            was_held = payout.funds_held
            values = {"status": target, "rejection_reason": reason, "funds_held": False, "updated_at": now}
            if operator:
                values["processed_by"] = operator
            self._transition(db, payout_id, allowed, values, target)
            if was_held:
                ledger.refund_hold(db, payout.merchant_id, payout.hold_cents)
            db.commit()
            return db.get(Payout, payout_id, populate_existing=True)

    def verify(self, payout_id: str, code: str, merchant_id: Optional[str] = None) -> Payout:
        with self.session_factory() as db:
            payout = self._load(db, payout_id)
            if merchant_id is not None and payout.merchant_id != merchant_id:
                raise NotFoundError("Payout not found", field="payoutId")
            if not payout.requires_verification:
                raise StateConflictError("Payout does not require verification", field="code")
            if payout.verified_at is not None:
                return payout
            if not hmac.compare_digest((payout.verification_code or "").encode(), (code or "").strip().upper().encode()):
                raise ValidationError("Invalid verification code", field="code")
            payout.verified_at = self.clock()
            db.commit()
        logger.info(f"Payout {payout_id} verified")
        return payout

    # Admin actions
    async def approve(self, payout_id: str, operator: str, external_reference: Optional[str] = None,
                      notes: Optional[str] = None) -> Payout:
        payout = await self.process(payout_id, operator, notes)
        if external_reference:
            payout = await self.complete(payout_id, external_reference, notes)
        return payout

    async def reject(self, payout_id: str, reason: str, operator: Optional[str] = None) -> Payout:
        return await self.fail(payout_id, reason or "Rejected by admin", operator)

    async def admin_complete(self, payout_id: str, external_reference: str, notes: Optional[str] = None) -> Payout:
        return await self.complete(payout_id, external_reference, notes)

    # Lookups
    def get(self, payout_id: str, merchant_id: Optional[str] = None) -> Payout:
        with self.session_factory() as db:
            payout = db.get(Payout, payout_id)
        if payout is None or (merchant_id is not None and payout.merchant_id != merchant_id):
            raise NotFoundError("Payout not found", field="payoutId")
        return payout

    def list_for_merchant(self, merchant_id: str, status: Optional[str] = None, limit: int = 20,
                          offset: int = 0) -> List[Payout]:
        with self.session_factory() as db:
            stmt = select(Payout).where(Payout.merchant_id == merchant_id)
            if status:
                stmt = stmt.where(Payout.status == status)
            stmt = stmt.order_by(Payout.created_at.desc()).limit(limit).offset(offset)
            return db.execute(stmt).scalars().all()

    # Internals
    def _load(self, db, payout_id: str) -> Payout:
        payout = db.get(Payout, payout_id)
        if payout is None:
            raise NotFoundError("Payout not found", field="payoutId")
        return payout

    def _transition(self, db, payout_id: str, allowed: tuple, values: Dict[str, Any], action: str) -> None:
        moved = db.execute(
            update(Payout)
            .where(Payout.payout_id == payout_id, Payout.status.in_(allowed))
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not moved:
            current = db.execute(select(Payout.status).where(Payout.payout_id == payout_id)).scalar_one()
            raise StateConflictError(f"Cannot {action} a {current} payout", field="status",
                                     context={"status": current, "allowed": list(allowed)})

    async def _after_change(self, payout: Payout, reason: str, detail: Optional[str] = None) -> None:
        self.events.payout_changed(payout, detail)
        if payout.status in TERMINAL_STATUSES and self.notifier is not None:
            self.notifier.spawn(self.notifier.notify_payout(payout.payout_id))
        if self.broker is not None:
            with self.session_factory() as db:
                balance = ledger.get_balance(db, payout.merchant_id)
            await self.broker.publish(payout.merchant_id,
                                      balance_update_message(balance, reason, payoutId=payout.payout_id))
