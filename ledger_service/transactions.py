"""
Transaction engine: create a payment, hand it to the provider, settle it once.

Status changes are compare-and-set UPDATEs (`... WHERE status IN (...)`), so
when the provider callback and the polling sweep race on one transaction only
one of them moves it to a terminal state and credits the merchant.
"""
import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Union
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import select, update
from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, build_gateway_breakers
from common.error_handling import (AmountTooSmallError, DuplicateActionError, InvalidSignatureError,
                                   NotFoundError, StateConflictError, ValidationError)
from common.schemas import DirectPaymentRequest, PaymentLinkCheckout, ProviderCallback
from common.security import verify_signature
from common.settings import settings
from ledger_service import ledger, payment_links
from ledger_service.events import EventPublisher
from ledger_service.fees import TransactionFees, from_cents, round2, to_cents, transaction_fees
from ledger_service.gateways import InitiationResult, PaymentGateway, gateway_for
from ledger_service.models import Merchant, Transaction, utcnow
from ledger_service.realtime import RealtimeBroker, balance_update_message

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("successful", "failed", "cancelled", "expired")

# inbound webhook path segment -> payment method
CALLBACK_PROVIDERS = {"mtn": "mtn_momo", "digicash": "digicash"}

def new_transaction_id() -> str:
    return "txn_" + uuid.uuid4().hex[:16]

def apply_fees(transaction: Transaction, amount, provider_fee=0) -> TransactionFees:
    """Set amount and every fee column together so the totals always agree"""
    fees = transaction_fees(amount, provider_fee)
    transaction.amount_cents = to_cents(amount)
    transaction.platform_fee_cents = to_cents(fees.platform_fee)
    transaction.provider_fee_cents = to_cents(fees.provider_fee)
    transaction.total_fees_cents = to_cents(fees.total_fees)
    transaction.merchant_receives_cents = to_cents(fees.merchant_receives)
    return fees

def to_public_dict(transaction: Transaction) -> Dict[str, object]:
    response = transaction.provider_response or {}
    return {
        "id": transaction.transaction_id,
        "status": transaction.status,
        "amount": str(transaction.amount),
        "currency": transaction.currency,
        "description": transaction.description,
        "paymentMethod": transaction.payment_method,
        "fees": {
            "platformFee": str(from_cents(transaction.platform_fee_cents)),
            "totalFees": str(from_cents(transaction.total_fees_cents)),
            "merchantReceives": str(transaction.merchant_receives),
        },
        "instructions": response.get("instructions"),
        "createdAt": transaction.created_at.isoformat() if transaction.created_at else None,
        "completedAt": transaction.completed_at.isoformat() if transaction.completed_at else None,
    }

class TransactionEngine:
    def __init__(
        self,
        session_factory: Callable,
        gateways: Dict[str, PaymentGateway],
        notifier=None,
        breakers: Optional[Dict[str, CircuitBreaker]] = None,
        broker: Optional[RealtimeBroker] = None,
        alerts=None,
        events: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.gateways = gateways
        self.notifier = notifier
        self.breakers = breakers or build_gateway_breakers(gateways, settings.gateway_timeout_seconds)
        self.broker = broker
        self.alerts = alerts
        self.events = events or EventPublisher()
        self.clock = clock

    # Creation
    def create(self, request: Union[PaymentLinkCheckout, DirectPaymentRequest]) -> Transaction:
        now = self.clock()
        with self.session_factory() as db:
            if isinstance(request, PaymentLinkCheckout):
                link = payment_links.get_by_link_id(db, request.link_id)
                payment_links.ensure_payable(link, request.payment_method, now)
                amount = payment_links.resolve_amount(link, request.amount)
                merchant_id = link.merchant_id
                currency = link.currency
                description = link.description or link.title
                link_id = link.link_id
                redirect_urls = link.redirect_urls or {}
                metadata = {"source": "payment_link", **request.metadata}
            else:
                if db.get(Merchant, request.merchant_id) is None:
                    raise NotFoundError(f"Merchant {request.merchant_id} not found", field="merchantId")
                amount = round2(request.amount)
                merchant_id = request.merchant_id
                currency = request.currency
                description = request.description
                link_id = None
                redirect_urls = {}
                metadata = {"source": "api", **request.metadata}

            transaction = Transaction(
                transaction_id=new_transaction_id(),
                merchant_id=merchant_id,
                currency=currency,
                description=description,
                payment_method=request.payment_method,
                customer=request.customer.model_dump(by_alias=True, exclude_none=True),
                status="pending",
                payment_link_id=link_id,
                redirect_urls=redirect_urls,
                meta=metadata,
                provider_response={},
                initiated_at=now,
                expires_at=now + timedelta(hours=settings.transaction_ttl_hours),
                retry_count=0,
                max_retries=3,
                created_at=now,
                updated_at=now,
            )
            fees = apply_fees(transaction, amount)
            if fees.merchant_receives <= 0:
                raise AmountTooSmallError(f"Amount {amount} does not cover the platform fee of {fees.platform_fee}",
                                          field="amount")
            db.add(transaction)
            db.commit()

        logger.info(f"💳 Transaction {transaction.transaction_id} created: {transaction.amount} "
                    f"{transaction.currency} via {transaction.payment_method} for merchant {merchant_id}")
        return transaction

    async def checkout(self, request: Union[PaymentLinkCheckout, DirectPaymentRequest]) -> Transaction:
        transaction = self.create(request)
        return await self.dispatch(transaction.transaction_id)

    # Dispatch
    async def _initiate(self, transaction: Transaction) -> InitiationResult:
        gateway = gateway_for(self.gateways, transaction.payment_method)
        breaker = self.breakers[transaction.payment_method]
        try:
            return await breaker.call(gateway.initiate, transaction)
        except CircuitBreakerException as e:
            logger.error(f"❌ {e}; failing {transaction.transaction_id}")
            return InitiationResult(success=False, response_code="503", response_message="Payment provider unavailable",
                                    raw_response={"error": str(e)})
        except asyncio.TimeoutError:
            logger.error(f"❌ Provider timed out initiating {transaction.transaction_id}")
            return InitiationResult(success=False, response_code="504", response_message="Payment provider timed out",
                                    raw_response={"error": "timeout"})
        except Exception as e:
            logger.error(f"❌ Provider error initiating {transaction.transaction_id}: {e}")
            return InitiationResult(success=False, response_code="500", response_message="Internal server error",
                                    raw_response={"error": str(e)})

    async def dispatch(self, transaction_id: str) -> Transaction:
        transaction = self.get(transaction_id)
        if transaction.status != "pending":
            raise StateConflictError(f"Transaction {transaction_id} is {transaction.status}, not pending",
                                     field="status")

        result = await self._initiate(transaction)
        target = "processing" if result.success else "failed"
        values = {"status": target, "provider_response": result.to_dict()}
        if result.provider_transaction_id:
            values["external_transaction_id"] = result.provider_transaction_id

        with self.session_factory() as db:
            moved = db.execute(
                update(Transaction)
                .where(Transaction.transaction_id == transaction_id, Transaction.status == "pending")
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()

        transaction = self.get(transaction_id)
        if not moved:
            logger.warning(f"Transaction {transaction_id} left pending during dispatch; now {transaction.status}")
            return transaction

        if result.success:
            logger.info(f"📤 Transaction {transaction_id} sent to {transaction.payment_method}: "
                        f"{transaction.external_transaction_id}")
        else:
            logger.warning(f"Transaction {transaction_id} failed at initiation: {result.response_message}")
            self._notify_merchant(transaction_id)
        self.events.transaction_changed(transaction, None if result.success else result.response_message)
        return transaction

    # Settlement
    def _settle(self, transaction_id: str, target: str, provider_status: str, source: str) -> Transaction:
        """Terminal transition plus its ledger effects, all in one DB transaction"""
        now = self.clock()
        values = {"status": target, "reconciled": True, "reconciled_at": now, "updated_at": now}
        if target == "successful":
            values["completed_at"] = now

        with self.session_factory() as db:
            moved = db.execute(
                update(Transaction)
                .where(Transaction.transaction_id == transaction_id, Transaction.status.in_(OPEN_STATUSES))
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not moved:
                raise DuplicateActionError(f"Transaction {transaction_id} is already settled")

            transaction = db.get(Transaction, transaction_id, populate_existing=True)
            transaction.provider_response = {
                **(transaction.provider_response or {}),
                "settlement": {"status": provider_status, "source": source, "at": now.isoformat()},
            }
            if target == "successful":
                ledger.credit_available(db, transaction.merchant_id, transaction.merchant_receives_cents)
                if transaction.payment_link_id:
                    payment_links.record_payment(db, transaction.payment_link_id, transaction.amount_cents, now)
            db.commit()
        return transaction

    async def reconcile(self, transaction_id: str, provider_status: str, source: str = "webhook") -> Transaction:
        """Apply a provider's verdict exactly once; anything after the first terminal verdict is ignored"""
        transaction = self.get(transaction_id)
        gateway = gateway_for(self.gateways, transaction.payment_method)
        target = gateway.normalize(provider_status)
        if target is None:
            logger.info(f"Transaction {transaction_id} still in flight at provider ({provider_status})")
            return transaction

        try:
            transaction = self._settle(transaction_id, target, provider_status, source)
        except DuplicateActionError:
            logger.info(f"Ignoring {source} status {provider_status} for settled transaction {transaction_id}")
            return self.get(transaction_id)

        logger.info(f"✅ Transaction {transaction_id} {target} via {source}")
        self.events.transaction_changed(transaction)
        self._notify_merchant(transaction_id)
        if target == "successful":
            await self._after_payment(transaction)
        return transaction

    async def _after_payment(self, transaction: Transaction) -> None:
        with self.session_factory() as db:
            merchant = db.get(Merchant, transaction.merchant_id)
            balance = ledger.get_balance(db, transaction.merchant_id)
        if self.broker is not None:
            await self.broker.publish(
                transaction.merchant_id,
                balance_update_message(balance, "payment_received", transactionId=transaction.transaction_id),
            )
        if self.alerts is not None:
            await self.alerts.payment_received(transaction, merchant)

    def _notify_merchant(self, transaction_id: str) -> None:
        if self.notifier is not None:
            self.notifier.spawn(self.notifier.notify_transaction(transaction_id))

    # Provider callbacks
    async def handle_callback(self, provider: str, raw_body: bytes, signature: Optional[str]) -> Transaction:
        """Inbound provider webhook: authenticate against the merchant's secret, then reconcile"""
        method = CALLBACK_PROVIDERS.get(provider)
        if method is None:
            raise NotFoundError(f"Unknown provider {provider}", field="provider")
        if not signature:
            raise InvalidSignatureError("Signature missing")
        try:
            callback = ProviderCallback.model_validate(json.loads(raw_body))
        except (ValueError, SchemaValidationError):
            raise ValidationError("Malformed webhook body")

        transaction = self.find_for_callback(callback.transaction_id, callback.external_transaction_id)
        with self.session_factory() as db:
            merchant = db.get(Merchant, transaction.merchant_id)
            secret = merchant.webhook_secret if merchant is not None else None
        if not verify_signature(raw_body, signature, secret):
            raise InvalidSignatureError("Invalid signature")
        if transaction.payment_method != method:
            raise ValidationError(f"Transaction {transaction.transaction_id} is not a {method} payment",
                                  field="provider")
        return await self.reconcile(transaction.transaction_id, callback.status, source="webhook")

    # State changes without the provider
    def cancel(self, transaction_id: str, reason: Optional[str] = None) -> Transaction:
        now = self.clock()
        with self.session_factory() as db:
            moved = db.execute(
                update(Transaction)
                .where(Transaction.transaction_id == transaction_id, Transaction.status == "pending")
                .values(status="cancelled", updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            transaction = db.get(Transaction, transaction_id, populate_existing=True)
            if transaction is None:
                raise NotFoundError("Transaction not found", field="transactionId")
            if not moved:
                raise StateConflictError(f"Cannot cancel a {transaction.status} transaction", field="status")
            transaction.meta = {**(transaction.meta or {}), "cancellationReason": reason}
            db.commit()

        logger.info(f"Transaction {transaction_id} cancelled: {reason}")
        self.events.transaction_changed(transaction, reason)
        self._notify_merchant(transaction_id)
        return transaction

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        with self.session_factory() as db:
            ids = db.execute(
                select(Transaction.transaction_id)
                .where(Transaction.status == "pending", Transaction.expires_at < now)
            ).scalars().all()

        expired = 0
        for transaction_id in ids:
            with self.session_factory() as db:
                moved = db.execute(
                    update(Transaction)
                    .where(Transaction.transaction_id == transaction_id, Transaction.status == "pending")
                    .values(status="expired", updated_at=now)
                    .execution_options(synchronize_session=False)
                ).rowcount
                db.commit()
            if moved:
                expired += 1
                transaction = self.get(transaction_id)
                self.events.transaction_changed(transaction)
                self._notify_merchant(transaction_id)
        if expired:
            logger.info(f"Expired {expired} stale transactions")
        return expired

    async def poll_pending(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Ask providers about transactions whose callback never arrived"""
        now = now or self.clock()
        cutoff = now - timedelta(seconds=settings.reconcile_min_age_seconds)
        with self.session_factory() as db:
            candidates = db.execute(
                select(Transaction)
                .where(Transaction.status.in_(OPEN_STATUSES),
                       Transaction.created_at < cutoff,
                       Transaction.external_transaction_id.isnot(None))
                .order_by(Transaction.created_at)
                .limit(settings.reconcile_batch_size)
            ).scalars().all()

        summary = {"checked": 0, "settled": 0, "errors": 0}
        for transaction in candidates:
            try:
                settled = await self._poll_one(transaction, now)
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Status check failed for {transaction.transaction_id}: {e}")
                continue
            summary["checked"] += 1
            if settled:
                summary["settled"] += 1
        return summary

    async def _poll_one(self, transaction: Transaction, now: datetime) -> bool:
        gateway = gateway_for(self.gateways, transaction.payment_method)
        breaker = self.breakers[transaction.payment_method]
        status = await breaker.call(gateway.check_status, transaction.external_transaction_id)

        with self.session_factory() as db:
            current = db.get(Transaction, transaction.transaction_id)
            current.provider_response = {
                **(current.provider_response or {}),
                "statusCheck": status.to_dict(),
                "lastChecked": now.isoformat(),
            }
            current.retry_count = (current.retry_count or 0) + 1
            db.commit()

        if gateway.normalize(status.status) is None:
            return False
        settled = await self.reconcile(transaction.transaction_id, status.status, source="poll")
        return settled.status in TERMINAL_STATUSES

    # Lookups
    def get(self, transaction_id: str) -> Transaction:
        with self.session_factory() as db:
            transaction = db.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction not found", field="transactionId")
        return transaction

    def find_for_callback(self, transaction_id: Optional[str], external_transaction_id: Optional[str]) -> Transaction:
        with self.session_factory() as db:
            transaction = db.get(Transaction, transaction_id) if transaction_id else None
            if transaction is None and external_transaction_id:
                transaction = db.execute(
                    select(Transaction).where(Transaction.external_transaction_id == external_transaction_id)
                ).scalars().first()
        if transaction is None:
            raise NotFoundError("Transaction not found", field="transactionId")
        return transaction

    def list_for_merchant(self, merchant_id: str, statuses: Optional[Iterable[str]] = None, limit: int = 50):
        with self.session_factory() as db:
            stmt = select(Transaction).where(Transaction.merchant_id == merchant_id)
            if statuses:
                stmt = stmt.where(Transaction.status.in_(list(statuses)))
            return db.execute(stmt.order_by(Transaction.created_at.desc()).limit(limit)).scalars().all()
