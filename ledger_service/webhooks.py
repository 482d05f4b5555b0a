"""
Outbound merchant webhooks.

Payloads are signed with HMAC-SHA256 over their canonical JSON bytes and the
very same bytes are POSTed, so a merchant can verify the body as received.
Delivery runs in background tasks; a delivery that keeps failing is logged
and written back to the transaction, it never reaches the code that changed
the transaction or payout state.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set
import httpx
from sqlalchemy import select, update
from common.error_handling import WebhookDeliveryError
from common.retry import RetryConfig, retry_async
from common.security import SIGNATURE_HEADER, canonical_json, sign_payload, verify_signature
from common.settings import settings
from ledger_service.models import Merchant, PaymentLink, Payout, Transaction

logger = logging.getLogger(__name__)

USER_AGENT = "Ledger-Webhook/1.0"

PAYMENT_EVENTS = {
    "successful": "payment.completed",
    "failed": "payment.failed",
    "expired": "payment.expired",
    "cancelled": "payment.cancelled",
}

PAYOUT_EVENTS = {
    "completed": "payout.completed",
    "failed": "payout.failed",
    "cancelled": "payout.cancelled",
}

@dataclass
class DeliveryResult:
    success: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_body: Optional[str] = None

    def to_record(self) -> str:
        return json.dumps({
            "success": self.success,
            "attempts": self.attempts,
            "status": self.status_code,
            "error": self.error,
            "body": self.response_body,
        })

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def format_payment_webhook(transaction: Transaction, event: str = "payment.completed") -> Dict[str, Any]:
    return {
        "event": event,
        "timestamp": _now_iso(),
        "data": {
            "id": transaction.transaction_id,
            "reference": transaction.external_transaction_id or transaction.transaction_id,
            "amount": str(transaction.amount),
            "currency": transaction.currency,
            "status": transaction.status,
            "paymentMethod": transaction.payment_method,
            "merchantId": transaction.merchant_id,
            "merchantReceives": str(transaction.merchant_receives),
            "metadata": transaction.meta or {},
            "createdAt": _iso(transaction.created_at),
            "updatedAt": _iso(transaction.updated_at),
        },
    }

def format_payout_webhook(payout: Payout, event: str = "payout.completed") -> Dict[str, Any]:
    return {
        "event": event,
        "timestamp": _now_iso(),
        "data": {
            "id": payout.payout_id,
            "reference": payout.external_reference or payout.payout_id,
            "amount": str(payout.amount),
            "netAmount": str(payout.net_amount),
            "currency": payout.currency,
            "status": payout.status,
            "method": payout.method,
            "merchantId": payout.merchant_id,
            "recipientDetails": payout.destination or {},
            "reason": payout.rejection_reason,
            "createdAt": _iso(payout.created_at),
            "updatedAt": _iso(payout.updated_at),
        },
    }

class WebhookNotifier:
    def __init__(
        self,
        session_factory: Callable = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = None,
        max_retries: int = None,
        retry_delay: float = None,
    ):
        self.session_factory = session_factory
        self._client = client
        self.timeout = settings.webhook_timeout_seconds if timeout is None else timeout
        self.max_retries = settings.webhook_max_retries if max_retries is None else max_retries
        self.retry_delay = settings.webhook_retry_delay_seconds if retry_delay is None else retry_delay
        self._tasks: Set[asyncio.Task] = set()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None:
            await self._client.aclose()

    # Signing
    @staticmethod
    def sign(payload, secret: str) -> str:
        return sign_payload(payload, secret)

    @staticmethod
    def verify_signature(raw_body, signature: Optional[str], secret: Optional[str]) -> bool:
        return verify_signature(raw_body, signature, secret)

    # Delivery
    async def deliver(self, url: str, payload: Dict[str, Any], secret: Optional[str]) -> DeliveryResult:
        body = canonical_json(payload)
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, secret)
        try:
            response = await self.client.post(url, content=body, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise WebhookDeliveryError(f"Webhook delivery to {url} failed: {e}", original_error=e)
        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryError(f"Webhook delivery to {url} returned {response.status_code}",
                                       status_code=response.status_code)
        return DeliveryResult(success=True, attempts=1, status_code=response.status_code,
                              response_body=response.text[:500])

    async def deliver_with_retry(self, url: str, payload: Dict[str, Any], secret: Optional[str]) -> DeliveryResult:
        """Initial attempt plus up to max_retries retries; exhaustion is returned, never raised"""
        attempts = 0

        async def attempt() -> DeliveryResult:
            nonlocal attempts
            attempts += 1
            return await self.deliver(url, payload, secret)

        config = RetryConfig(max_retries=self.max_retries, base_delay=self.retry_delay, retry_on=(WebhookDeliveryError,))
        try:
            result = await retry_async(attempt, config, label=f"webhook {payload.get('event')}")
        except WebhookDeliveryError as e:
            logger.error(f"Webhook to {url} dropped after {attempts} attempts: {e.message}", extra={
                "event": payload.get("event"),
                "status_code": e.status_code,
            })
            return DeliveryResult(success=False, attempts=attempts, status_code=e.status_code, error=e.message)
        result.attempts = attempts
        return result

    # Background dispatch
    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Webhook task failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for every in-flight delivery"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Ledger-aware notifications
    async def notify_transaction(self, transaction_id: str) -> Optional[DeliveryResult]:
        with self.session_factory() as db:
            transaction = db.get(Transaction, transaction_id)
            if transaction is None:
                return None
            event = PAYMENT_EVENTS.get(transaction.status)
            merchant = db.get(Merchant, transaction.merchant_id)
            url = merchant.webhook_url if merchant is not None else None
            if transaction.payment_link_id:
                link = db.execute(
                    select(PaymentLink).where(PaymentLink.link_id == transaction.payment_link_id)
                ).scalar_one_or_none()
                if link is not None and link.webhook_url:
                    url = link.webhook_url
            secret = merchant.webhook_secret if merchant is not None else None
            payload = format_payment_webhook(transaction, event) if event else None

        if not event or not url:
            return None

        result = await self.deliver_with_retry(url, payload, secret)
        with self.session_factory() as db:
            db.execute(
                update(Transaction)
                .where(Transaction.transaction_id == transaction_id)
                .values(webhook_sent=result.success,
                        webhook_attempts=Transaction.webhook_attempts + result.attempts,
                        webhook_response=result.to_record())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        logger.info(f"Webhook {event} for {transaction_id}: success={result.success} attempts={result.attempts}")
        return result

    async def notify_payout(self, payout_id: str) -> Optional[DeliveryResult]:
        with self.session_factory() as db:
            payout = db.get(Payout, payout_id)
            if payout is None:
                return None
            event = PAYOUT_EVENTS.get(payout.status)
            merchant = db.get(Merchant, payout.merchant_id)
            url = merchant.webhook_url if merchant is not None else None
            secret = merchant.webhook_secret if merchant is not None else None
            payload = format_payout_webhook(payout, event) if event else None

        if not event or not url:
            return None

        result = await self.deliver_with_retry(url, payload, secret)
        logger.info(f"Webhook {event} for {payout_id}: success={result.success} attempts={result.attempts}")
        return result
