"""
Ledger events published after a state change has been committed.

A publish failure never undoes the state change; it is logged and dropped.
"""
import logging
from typing import Optional
from pydantic import BaseModel
from common.kafka import TOPIC_PAYOUT_EVENTS, TOPIC_TRANSACTION_EVENTS, get_producer
from common.schemas import PayoutEvent, TransactionEvent

logger = logging.getLogger(__name__)

TRANSACTION_EVENT_TYPES = {
    "processing": "TransactionProcessing",
    "successful": "TransactionSucceeded",
    "failed": "TransactionFailed",
    "expired": "TransactionExpired",
    "cancelled": "TransactionCancelled",
}

PAYOUT_EVENT_TYPES = {
    "pending": "PayoutRequested",
    "processing": "PayoutProcessing",
    "completed": "PayoutCompleted",
    "failed": "PayoutFailed",
    "cancelled": "PayoutCancelled",
}

def transaction_event(transaction, reason: Optional[str] = None) -> TransactionEvent:
    return TransactionEvent(
        type=TRANSACTION_EVENT_TYPES[transaction.status],
        transaction_id=transaction.transaction_id,
        merchant_id=transaction.merchant_id,
        amount=str(transaction.amount),
        currency=transaction.currency,
        status=transaction.status,
        payment_method=transaction.payment_method,
        merchant_receives=str(transaction.merchant_receives),
        reason=reason,
    )

def payout_event(payout, reason: Optional[str] = None) -> PayoutEvent:
    return PayoutEvent(
        type=PAYOUT_EVENT_TYPES[payout.status],
        payout_id=payout.payout_id,
        merchant_id=payout.merchant_id,
        amount=str(payout.amount),
        currency=payout.currency,
        status=payout.status,
        method=payout.method,
        reason=reason,
    )

class EventPublisher:
    """Base publisher: records nothing, only logs"""

    def publish(self, topic: str, key: str, event: BaseModel) -> None:
        logger.info(f"📤 {topic}: {event.model_dump_json()}")

    def transaction_changed(self, transaction, reason: Optional[str] = None) -> None:
        self._safe_publish(TOPIC_TRANSACTION_EVENTS, transaction.transaction_id, transaction_event(transaction, reason))

    def payout_changed(self, payout, reason: Optional[str] = None) -> None:
        self._safe_publish(TOPIC_PAYOUT_EVENTS, payout.payout_id, payout_event(payout, reason))

    def _safe_publish(self, topic: str, key: str, event: BaseModel) -> None:
        try:
            self.publish(topic, key, event)
        except Exception as e:
            logger.error(f"❌ Failed to publish {event.type} for {key}: {e}")

class KafkaEventPublisher(EventPublisher):
    def __init__(self, producer=None):
        self._producer = producer

    @property
    def producer(self):
        if self._producer is None:
            self._producer = get_producer()
        return self._producer

    def publish(self, topic: str, key: str, event: BaseModel) -> None:
        self.producer.produce(topic, key=key.encode("utf-8"), value=event.model_dump_json().encode("utf-8"))
        self.producer.flush()
        logger.info(f"✅ Sent {event.type} event for {key}")

def build_publisher(enabled: bool) -> EventPublisher:
    return KafkaEventPublisher() if enabled else EventPublisher()
