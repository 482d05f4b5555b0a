from confluent_kafka import Producer
from common.settings import settings

_producer = None

def get_producer() -> Producer:
    # created on first publish so importing the ledger never needs a broker
    global _producer
    if _producer is None:
        _producer = Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})
    return _producer

TOPIC_TRANSACTION_EVENTS = "transaction_events"
TOPIC_PAYOUT_EVENTS      = "payout_events"
