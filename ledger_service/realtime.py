"""
In-process publish/subscribe for live merchant dashboards.

The topic is the merchant id; subscribers are connection handles exposing an
async `send(message)`. The broker only holds weak references, so a handle
that is closed and dropped by its owner disappears from its topic without an
explicit unsubscribe.
"""
import logging
import weakref
from datetime import datetime, timezone
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

class RealtimeBroker:
    def __init__(self):
        self._topics: Dict[str, weakref.WeakSet] = {}

    def subscribe(self, topic: str, subscriber) -> None:
        self._topics.setdefault(topic, weakref.WeakSet()).add(subscriber)
        logger.info(f"Realtime subscriber joined {topic}. Total connections: {len(self._topics[topic])}")

    def unsubscribe(self, topic: str, subscriber) -> None:
        subscribers = self._topics.get(topic)
        if subscribers is None:
            return
        subscribers.discard(subscriber)
        if not subscribers:
            del self._topics[topic]
        logger.info(f"Realtime subscriber left {topic}")

    def subscriber_count(self, topic: str) -> int:
        subscribers = self._topics.get(topic)
        return len(subscribers) if subscribers is not None else 0

    def topics(self) -> List[str]:
        self.cleanup()
        return list(self._topics)

    def cleanup(self) -> None:
        """Forget topics whose subscribers have all been garbage collected"""
        for topic in [t for t, subs in self._topics.items() if not subs]:
            del self._topics[topic]

    async def publish(self, topic: str, message: Dict[str, Any]) -> int:
        subscribers = self._topics.get(topic)
        if not subscribers:
            self.cleanup()
            return 0
        delivered = 0
        # copy: a failing subscriber is removed while we iterate
        for subscriber in list(subscribers):
            try:
                await subscriber.send(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping realtime subscriber on {topic}: {e}")
                self.unsubscribe(topic, subscriber)
        return delivered

def balance_update_message(balance, reason: str, **extra) -> Dict[str, Any]:
    return {
        "type": "BALANCE_UPDATE",
        "reason": reason,
        "balance": balance.to_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **extra,
    }
