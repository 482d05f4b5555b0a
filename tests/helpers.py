"""
Shared fakes for the ledger tests: an isolated in-memory database per test,
a scriptable provider, and recorders for events and realtime messages.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from ledger_service.db import build_engine, build_sessionmaker, init_db
from ledger_service.events import EventPublisher
from ledger_service.fees import to_cents
from ledger_service.gateways import InitiationResult, PaymentGateway, StatusResult
from ledger_service.models import Merchant

T0 = datetime(2025, 1, 1, 12, 0, 0)

def make_session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    return build_sessionmaker(engine)

def seed_merchant(session_factory, merchant_id: str = "m_1", available="0", pending="0",
                  webhook_url: Optional[str] = None, webhook_secret: Optional[str] = "whsec_test",
                  email: str = "shop@example.com") -> str:
    with session_factory() as db:
        db.add(Merchant(
            id=merchant_id,
            email=email,
            business_name="Juba Coffee",
            balance_available_cents=to_cents(available),
            balance_pending_cents=to_cents(pending),
            balance_currency="SSP",
            webhook_url=webhook_url,
            webhook_secret=webhook_secret,
        ))
        db.commit()
    return merchant_id

class Clock:
    """Settable clock handed to the engines"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

class ScriptedGateway(PaymentGateway):
    """Provider double whose answers are set by the test"""

    def __init__(self, method: str = "mtn_momo", success_status: str = "SUCCESSFUL", succeed: bool = True,
                 status: str = "PENDING", error: Optional[Exception] = None):
        self.method = method
        self.success_status = success_status
        self.succeed = succeed
        self.status = status
        self.error = error
        self.initiated: List[str] = []
        self.checked: List[str] = []

    async def initiate(self, transaction) -> InitiationResult:
        self.initiated.append(transaction.transaction_id)
        if self.error is not None:
            raise self.error
        if not self.succeed:
            return InitiationResult(success=False, response_code="400", response_message="Customer declined",
                                    raw_response={"error": "DECLINED"})
        return InitiationResult(success=True, provider_transaction_id=f"ext_{transaction.transaction_id}",
                                request_id="req_1", response_message="Payment request initiated",
                                instructions={"message": "Approve on your phone"})

    async def check_status(self, provider_transaction_id: str) -> StatusResult:
        self.checked.append(provider_transaction_id)
        return StatusResult(status=self.status)

def scripted_gateways(**kwargs) -> Dict[str, ScriptedGateway]:
    return {
        "mtn_momo": ScriptedGateway("mtn_momo", "SUCCESSFUL", **kwargs),
        "digicash": ScriptedGateway("digicash", "COMPLETED", **kwargs),
    }

class RecordingEventPublisher(EventPublisher):
    def __init__(self):
        self.published: List[tuple] = []

    def publish(self, topic: str, key: str, event) -> None:
        self.published.append((topic, key, event))

    def types(self) -> List[str]:
        return [event.type for _, _, event in self.published]

class FakeSubscriber:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: List[Dict[str, Any]] = []

    async def send(self, message: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(message)

class FakeViews:
    """Stands in for the Redis unique-view keys"""

    def __init__(self):
        self.seen = set()

    def first_view(self, link_id: str, visitor: str, ttl_seconds: int = None) -> bool:
        key = (link_id, visitor)
        if key in self.seen:
            return False
        self.seen.add(key)
        return True
