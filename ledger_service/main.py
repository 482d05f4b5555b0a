import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from common.circuit_breaker import build_gateway_breakers
from common.error_handling import NotFoundError, add_error_handlers
from common.redis_client import RedisClient, redis_client
from common.schemas import (AdminPayoutAction, CancelRequest, CreatePaymentLinkRequest, DirectPaymentRequest,
                            FeeQuoteRequest, MerchantCreate, PaymentLinkCheckout, PayoutRequest, VerifyPayoutRequest)
from common.security import SIGNATURE_HEADER, verify_token
from common.settings import settings
from ledger_service import ledger, payment_links, payouts as payout_views, transactions as transaction_views
from ledger_service.db import SessionLocal, init_db
from ledger_service.events import EventPublisher, build_publisher
from ledger_service.fees import calculate_payout_quote
from ledger_service.gateways import PaymentGateway, build_gateways
from ledger_service.models import Merchant
from ledger_service.notifications import AdminAlerts
from ledger_service.payouts import PayoutEngine
from ledger_service.platform_settings import PlatformSettings, SettingsStore
from ledger_service.realtime import RealtimeBroker, balance_update_message
from ledger_service.reconciliation_worker import ReconciliationWorker
from ledger_service.transactions import TransactionEngine
from ledger_service.webhooks import WebhookNotifier

logger = logging.getLogger(__name__)

@dataclass
class LedgerServices:
    session_factory: Callable
    transactions: TransactionEngine
    payouts: PayoutEngine
    notifier: WebhookNotifier
    broker: RealtimeBroker
    platform_settings: PlatformSettings
    worker: ReconciliationWorker
    views: RedisClient

def build_services(
    session_factory: Callable = SessionLocal,
    gateways: Optional[Dict[str, PaymentGateway]] = None,
    notifier: Optional[WebhookNotifier] = None,
    events: Optional[EventPublisher] = None,
    views: Optional[RedisClient] = None,
    platform_settings: Optional[PlatformSettings] = None,
) -> LedgerServices:
    """Wire the ledger once; gateways are picked here and nowhere else"""
    gateways = gateways or build_gateways()
    notifier = notifier or WebhookNotifier(session_factory)
    events = events or build_publisher(settings.events_enabled)
    broker = RealtimeBroker()
    platform_settings = platform_settings or PlatformSettings(SettingsStore(), settings.settings_cache_ttl_seconds)
    transactions = TransactionEngine(
        session_factory,
        gateways,
        notifier=notifier,
        breakers=build_gateway_breakers(gateways, settings.gateway_timeout_seconds),
        broker=broker,
        alerts=AdminAlerts(platform_settings),
        events=events,
    )
    payouts = PayoutEngine(session_factory, notifier=notifier, broker=broker, events=events)
    worker = ReconciliationWorker(transactions, session_factory)
    return LedgerServices(session_factory, transactions, payouts, notifier, broker, platform_settings, worker,
                          views or redis_client)

def create_app(services: Optional[LedgerServices] = None, start_worker: Optional[bool] = None) -> FastAPI:
    start_worker = settings.worker_enabled if start_worker is None else start_worker

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is None:
            init_db()
        if start_worker:
            svc.worker.start()
        logger.info("🚀 Ledger service started")
        yield
        if start_worker:
            await svc.worker.stop()
        await svc.notifier.aclose()

    svc = services or build_services()
    app = FastAPI(title="Ledger Service", lifespan=lifespan)
    app.state.services = svc
    add_error_handlers(app)

    # Auth
    def _bearer(authorization: Optional[str]) -> str:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(401, "missing bearer token")
        return authorization.split(" ", 1)[1]

    async def merchant_auth(authorization: Optional[str] = Header(None)) -> str:
        token = _bearer(authorization)
        try:
            claims = verify_token(token)
        except Exception as e:
            raise HTTPException(401, f"invalid token: {e}")
        return claims["sub"]

    async def internal_auth(authorization: Optional[str] = Header(None)) -> Dict:
        token = _bearer(authorization)
        try:
            return verify_token(token, audience="ledger")
        except Exception as e:
            raise HTTPException(401, f"invalid internal token: {e}")

    @app.get("/health")
    async def health():
        return {"ok": True, "service": "ledger"}

    # Merchants
    @app.post("/merchants", status_code=201, dependencies=[Depends(internal_auth)])
    async def register_merchant(body: MerchantCreate):
        with svc.session_factory() as db:
            if db.get(Merchant, body.id) is not None:
                raise HTTPException(409, "merchant already exists")
            db.add(Merchant(id=body.id, email=body.email, business_name=body.business_name,
                            balance_currency=body.currency, balance_available_cents=0, balance_pending_cents=0,
                            webhook_url=body.webhook_url, webhook_secret=body.webhook_secret))
            db.commit()
        return {"success": True, "merchantId": body.id}

    @app.get("/merchants/me/balance")
    async def my_balance(merchant_id: str = Depends(merchant_auth)):
        with svc.session_factory() as db:
            balance = ledger.get_balance(db, merchant_id)
        return {"success": True, "balance": balance.to_dict()}

    @app.get("/merchants/me/payment-links/stats")
    async def my_link_stats(merchant_id: str = Depends(merchant_auth)):
        with svc.session_factory() as db:
            stats = payment_links.merchant_link_stats(db, merchant_id)
        return {"success": True, "stats": stats}

    # Payment links
    @app.post("/payments/links", status_code=201)
    async def create_link(body: CreatePaymentLinkRequest, merchant_id: str = Depends(merchant_auth)):
        with svc.session_factory() as db:
            link = payment_links.create_link(db, merchant_id, body)
            db.commit()
        return {"success": True, "paymentLink": payment_links.to_public_dict(link)}

    @app.get("/payments/links/{link_id}")
    async def view_link(link_id: str, request: Request, visitor: Optional[str] = Query(None)):
        with svc.session_factory() as db:
            link = payment_links.get_by_link_id(db, link_id)
            if not payment_links.is_accessible(link):
                return JSONResponse(status_code=400, content={
                    "success": False,
                    "message": "Payment link is no longer available",
                    "reason": payment_links.unavailable_reason(link),
                })
            visitor = visitor or (request.client.host if request.client else "anonymous")
            unique = svc.views.first_view(link_id, visitor)
            payment_links.increment_view(db, link_id, unique)
            db.commit()
            return {"success": True, "paymentLink": payment_links.to_public_dict(link)}

    @app.post("/payments/links/{link_id}/pause")
    async def pause_link(link_id: str, merchant_id: str = Depends(merchant_auth)):
        with svc.session_factory() as db:
            link = payment_links.pause(db, link_id, merchant_id)
            db.commit()
        return {"success": True, "paymentLink": payment_links.to_public_dict(link)}

    @app.post("/payments/links/{link_id}/resume")
    async def resume_link(link_id: str, merchant_id: str = Depends(merchant_auth)):
        with svc.session_factory() as db:
            link = payment_links.resume(db, link_id, merchant_id)
            db.commit()
        return {"success": True, "paymentLink": payment_links.to_public_dict(link)}

    # Payments
    def _payment_response(transaction):
        body = {"success": transaction.status != "failed", "transaction": transaction_views.to_public_dict(transaction)}
        if transaction.status == "failed":
            body["message"] = (transaction.provider_response or {}).get("responseMessage") or "Payment failed"
            return JSONResponse(status_code=400, content=body)
        body["message"] = "Payment initiated successfully"
        return body

    @app.post("/payments/process")
    async def process_payment(body: PaymentLinkCheckout):
        transaction = await svc.transactions.checkout(body)
        return _payment_response(transaction)

    @app.post("/payments/charge")
    async def charge(body: DirectPaymentRequest, merchant_id: str = Depends(merchant_auth)):
        if body.merchant_id != merchant_id:
            raise HTTPException(403, "cannot charge on behalf of another merchant")
        transaction = await svc.transactions.checkout(body)
        return _payment_response(transaction)

    @app.get("/payments/transaction/{transaction_id}")
    async def transaction_status(transaction_id: str):
        transaction = svc.transactions.get(transaction_id)
        return {"success": True, "transaction": transaction_views.to_public_dict(transaction)}

    @app.post("/payments/transaction/{transaction_id}/cancel")
    async def cancel_transaction(transaction_id: str, body: Optional[CancelRequest] = None,
                                 merchant_id: str = Depends(merchant_auth)):
        if svc.transactions.get(transaction_id).merchant_id != merchant_id:
            raise NotFoundError("Transaction not found", field="transactionId")
        transaction = svc.transactions.cancel(transaction_id, body.reason if body else None)
        return {"success": True, "transaction": transaction_views.to_public_dict(transaction)}

    @app.post("/payments/webhook/{provider}")
    async def provider_webhook(provider: str, request: Request):
        raw_body = await request.body()
        await svc.transactions.handle_callback(provider, raw_body, request.headers.get(SIGNATURE_HEADER))
        return {"success": True}

    # Payouts
    @app.post("/payouts/request", status_code=201)
    async def request_payout(body: PayoutRequest, merchant_id: str = Depends(merchant_auth)):
        payout = await svc.payouts.request(merchant_id, body.amount, body.currency, body.method,
                                           body.destination, body.notes)
        return {"success": True, "message": "Payout request submitted successfully",
                "payout": payout_views.to_public_dict(payout)}

    @app.post("/payouts/calculate-fees")
    async def payout_quote(body: FeeQuoteRequest, merchant_id: str = Depends(merchant_auth)):
        calculation = calculate_payout_quote(body.amount, body.method)
        return {"success": True, "calculation": {**calculation, "currency": body.currency, "method": body.method}}

    @app.get("/payouts")
    async def list_payouts(status: Optional[str] = None, limit: int = Query(20, ge=1, le=100),
                           offset: int = Query(0, ge=0), merchant_id: str = Depends(merchant_auth)):
        items = svc.payouts.list_for_merchant(merchant_id, status, limit, offset)
        return {"success": True, "payouts": [payout_views.to_public_dict(p) for p in items]}

    @app.get("/payouts/{payout_id}")
    async def get_payout(payout_id: str, merchant_id: str = Depends(merchant_auth)):
        return {"success": True, "payout": payout_views.to_public_dict(svc.payouts.get(payout_id, merchant_id))}

    @app.put("/payouts/{payout_id}/cancel")
    async def cancel_payout(payout_id: str, body: Optional[CancelRequest] = None,
                            merchant_id: str = Depends(merchant_auth)):
        payout = await svc.payouts.cancel(payout_id, body.reason if body else None, merchant_id=merchant_id)
        return {"success": True, "message": "Payout cancelled successfully",
                "payout": payout_views.to_public_dict(payout)}

    @app.post("/payouts/{payout_id}/verify")
    async def verify_payout(payout_id: str, body: VerifyPayoutRequest, merchant_id: str = Depends(merchant_auth)):
        payout = svc.payouts.verify(payout_id, body.code, merchant_id=merchant_id)
        return {"success": True, "payout": payout_views.to_public_dict(payout)}

    # Admin
    @app.put("/admin/payouts/{payout_id}/approve")
    async def approve_payout(payout_id: str, body: Optional[AdminPayoutAction] = None,
                             claims: Dict = Depends(internal_auth)):
        body = body or AdminPayoutAction()
        payout = await svc.payouts.approve(payout_id, claims.get("sub", "admin"), body.external_reference, body.notes)
        return {"success": True, "payout": payout_views.to_public_dict(payout)}

    @app.put("/admin/payouts/{payout_id}/reject")
    async def reject_payout(payout_id: str, body: Optional[AdminPayoutAction] = None,
                            claims: Dict = Depends(internal_auth)):
        body = body or AdminPayoutAction()
        payout = await svc.payouts.reject(payout_id, body.reason or body.notes, claims.get("sub", "admin"))
        return {"success": True, "payout": payout_views.to_public_dict(payout)}

    @app.put("/admin/payouts/{payout_id}/complete")
    async def complete_payout(payout_id: str, body: AdminPayoutAction, claims: Dict = Depends(internal_auth)):
        if not body.external_reference:
            raise HTTPException(400, "externalReference is required")
        payout = await svc.payouts.admin_complete(payout_id, body.external_reference, body.notes)
        return {"success": True, "payout": payout_views.to_public_dict(payout)}

    @app.get("/admin/settings", dependencies=[Depends(internal_auth)])
    async def get_platform_settings():
        return {"success": True, "settings": svc.platform_settings.get_settings()}

    @app.put("/admin/settings", dependencies=[Depends(internal_auth)])
    async def update_platform_settings(body: Dict = Body(...)):
        return {"success": True, "settings": svc.platform_settings.update_settings(body)}

    @app.post("/admin/reconcile", dependencies=[Depends(internal_auth)])
    async def reconcile_now():
        return {"success": True, "summary": await svc.worker.run_once()}

    # Realtime
    class WebSocketSubscriber:
        def __init__(self, websocket: WebSocket):
            self.websocket = websocket

        async def send(self, message: Dict) -> None:
            await self.websocket.send_json(message)

    @app.websocket("/ws/{merchant_id}")
    async def realtime(websocket: WebSocket, merchant_id: str, token: str = Query(...)):
        try:
            claims = verify_token(token)
        except Exception:
            await websocket.close(code=1008)
            return
        if claims.get("sub") != merchant_id:
            await websocket.close(code=1008)
            return

        await websocket.accept()
        subscriber = WebSocketSubscriber(websocket)
        svc.broker.subscribe(merchant_id, subscriber)
        try:
            with svc.session_factory() as db:
                balance = ledger.get_balance(db, merchant_id)
            await subscriber.send(balance_update_message(balance, "connected"))
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            svc.broker.unsubscribe(merchant_id, subscriber)

    return app

logging.basicConfig(level=settings.log_level)
app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
