"""
Mobile-money provider gateways.

Each payment method has one gateway object exposing `initiate` and
`check_status`. Live and mock implementations share the interface; which
set is used is decided once by build_gateways() from settings.gateway_mode.
"""
import asyncio
import base64
import hashlib
import hmac
import json
import logging
import random
import secrets
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional
import httpx
from common.error_handling import InvalidMethodError, ProviderError
from common.settings import settings

logger = logging.getLogger(__name__)

# provider statuses that mean "ask again later"
IN_FLIGHT_STATUSES = {"PENDING", "PROCESSING", "INITIATED", "ONGOING"}

@dataclass
class InitiationResult:
    success: bool
    provider_transaction_id: Optional[str] = None
    request_id: Optional[str] = None
    response_code: str = "200"
    response_message: str = ""
    instructions: Dict[str, Any] = field(default_factory=dict)
    raw_response: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "providerTransactionId": self.provider_transaction_id,
            "requestId": self.request_id,
            "responseCode": self.response_code,
            "responseMessage": self.response_message,
            "instructions": self.instructions,
            "rawResponse": self.raw_response,
        }

@dataclass
class StatusResult:
    status: str
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

class PaymentGateway(ABC):
    method: str = ""
    success_status: str = ""

    @abstractmethod
    async def initiate(self, transaction) -> InitiationResult:
        ...

    @abstractmethod
    async def check_status(self, provider_transaction_id: str) -> StatusResult:
        ...

    def normalize(self, provider_status: Optional[str]) -> Optional[str]:
        """Map a provider status onto successful/failed; None while still in flight"""
        token = (provider_status or "").strip().upper()
        if token == self.success_status:
            return "successful"
        if token in IN_FLIGHT_STATUSES:
            return None
        return "failed"

def _mtn_instructions(transaction) -> Dict[str, Any]:
    return {
        "message": f"Please check your phone {transaction.customer.get('phoneNumber')} for MTN Mobile Money payment prompt",
        "steps": [
            "You will receive an SMS notification",
            "Enter your MTN Mobile Money PIN when prompted",
            "Confirm the payment details",
            "Payment will be processed automatically",
        ],
    }

def _digicash_instructions(transaction, merchant_code: str, payment_code: Optional[str]) -> Dict[str, Any]:
    return {
        "message": "Please dial *185# and follow the prompts to complete your Digicash payment",
        "steps": [
            "Dial *185# on your phone",
            'Select "Pay Merchant"',
            f"Enter merchant code: {merchant_code}",
            f"Enter amount: {transaction.amount} {transaction.currency}",
            "Enter your Digicash PIN to confirm",
        ],
        "paymentCode": payment_code,
        "merchantCode": merchant_code,
    }

def _json_body(response: Optional[httpx.Response]) -> Dict[str, Any]:
    if response is None:
        return {}
    try:
        body = response.json()
        return body if isinstance(body, dict) else {"body": body}
    except ValueError:
        return {"body": response.text}

class MtnMomoGateway(PaymentGateway):
    method = "mtn_momo"
    success_status = "SUCCESSFUL"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.base_url = settings.mtn_api_base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        return {
            "X-Target-Environment": settings.mtn_target_environment,
            "Ocp-Apim-Subscription-Key": settings.mtn_subscription_key,
        }

    async def _access_token(self) -> str:
        basic = base64.b64encode(f"{settings.mtn_api_key}:{settings.mtn_api_secret}".encode()).decode()
        response = await self.client.post(
            f"{self.base_url}/collection/token/",
            headers={"Authorization": f"Basic {basic}", **self._headers()},
        )
        response.raise_for_status()
        return response.json()["access_token"]

    async def initiate(self, transaction) -> InitiationResult:
        reference_id = str(uuid.uuid4())
        payload = {
            "amount": str(transaction.amount),
            "currency": transaction.currency,
            "externalId": transaction.transaction_id,
            "payer": {
                "partyIdType": "MSISDN",
                "partyId": transaction.customer.get("phoneNumber", "").replace("+211", "211"),
            },
            "payerMessage": f"Payment for {transaction.description}",
            "payeeNote": f"Ledger transaction {transaction.transaction_id}",
        }
        try:
            token = await self._access_token()
            response = await self.client.post(
                f"{self.base_url}/collection/v1_0/requesttopay",
                json=payload,
                headers={"Authorization": f"Bearer {token}", "X-Reference-Id": reference_id, **self._headers()},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            failed = getattr(e, "response", None)
            logger.error(f"MTN request to pay failed for {transaction.transaction_id}: {e}")
            body = _json_body(failed)
            return InitiationResult(
                success=False,
                response_code=str(failed.status_code) if failed is not None else "500",
                response_message=body.get("message", "Payment request failed"),
                raw_response=body or {"error": str(e)},
            )

        return InitiationResult(
            success=True,
            provider_transaction_id=reference_id,
            request_id=reference_id,
            response_code=str(response.status_code),
            response_message="Payment request initiated",
            instructions=_mtn_instructions(transaction),
            raw_response=_json_body(response) if response.content else {},
        )

    async def check_status(self, provider_transaction_id: str) -> StatusResult:
        try:
            token = await self._access_token()
            response = await self.client.get(
                f"{self.base_url}/collection/v1_0/requesttopay/{provider_transaction_id}",
                headers={"Authorization": f"Bearer {token}", **self._headers()},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError("Failed to check MTN payment status", original_error=e)
        data = response.json()
        return StatusResult(
            status=data.get("status", ""),
            reason=data.get("reason"),
            details={"financialTransactionId": data.get("financialTransactionId")},
        )

class DigicashGateway(PaymentGateway):
    method = "digicash"
    success_status = "COMPLETED"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.base_url = settings.digicash_api_base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)

    def _signed_headers(self, data: Dict[str, Any]) -> Dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        message = json.dumps(data, separators=(",", ":"), default=str) + timestamp
        signature = hmac.new(settings.digicash_api_secret.encode(), message.encode(), hashlib.sha256).hexdigest()
        return {
            "Authorization": f"Bearer {settings.digicash_api_key}",
            "X-Timestamp": timestamp,
            "X-Signature": signature,
        }

    async def initiate(self, transaction) -> InitiationResult:
        redirect = transaction.redirect_urls or {}
        payload = {
            "merchant_id": settings.digicash_merchant_id,
            "amount": str(transaction.amount),
            "currency": transaction.currency,
            "reference": transaction.transaction_id,
            "description": transaction.description,
            "customer": {
                "name": transaction.customer.get("name"),
                "phone": transaction.customer.get("phoneNumber"),
                "email": transaction.customer.get("email"),
            },
            "callback_url": f"{settings.app_url.rstrip('/')}/payments/webhook/digicash",
            "return_url": redirect.get("success") or f"{settings.app_url.rstrip('/')}/payment/success",
        }
        try:
            response = await self.client.post(
                f"{self.base_url}/payments/initiate",
                json=payload,
                headers=self._signed_headers(payload),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            failed = getattr(e, "response", None)
            logger.error(f"Digicash initiation failed for {transaction.transaction_id}: {e}")
            body = _json_body(failed)
            return InitiationResult(
                success=False,
                response_code=str(failed.status_code) if failed is not None else "500",
                response_message=body.get("message", "Payment request failed"),
                raw_response=body or {"error": str(e)},
            )

        data = response.json()
        return InitiationResult(
            success=True,
            provider_transaction_id=data.get("transaction_id"),
            request_id=data.get("payment_id"),
            response_code=str(response.status_code),
            response_message="Payment request initiated",
            instructions=_digicash_instructions(transaction, data.get("merchant_code"), data.get("payment_code")),
            raw_response=data,
        )

    async def check_status(self, provider_transaction_id: str) -> StatusResult:
        try:
            response = await self.client.get(
                f"{self.base_url}/payments/status/{provider_transaction_id}",
                headers=self._signed_headers({"transaction_id": provider_transaction_id}),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError("Failed to check Digicash payment status", original_error=e)
        data = response.json()
        return StatusResult(
            status=data.get("status", ""),
            reason=data.get("reason"),
            details={"amount": data.get("amount"), "currency": data.get("currency"),
                     "completedAt": data.get("completed_at")},
        )

class MockGateway(PaymentGateway):
    """Simulated provider for development: random outcomes, fixed latency"""

    def __init__(self, success_rate: float = None, latency: float = None, rng: Optional[random.Random] = None):
        self.success_rate = settings.mock_gateway_success_rate if success_rate is None else success_rate
        self.latency = settings.mock_gateway_latency_seconds if latency is None else latency
        self.rng = rng or random.Random()

    async def _simulate_latency(self):
        if self.latency:
            await asyncio.sleep(self.latency)

    async def check_status(self, provider_transaction_id: str) -> StatusResult:
        status = self.rng.choice(["PENDING", self.success_status, "FAILED"])
        return StatusResult(status=status, reason="INSUFFICIENT_BALANCE" if status == "FAILED" else None)

class MockMtnGateway(MockGateway):
    method = "mtn_momo"
    success_status = "SUCCESSFUL"

    async def initiate(self, transaction) -> InitiationResult:
        await self._simulate_latency()
        if self.rng.random() >= self.success_rate:
            return InitiationResult(
                success=False,
                response_code="400",
                response_message="Insufficient balance or invalid phone number",
                raw_response={"error": "INSUFFICIENT_BALANCE", "message": "Customer has insufficient balance"},
            )
        return InitiationResult(
            success=True,
            provider_transaction_id=f"mtn_{secrets.token_hex(8)}",
            request_id=str(uuid.uuid4()),
            response_message="Payment request initiated successfully",
            instructions=_mtn_instructions(transaction),
            raw_response={"status": "PENDING", "message": "Payment request sent to customer"},
        )

class MockDigicashGateway(MockGateway):
    method = "digicash"
    success_status = "COMPLETED"

    async def initiate(self, transaction) -> InitiationResult:
        await self._simulate_latency()
        if self.rng.random() >= self.success_rate:
            return InitiationResult(
                success=False,
                response_code="400",
                response_message="Payment initiation failed",
                raw_response={"error": "INVALID_PHONE", "message": "Invalid phone number or account not found"},
            )
        payment_code = str(self.rng.randint(100000, 999999))
        return InitiationResult(
            success=True,
            provider_transaction_id=f"dc_{secrets.token_hex(8)}",
            request_id=f"dc_req_{secrets.token_hex(6)}",
            response_message="Payment request initiated successfully",
            instructions=_digicash_instructions(transaction, "12345", payment_code),
            raw_response={"status": "PENDING", "payment_code": payment_code, "merchant_code": "12345"},
        )

def build_gateways(mode: str = None, client: Optional[httpx.AsyncClient] = None) -> Dict[str, PaymentGateway]:
    mode = (mode or settings.gateway_mode).lower()
    if mode == "live":
        gateways = [MtnMomoGateway(client), DigicashGateway(client)]
    elif mode == "mock":
        gateways = [MockMtnGateway(), MockDigicashGateway()]
    else:
        raise ValueError(f"Unknown gateway mode: {mode}")
    logger.info(f"Payment gateways ready in {mode} mode")
    return {g.method: g for g in gateways}

def gateway_for(gateways: Dict[str, PaymentGateway], method: str) -> PaymentGateway:
    try:
        return gateways[method]
    except KeyError:
        raise InvalidMethodError(f"Unsupported payment method: {method}", field="paymentMethod")
