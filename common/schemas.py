from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional

Currency = Literal["SSP", "USD"]
PaymentMethod = Literal["mtn_momo", "digicash"]

class CustomerInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: str = Field(..., alias="phoneNumber", min_length=4)

class PaymentLinkCheckout(BaseModel):
    """Customer paying through a merchant's payment link"""
    model_config = ConfigDict(populate_by_name=True)

    link_id: str = Field(..., alias="linkId")
    payment_method: PaymentMethod = Field(..., alias="paymentMethod")
    customer: CustomerInfo
    # only honoured by links that allow custom amounts
    amount: Optional[Decimal] = Field(default=None, gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

class DirectPaymentRequest(BaseModel):
    """Merchant-initiated charge through the API"""
    model_config = ConfigDict(populate_by_name=True)

    merchant_id: str = Field(..., alias="merchantId")
    amount: Decimal = Field(..., ge=1)
    currency: Currency = "SSP"
    payment_method: PaymentMethod = Field(..., alias="paymentMethod")
    description: str = Field(..., min_length=1, max_length=500)
    customer: CustomerInfo
    metadata: Dict[str, Any] = Field(default_factory=dict)

class CreatePaymentLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=3, max_length=100)
    description: str = Field(..., min_length=10, max_length=500)
    amount: Optional[Decimal] = None
    allow_custom_amount: bool = Field(default=False, alias="allowCustomAmount")
    min_amount: Optional[Decimal] = Field(default=None, alias="minAmount", ge=0)
    max_amount: Optional[Decimal] = Field(default=None, alias="maxAmount", ge=0)
    currency: Currency = "SSP"
    is_multi_use: bool = Field(default=True, alias="isMultiUse")
    max_uses: Optional[int] = Field(default=None, alias="maxUses", ge=1)
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")
    never_expires: bool = Field(default=False, alias="neverExpires")
    allowed_payment_methods: Optional[List[str]] = Field(default=None, alias="allowedPaymentMethods")
    redirect_urls: Dict[str, str] = Field(default_factory=dict, alias="redirectUrls")
    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")

class PayoutRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: Currency = "SSP"
    method: str
    destination: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = Field(default=None, max_length=500)

class FeeQuoteRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: Currency = "SSP"
    method: str

class ProviderCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    external_transaction_id: Optional[str] = Field(default=None, alias="externalTransactionId")
    status: str

class AdminPayoutAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notes: Optional[str] = Field(default=None, max_length=500)
    reason: Optional[str] = Field(default=None, max_length=500)
    external_reference: Optional[str] = Field(default=None, alias="externalReference")

class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)

class TransactionEvent(BaseModel):
    type: Literal["TransactionProcessing", "TransactionSucceeded", "TransactionFailed",
                  "TransactionExpired", "TransactionCancelled"]
    transaction_id: str
    merchant_id: str
    amount: str
    currency: str
    status: str
    payment_method: str
    merchant_receives: Optional[str] = None
    reason: Optional[str] = None

class PayoutEvent(BaseModel):
    type: Literal["PayoutRequested", "PayoutProcessing", "PayoutCompleted",
                  "PayoutFailed", "PayoutCancelled"]
    payout_id: str
    merchant_id: str
    amount: str
    currency: str
    status: str
    method: str
    reason: Optional[str] = None

class MerchantCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, max_length=64)
    email: Optional[str] = None
    business_name: Optional[str] = Field(default=None, alias="businessName")
    currency: Currency = "SSP"
    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")
    webhook_secret: Optional[str] = Field(default=None, alias="webhookSecret")

class VerifyPayoutRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6)
