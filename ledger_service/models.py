from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, BigInteger, Boolean, DateTime, JSON, Text, ForeignKey
from sqlalchemy.orm import declarative_base
from ledger_service.fees import from_cents

Base = declarative_base()

def utcnow() -> datetime:
    # naive UTC, matching what DateTime columns hand back
    return datetime.now(timezone.utc).replace(tzinfo=None)

class Merchant(Base):
    __tablename__ = "merchants"
    id = Column(String(64), primary_key=True)
    email = Column(String(255))
    business_name = Column(String(255))
    balance_available_cents = Column(BigInteger, nullable=False, default=0)
    balance_pending_cents = Column(BigInteger, nullable=False, default=0)
    balance_currency = Column(String(3), nullable=False, default="SSP")
    webhook_url = Column(String(500))
    webhook_secret = Column(String(255))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def available(self):
        return from_cents(self.balance_available_cents)

    @property
    def pending(self):
        return from_cents(self.balance_pending_cents)

class Transaction(Base):
    __tablename__ = "transactions"
    transaction_id = Column(String(32), primary_key=True)
    external_transaction_id = Column(String(128), index=True)
    merchant_id = Column(String(64), ForeignKey("merchants.id"), index=True, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default="SSP")
    description = Column(String(500))
    payment_method = Column(String(16), nullable=False)  # mtn_momo|digicash
    customer = Column(JSON, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default="pending", index=True)

    platform_fee_cents = Column(BigInteger, nullable=False, default=0)
    provider_fee_cents = Column(BigInteger, nullable=False, default=0)
    total_fees_cents = Column(BigInteger, nullable=False, default=0)
    merchant_receives_cents = Column(BigInteger, nullable=False, default=0)

    provider_response = Column(JSON, default=dict)
    payment_link_id = Column(String(32), index=True)
    redirect_urls = Column(JSON, default=dict)
    meta = Column("metadata", JSON, default=dict)

    initiated_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)
    expires_at = Column(DateTime)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)

    webhook_sent = Column(Boolean, nullable=False, default=False)
    webhook_attempts = Column(Integer, nullable=False, default=0)
    webhook_response = Column(Text)

    reconciled = Column(Boolean, nullable=False, default=False)
    reconciled_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def amount(self):
        return from_cents(self.amount_cents)

    @property
    def merchant_receives(self):
        return from_cents(self.merchant_receives_cents)

class PaymentLink(Base):
    __tablename__ = "payment_links"
    id = Column(Integer, primary_key=True, autoincrement=True)
    link_id = Column(String(32), unique=True, index=True, nullable=False)
    reference = Column(String(32), unique=True, nullable=False)
    merchant_id = Column(String(64), ForeignKey("merchants.id"), index=True, nullable=False)
    title = Column(String(100), nullable=False)
    description = Column(String(500))

    amount_cents = Column(BigInteger)  # null when the payer picks the amount
    allow_custom_amount = Column(Boolean, nullable=False, default=False)
    min_amount_cents = Column(BigInteger)
    max_amount_cents = Column(BigInteger)
    currency = Column(String(3), nullable=False, default="SSP")

    is_active = Column(Boolean, nullable=False, default=True)
    is_multi_use = Column(Boolean, nullable=False, default=True)
    max_uses = Column(Integer)
    current_uses = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime)
    never_expires = Column(Boolean, nullable=False, default=False)
    allowed_payment_methods = Column(JSON, default=list)
    redirect_urls = Column(JSON, default=dict)
    webhook_url = Column(String(500))
    status = Column(String(16), nullable=False, default="active", index=True)  # active|paused|expired|completed

    views = Column(Integer, nullable=False, default=0)
    unique_views = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    total_amount_collected_cents = Column(BigInteger, nullable=False, default=0)
    last_viewed_at = Column(DateTime)
    last_payment_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def amount(self):
        return from_cents(self.amount_cents) if self.amount_cents is not None else None

    @property
    def total_amount_collected(self):
        return from_cents(self.total_amount_collected_cents)

class Payout(Base):
    __tablename__ = "payouts"
    payout_id = Column(String(32), primary_key=True)
    merchant_id = Column(String(64), ForeignKey("merchants.id"), index=True, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default="SSP")
    method = Column(String(16), nullable=False)  # bank_transfer|mobile_money|cash_pickup
    destination = Column(JSON, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default="pending", index=True)

    processing_fee_cents = Column(BigInteger, nullable=False, default=0)
    bank_fee_cents = Column(BigInteger, nullable=False, default=0)
    total_fees_cents = Column(BigInteger, nullable=False, default=0)
    net_amount_cents = Column(BigInteger, nullable=False, default=0)

    funds_held = Column(Boolean, nullable=False, default=False)
    verification_code = Column(String(6))
    requires_verification = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime)

    processed_by = Column(String(64))
    processed_at = Column(DateTime)
    completed_at = Column(DateTime)
    external_reference = Column(String(128))
    rejection_reason = Column(String(500))
    merchant_notes = Column(String(500))
    admin_notes = Column(String(500))

    reconciled = Column(Boolean, nullable=False, default=False)
    reconciled_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def amount(self):
        return from_cents(self.amount_cents)

    @property
    def hold_cents(self) -> int:
        """What leaves `available` while the payout is open"""
        return self.amount_cents + self.total_fees_cents

    @property
    def net_amount(self):
        return from_cents(self.net_amount_cents)
