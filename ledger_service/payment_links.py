"""
Payment link registry: the payable offers a merchant shares with customers.

A link is accessible only while it is active, inside its expiry window and
below its usage cap. Counters that many customers hit at once (views, uses,
collected amount) are changed with atomic UPDATEs; status corrections run
through apply_self_maintenance before any ORM write.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional
from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.orm import Session
from common.error_handling import (NotFoundError, PaymentLinkUnavailableError, StateConflictError,
                                   ValidationError)
from common.schemas import CreatePaymentLinkRequest
from common.settings import settings
from ledger_service.fees import round2, to_cents, from_cents
from ledger_service.models import PaymentLink, utcnow

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("mtn_momo", "digicash")

def new_link_id() -> str:
    return uuid.uuid4().hex[:16]

def new_reference() -> str:
    return uuid.uuid4().hex[:12].upper()

def full_url(link: PaymentLink) -> str:
    return f"{settings.app_url.rstrip('/')}/pay/{link.link_id}"

def is_accessible(link: PaymentLink, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    if not link.is_active:
        return False
    if link.status != "active":
        return False
    if link.expires_at is not None and now > link.expires_at:
        return False
    if link.max_uses and link.current_uses >= link.max_uses:
        return False
    return True

def unavailable_reason(link: PaymentLink) -> str:
    if link.status in ("expired", "completed"):
        return link.status
    return "inactive"

def apply_self_maintenance(link: PaymentLink, now: Optional[datetime] = None) -> PaymentLink:
    """Demote an active link whose expiry passed or whose uses ran out"""
    now = now or utcnow()
    if link.status == "active" and link.expires_at is not None and now > link.expires_at:
        link.status = "expired"
        link.is_active = False
        logger.info(f"Payment link {link.link_id} expired")
    if link.status == "active" and link.max_uses and link.current_uses >= link.max_uses:
        link.status = "completed"
        link.is_active = False
        logger.info(f"Payment link {link.link_id} reached max uses")
    if not link.allowed_payment_methods:
        link.allowed_payment_methods = list(PAYMENT_METHODS)
    return link

def _parse_expiry(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("Expiry date must be a valid date", field="expiresAt")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

def create_link(db: Session, merchant_id: str, request: CreatePaymentLinkRequest,
                now: Optional[datetime] = None) -> PaymentLink:
    now = now or utcnow()

    if not request.allow_custom_amount and (request.amount is None or request.amount < 1):
        raise ValidationError("Amount is required and must be at least 1 when custom amounts are not allowed",
                              field="amount")
    if (request.allow_custom_amount and request.min_amount is not None and request.max_amount is not None
            and request.min_amount >= request.max_amount):
        raise ValidationError("Minimum amount must be less than maximum amount", field="minAmount")

    expires_at = None
    if request.expires_at and not request.never_expires:
        expires_at = _parse_expiry(request.expires_at)
        if expires_at <= now:
            raise ValidationError("Expiry date must be in the future", field="expiresAt")

    methods = request.allowed_payment_methods or list(PAYMENT_METHODS)
    unknown = [m for m in methods if m not in PAYMENT_METHODS]
    if unknown:
        raise ValidationError(f"Invalid payment method: {', '.join(unknown)}", field="allowedPaymentMethods")

    link = PaymentLink(
        link_id=new_link_id(),
        reference=new_reference(),
        merchant_id=merchant_id,
        title=request.title,
        description=request.description,
        amount_cents=None if request.allow_custom_amount else to_cents(request.amount),
        allow_custom_amount=request.allow_custom_amount,
        min_amount_cents=to_cents(request.min_amount) if request.min_amount is not None else None,
        max_amount_cents=to_cents(request.max_amount) if request.max_amount is not None else None,
        currency=request.currency,
        is_active=True,
        is_multi_use=request.is_multi_use,
        max_uses=request.max_uses,
        current_uses=0,
        expires_at=expires_at,
        never_expires=request.never_expires,
        allowed_payment_methods=methods,
        redirect_urls=request.redirect_urls,
        webhook_url=request.webhook_url,
        status="active",
    )
    apply_self_maintenance(link, now)
    db.add(link)
    db.flush()
    logger.info(f"Payment link {link.link_id} created for merchant {merchant_id}")
    return link

def get_by_link_id(db: Session, link_id: str) -> PaymentLink:
    link = db.execute(select(PaymentLink).where(PaymentLink.link_id == link_id)).scalar_one_or_none()
    if link is None:
        raise NotFoundError("Payment link not found", field="linkId")
    return link

def resolve_amount(link: PaymentLink, requested: Optional[Decimal]) -> Decimal:
    """Amount a checkout will charge: the fixed price, or the payer's amount within bounds"""
    if not link.allow_custom_amount:
        return link.amount
    if requested is None:
        raise ValidationError("Amount is required for this payment link", field="amount")
    amount = round2(requested)
    if link.min_amount_cents is not None and to_cents(amount) < link.min_amount_cents:
        raise ValidationError(f"Amount must be at least {from_cents(link.min_amount_cents)}", field="amount")
    if link.max_amount_cents is not None and to_cents(amount) > link.max_amount_cents:
        raise ValidationError(f"Amount must be at most {from_cents(link.max_amount_cents)}", field="amount")
    return amount

def ensure_payable(link: PaymentLink, payment_method: str, now: Optional[datetime] = None) -> None:
    if not is_accessible(link, now):
        raise PaymentLinkUnavailableError("Payment link is no longer available", field="linkId",
                                          context={"reason": unavailable_reason(link)})
    if payment_method not in (link.allowed_payment_methods or PAYMENT_METHODS):
        raise ValidationError("Payment method not allowed for this link", field="paymentMethod")

def record_payment(db: Session, link_id: str, amount_cents: int, now: Optional[datetime] = None) -> None:
    """Count a settled payment against the link, then demote it if it expired or got used up"""
    now = now or utcnow()
    result = db.execute(
        update(PaymentLink)
        .where(PaymentLink.link_id == link_id)
        .values(conversions=PaymentLink.conversions + 1,
                total_amount_collected_cents=PaymentLink.total_amount_collected_cents + amount_cents,
                current_uses=PaymentLink.current_uses + 1,
                last_payment_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning(f"Payment recorded against unknown link {link_id}")
        return

    expired = db.execute(
        update(PaymentLink)
        .where(PaymentLink.link_id == link_id,
               PaymentLink.status == "active",
               PaymentLink.expires_at.isnot(None),
               PaymentLink.expires_at < now)
        .values(status="expired", is_active=False)
        .execution_options(synchronize_session=False)
    )
    if expired.rowcount:
        logger.info(f"Payment link {link_id} expired")

    closed = db.execute(
        update(PaymentLink)
        .where(PaymentLink.link_id == link_id,
               or_(PaymentLink.is_multi_use.is_(False),
                   and_(PaymentLink.status == "active",
                        PaymentLink.max_uses.isnot(None),
                        PaymentLink.current_uses >= PaymentLink.max_uses)))
        .values(status="completed", is_active=False)
        .execution_options(synchronize_session=False)
    )
    if closed.rowcount:
        logger.info(f"Payment link {link_id} completed")

def increment_view(db: Session, link_id: str, is_unique: bool, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    values = {"views": PaymentLink.views + 1, "last_viewed_at": now}
    if is_unique:
        values["unique_views"] = PaymentLink.unique_views + 1
    db.execute(
        update(PaymentLink)
        .where(PaymentLink.link_id == link_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )

def pause(db: Session, link_id: str, merchant_id: str, now: Optional[datetime] = None) -> PaymentLink:
    link = apply_self_maintenance(_owned(db, link_id, merchant_id), now)
    if link.status != "active":
        raise StateConflictError(f"Cannot pause a {link.status} payment link", field="status")
    link.status = "paused"
    link.is_active = False
    db.flush()
    logger.info(f"Payment link {link_id} paused")
    return link

def resume(db: Session, link_id: str, merchant_id: str, now: Optional[datetime] = None) -> PaymentLink:
    link = _owned(db, link_id, merchant_id)
    if link.status != "paused":
        raise StateConflictError(f"Cannot resume a {link.status} payment link", field="status")
    link.status = "active"
    link.is_active = True
    apply_self_maintenance(link, now)
    db.flush()
    logger.info(f"Payment link {link_id} resumed as {link.status}")
    return link

def _owned(db: Session, link_id: str, merchant_id: str) -> PaymentLink:
    link = get_by_link_id(db, link_id)
    if link.merchant_id != merchant_id:
        raise NotFoundError("Payment link not found", field="linkId")
    return link

def sweep(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """Periodic demotion of links that expired or ran out of uses while active"""
    now = now or utcnow()
    expired = db.execute(
        update(PaymentLink)
        .where(PaymentLink.status == "active",
               PaymentLink.expires_at.isnot(None),
               PaymentLink.expires_at < now)
        .values(status="expired", is_active=False)
        .execution_options(synchronize_session=False)
    ).rowcount
    completed = db.execute(
        update(PaymentLink)
        .where(PaymentLink.status == "active",
               PaymentLink.max_uses.isnot(None),
               PaymentLink.current_uses >= PaymentLink.max_uses)
        .values(status="completed", is_active=False)
        .execution_options(synchronize_session=False)
    ).rowcount
    if expired or completed:
        logger.info(f"Link sweep: {expired} expired, {completed} completed")
    return {"expired": expired, "completed": completed}

def conversion_rate(link: PaymentLink) -> float:
    if not link.views:
        return 0.0
    return link.conversions / link.views * 100

def merchant_link_stats(db: Session, merchant_id: str) -> Dict[str, object]:
    row = db.execute(
        select(func.count(PaymentLink.id),
               func.coalesce(func.sum(PaymentLink.views), 0),
               func.coalesce(func.sum(PaymentLink.conversions), 0),
               func.coalesce(func.sum(PaymentLink.total_amount_collected_cents), 0))
        .where(PaymentLink.merchant_id == merchant_id)
    ).one()
    active = db.execute(
        select(func.count(PaymentLink.id))
        .where(PaymentLink.merchant_id == merchant_id, PaymentLink.status == "active")
    ).scalar_one()
    total_links, views, conversions, collected = row
    return {
        "totalLinks": total_links,
        "activeLinks": active,
        "totalViews": int(views),
        "totalConversions": int(conversions),
        "totalAmountCollected": str(from_cents(int(collected))),
        "averageConversionRate": (int(conversions) / int(views) * 100) if views else 0.0,
    }

def to_public_dict(link: PaymentLink) -> Dict[str, object]:
    return {
        "linkId": link.link_id,
        "reference": link.reference,
        "title": link.title,
        "description": link.description,
        "amount": str(link.amount) if link.amount is not None else None,
        "allowCustomAmount": link.allow_custom_amount,
        "minAmount": str(from_cents(link.min_amount_cents)) if link.min_amount_cents is not None else None,
        "maxAmount": str(from_cents(link.max_amount_cents)) if link.max_amount_cents is not None else None,
        "currency": link.currency,
        "allowedPaymentMethods": link.allowed_payment_methods,
        "status": link.status,
        "isActive": link.is_active,
        "expiresAt": link.expires_at.isoformat() if link.expires_at else None,
        "views": link.views,
        "conversions": link.conversions,
        "conversionRate": conversion_rate(link),
        "fullUrl": full_url(link),
    }
