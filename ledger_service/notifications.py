import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from common.settings import settings
from ledger_service.fees import from_cents

logger = logging.getLogger(__name__)

METHOD_NAMES = {"mtn_momo": "MTN Mobile Money", "digicash": "Digicash"}

Mailer = Callable[[Dict[str, Any]], Awaitable[None]]

async def log_mailer(message: Dict[str, Any]) -> None:
    # no mail transport in this service; the alert is visible in the logs
    logger.info(f"📧 [ADMIN ALERT] to={message['to']} subject={message['subject']}")

def payment_summary(transaction, merchant) -> Dict[str, Any]:
    return {
        "transactionId": transaction.transaction_id,
        "amount": str(transaction.amount),
        "currency": transaction.currency,
        "platformFee": str(from_cents(transaction.platform_fee_cents)),
        "paymentMethod": METHOD_NAMES.get(transaction.payment_method, transaction.payment_method),
        "customerName": (transaction.customer or {}).get("name"),
        "customerPhone": (transaction.customer or {}).get("phoneNumber"),
        "merchantId": merchant.id if merchant is not None else transaction.merchant_id,
        "merchantEmail": merchant.email if merchant is not None else None,
        "business": (merchant.business_name if merchant is not None else None) or "Individual Account",
    }

class AdminAlerts:
    """Tells the platform admins about settled payments when the setting allows it"""

    def __init__(self, platform_settings, mailer: Optional[Mailer] = None, admin_email: str = None):
        self.platform_settings = platform_settings
        self.mailer = mailer or log_mailer
        self.admin_email = admin_email or settings.admin_email

    async def payment_received(self, transaction, merchant) -> Dict[str, Any]:
        if not self.platform_settings.admin_payment_alerts_enabled():
            return {"success": True, "skipped": True, "reason": "Admin email alerts disabled"}
        summary = payment_summary(transaction, merchant)
        message = {
            "to": self.admin_email,
            "subject": f"💰 Payment Alert - {summary['currency']} {summary['amount']}",
            "payment": summary,
        }
        try:
            await self.mailer(message)
        except Exception as e:
            logger.error(f"Admin payment alert failed for {transaction.transaction_id}: {e}")
            return {"success": False, "error": str(e)}
        return {"success": True}
