"""
Fee formulas for payments and payouts.

Everything here is pure: amounts go in as anything Decimal() accepts and come
out as Decimal rounded half-up to 2 places. Persistence stores the cent
values (see to_cents / from_cents).
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Union
from common.error_handling import InvalidMethodError

Amount = Union[Decimal, int, float, str]

CENT = Decimal("0.01")

PLATFORM_FEE_RATE = Decimal("0.025")
PLATFORM_FEE_FIXED = Decimal("5")

# method -> (rate, minimum fee)
PAYOUT_FEE_SCHEDULE: Dict[str, tuple] = {
    "bank_transfer": (Decimal("0.015"), Decimal("25")),
    "mobile_money": (Decimal("0.02"), Decimal("15")),
    "cash_pickup": (Decimal("0.025"), Decimal("20")),
}

def to_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, float):
        # go through str so 0.1 stays 0.1
        return Decimal(str(amount))
    return Decimal(amount)

def round2(amount: Amount) -> Decimal:
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)

def to_cents(amount: Amount) -> int:
    return int(round2(amount) * 100)

def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)

@dataclass(frozen=True)
class TransactionFees:
    platform_fee: Decimal
    provider_fee: Decimal
    total_fees: Decimal
    merchant_receives: Decimal

@dataclass(frozen=True)
class PayoutFees:
    processing_fee: Decimal
    bank_fee: Decimal
    total_fees: Decimal
    net_amount: Decimal

def platform_fee(amount: Amount) -> Decimal:
    return round2(to_decimal(amount) * PLATFORM_FEE_RATE + PLATFORM_FEE_FIXED)

def transaction_fees(amount: Amount, provider_fee: Amount = 0) -> TransactionFees:
    """Fees for a payment; provider_fee is carried through but nothing reports one yet"""
    amount = round2(amount)
    fee = platform_fee(amount)
    provider = round2(provider_fee)
    total = fee + provider
    return TransactionFees(platform_fee=fee, provider_fee=provider, total_fees=total, merchant_receives=amount - total)

def payout_processing_fee(amount: Amount, method: str) -> Decimal:
    if method not in PAYOUT_FEE_SCHEDULE:
        raise InvalidMethodError(f"Unsupported payout method: {method}", field="method")
    rate, minimum = PAYOUT_FEE_SCHEDULE[method]
    return round2(max(to_decimal(amount) * rate, minimum))

def payout_fees(amount: Amount, method: str, bank_fee: Amount = 0) -> PayoutFees:
    amount = round2(amount)
    processing = payout_processing_fee(amount, method)
    bank = round2(bank_fee)
    total = processing + bank
    return PayoutFees(processing_fee=processing, bank_fee=bank, total_fees=total, net_amount=amount - total)

def calculate_payout_quote(amount: Amount, method: str) -> Dict[str, str]:
    """Fee preview shown to a merchant before they request a payout"""
    amount = round2(amount)
    fees = payout_fees(amount, method)
    percentage = (fees.processing_fee / amount * 100).quantize(CENT, rounding=ROUND_HALF_UP) if amount else Decimal("0.00")
    return {
        "requestedAmount": str(amount),
        "processingFee": str(fees.processing_fee),
        "totalFees": str(fees.total_fees),
        "netAmount": str(fees.net_amount),
        "totalDeducted": str(amount + fees.total_fees),
        "feePercentage": str(percentage),
    }
