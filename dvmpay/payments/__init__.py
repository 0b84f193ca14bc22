"""
Payment backends: LNbits (HTTP wallet API) or none (manual/external wallet).

The coordinator only needs pay(invoice, max_fee_sats, timeout_seconds).
"""

import math
from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class PaymentReceipt:
    payment_hash: str
    fee_sats: Optional[int] = None


class PaymentExecutor(Protocol):
    async def pay(self, invoice: str, max_fee_sats: int, timeout_seconds: int) -> PaymentReceipt:
        """Pay a Lightning invoice. Raises PaymentError subclasses on failure."""
        ...


def msats_to_sats(msats: int) -> int:
    """Round up: a provider asking 1500 msats must receive at least 2 sats."""
    return math.ceil(int(msats) / 1000)


def get_executor(payment_method: str = "lnbits") -> Optional[PaymentExecutor]:
    """
    Single entry point: returns a payment executor based on method.

    Args:
        payment_method: "lnbits" or "none"

    Returns:
        Executor, or None when no wallet is configured (payments stay Pending/Failed
        until one is bound).
    """
    if payment_method == "lnbits":
        from dvmpay.payments.lnbits import LNbitsExecutor, is_lnbits_configured

        if is_lnbits_configured():
            return LNbitsExecutor.from_env()
    return None


__all__ = [
    "PaymentExecutor",
    "PaymentReceipt",
    "get_executor",
    "msats_to_sats",
]
