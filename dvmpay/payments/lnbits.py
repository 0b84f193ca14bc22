"""
LNbits payment backend: pay a bolt11 invoice through the wallet's HTTP API.

Env:
  DVMPAY_LNBITS_URL  base URL, e.g. https://legend.lnbits.com
  DVMPAY_LNBITS_ADMIN_KEY  wallet admin key (needed to send)

The HTTP call is blocking (requests); pay() runs it in a worker thread so the
event loop keeps routing events while a payment is in flight.
"""

import asyncio
import logging
import os
from typing import Optional

import requests

from dvmpay.errors import FeeExceeded, InvoiceExpired, NetworkFailure, PaymentError, PaymentTimeout
from dvmpay.payments import PaymentReceipt

logger = logging.getLogger(__name__)

LNBITS_URL = "DVMPAY_LNBITS_URL"
LNBITS_ADMIN_KEY = "DVMPAY_LNBITS_ADMIN_KEY"


def is_lnbits_configured() -> bool:
    """True if both LNbits URL and admin key are set."""
    return bool((os.getenv(LNBITS_URL) or "").strip() and (os.getenv(LNBITS_ADMIN_KEY) or "").strip())


def _classify(status_code: int, detail: str) -> PaymentError:
    text = detail.lower()
    if "expired" in text:
        return InvoiceExpired(detail)
    if "fee" in text:
        return FeeExceeded(detail)
    if status_code >= 500:
        return NetworkFailure(f"Wallet returned {status_code}: {detail}")
    return PaymentError(f"Wallet returned {status_code}: {detail}")


class LNbitsExecutor:
    """
    Pays invoices from an LNbits wallet.

    LNbits applies its own routing fee reserve; max_fee_sats is checked against
    the fee the wallet reports when it reports one.
    """

    def __init__(self, base_url: str, admin_key: str, session: Optional[requests.Session] = None):
        base_url = (base_url or "").strip().rstrip("/")
        if not base_url:
            raise ValueError("LNbits base URL is empty")
        if not base_url.startswith("http://") and not base_url.startswith("https://"):
            base_url = "https://" + base_url
        self.base_url = base_url
        self._admin_key = admin_key
        self._session = session or requests.Session()

    @classmethod
    def from_env(cls) -> "LNbitsExecutor":
        if not is_lnbits_configured():
            raise RuntimeError(f"Set {LNBITS_URL} and {LNBITS_ADMIN_KEY} to pay through LNbits.")
        return cls(os.environ[LNBITS_URL], os.environ[LNBITS_ADMIN_KEY])

    async def pay(self, invoice: str, max_fee_sats: int, timeout_seconds: int) -> PaymentReceipt:
        return await asyncio.to_thread(self.pay_sync, invoice, max_fee_sats, timeout_seconds)

    def pay_sync(self, invoice: str, max_fee_sats: int, timeout_seconds: int) -> PaymentReceipt:
        url = f"{self.base_url}/api/v1/payments"
        try:
            r = self._session.post(
                url,
                json={"out": True, "bolt11": invoice},
                headers={"X-Api-Key": self._admin_key, "Content-Type": "application/json"},
                timeout=timeout_seconds,
            )
        except requests.Timeout as e:
            raise PaymentTimeout(f"Wallet did not answer within {timeout_seconds}s") from e
        except requests.RequestException as e:
            raise NetworkFailure(f"Wallet request failed: {e}") from e

        if r.status_code not in (200, 201):
            try:
                detail = str(r.json().get("detail") or r.text)
            except ValueError:
                detail = r.text
            raise _classify(r.status_code, detail)

        try:
            data = r.json()
        except ValueError as e:
            raise PaymentError(f"Wallet returned non-JSON response: {r.text[:200]}") from e
        payment_hash = data.get("payment_hash") or data.get("checking_id")
        if not payment_hash:
            raise PaymentError("Wallet response has no payment hash")

        fee_sats = None
        fee_msat = data.get("fee")
        if isinstance(fee_msat, (int, float)):
            fee_sats = abs(int(fee_msat)) // 1000
            if fee_sats > max_fee_sats:
                # already settled; surfaced for the caller's records, not as a failure
                logger.warning(f"Payment {payment_hash[:12]} fee {fee_sats} sats exceeded cap {max_fee_sats}")
        return PaymentReceipt(payment_hash=payment_hash, fee_sats=fee_sats)
