"""
Consumer configuration from environment (.env supported).

Env (all optional):
  DVMPAY_RELAYS  comma-separated relay URLs
  DVMPAY_AUTO_PAY_THRESHOLD_SATS  auto-pay invoices up to this many sats (default 10)
  DVMPAY_MAX_FEE_SATS  routing fee cap per payment (default 10)
  DVMPAY_PAYMENT_TIMEOUT  seconds per payment attempt (default 60)
  DVMPAY_SINCE_BUFFER  seconds subtracted from request created_at for filters (default 0)
  DVMPAY_JOB_KIND  default request kind, 5000-5999 (default 5050)
  DVMPAY_OUTPUT_MIME  default output mime type (default text/plain)
  DVMPAY_TELEMETRY  true/false (default true)
  DVMPAY_PAYMENT_METHOD  lnbits | none (default lnbits)
  DVMPAY_LANGUAGE_MODEL  nip90 | openai (default nip90)
"""

import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from dvmpay.events import DEFAULT_JOB_KIND, JOB_REQUEST_KIND_MAX, JOB_REQUEST_KIND_MIN

DEFAULT_RELAYS = [
    "wss://nostr.mom",
    "wss://relay.primal.net",
    "wss://offchain.pub",
]

_env_loaded = False


def load_env() -> None:
    """Load .env from cwd (then the package's parent) once. Never overrides set vars."""
    global _env_loaded
    if _env_loaded:
        return
    for _dir in (Path.cwd(), Path(__file__).resolve().parent.parent):
        env_file = _dir / ".env"
        if env_file.exists():
            load_dotenv(env_file, override=False)
            break
    _env_loaded = True


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    return int(raw) if raw.isdigit() else default


def _bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = (env.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class ConsumerConfig(BaseModel):
    """Policy and wiring for a JobConsumer."""

    relays: List[str] = Field(default_factory=lambda: list(DEFAULT_RELAYS))
    auto_pay_threshold_sats: int = Field(10, ge=0)
    max_fee_sats: int = Field(10, ge=0)
    payment_timeout_seconds: int = Field(60, gt=0)
    since_buffer_seconds: int = Field(0, ge=0)
    default_job_kind: int = DEFAULT_JOB_KIND
    output_mime_type: str = "text/plain"
    telemetry_enabled: bool = True
    payment_method: str = "lnbits"
    language_model: str = "nip90"

    @field_validator("default_job_kind")
    @classmethod
    def _check_kind(cls, v: int) -> int:
        if not JOB_REQUEST_KIND_MIN <= v <= JOB_REQUEST_KIND_MAX:
            raise ValueError(f"Job kind must be between {JOB_REQUEST_KIND_MIN}-{JOB_REQUEST_KIND_MAX}")
        return v

    @field_validator("relays")
    @classmethod
    def _check_relays(cls, v: List[str]) -> List[str]:
        relays = [r.strip() for r in v if r and r.strip()]
        if not relays:
            raise ValueError("At least one relay is required")
        return relays

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ConsumerConfig":
        """Build from env vars. Pass env to read from a mapping instead of os.environ."""
        if env is None:
            load_env()
            env = os.environ
        values: Dict[str, object] = {
            "auto_pay_threshold_sats": _int_env(env, "DVMPAY_AUTO_PAY_THRESHOLD_SATS", 10),
            "max_fee_sats": _int_env(env, "DVMPAY_MAX_FEE_SATS", 10),
            "payment_timeout_seconds": _int_env(env, "DVMPAY_PAYMENT_TIMEOUT", 60) or 60,
            "since_buffer_seconds": _int_env(env, "DVMPAY_SINCE_BUFFER", 0),
            "default_job_kind": _int_env(env, "DVMPAY_JOB_KIND", DEFAULT_JOB_KIND),
            "telemetry_enabled": _bool_env(env, "DVMPAY_TELEMETRY", True),
        }
        relays = (env.get("DVMPAY_RELAYS") or "").strip()
        if relays:
            values["relays"] = relays.split(",")
        for key, name in (
            ("output_mime_type", "DVMPAY_OUTPUT_MIME"),
            ("payment_method", "DVMPAY_PAYMENT_METHOD"),
            ("language_model", "DVMPAY_LANGUAGE_MODEL"),
        ):
            raw = (env.get(name) or "").strip()
            if raw:
                values[key] = raw
        return cls(**values)
