"""
Consumer identity and provider identifier resolution.

Keys are hex-encoded 32-byte values. The private key is loaded from
DVMPAY_PRIVATE_KEY (env or .env) or generated fresh; it is never written to
disk by this package.

Provider identifiers are either raw 64-char hex public keys or bech32 aliases
(npub / nprofile). Alias decoding is delegated to the bech32 codec.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from bech32 import CHARSET, bech32_encode, bech32_verify_checksum, convertbits
from coincurve import PrivateKey

from dvmpay.errors import InvalidIdentifier

ENV_PRIVATE_KEY = "DVMPAY_PRIVATE_KEY"

HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")

# Alias types whose payload is a public key
PUBKEY_ALIAS_TYPES = ("npub", "nprofile")

_TLV_SPECIAL = 0


@dataclass(frozen=True)
class DecodedAlias:
    """Result of decoding a bech32 alias: its type (hrp) and hex payload."""

    type: str
    data: str


def _x_only(sk: PrivateKey) -> str:
    return sk.public_key.format(compressed=True)[1:].hex()


@dataclass(frozen=True)
class Identity:
    """Keypair for the consumer (or, in tests, a provider)."""

    public_key: str
    private_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def generate(cls) -> "Identity":
        sk = PrivateKey()
        return cls(public_key=_x_only(sk), private_key=sk.secret.hex())

    @classmethod
    def from_private_key(cls, private_key: str) -> "Identity":
        """Accepts hex (optionally 0x-prefixed) or an nsec alias."""
        value = private_key.strip()
        if value.startswith("nsec1"):
            value = decode_alias(value).data
        if value.startswith("0x"):
            value = value[2:]
        if not HEX_KEY_RE.match(value):
            raise InvalidIdentifier("Private key must be 64 hex characters or nsec")
        try:
            sk = PrivateKey(bytes.fromhex(value))
        except ValueError as e:
            raise InvalidIdentifier(f"Invalid private key: {e}") from e
        return cls(public_key=_x_only(sk), private_key=value.lower())

    @property
    def npub(self) -> str:
        return encode_npub(self.public_key)


def load_identity() -> Identity:
    """
    Load the consumer identity from DVMPAY_PRIVATE_KEY (env or .env).
    Raises RuntimeError if it is not set.
    """
    from dvmpay.config import load_env

    load_env()
    pk = (os.getenv(ENV_PRIVATE_KEY) or "").strip()
    if not pk:
        raise RuntimeError(
            f"Set {ENV_PRIVATE_KEY} in the environment (never commit it). "
            "Generate one with: dvmpay keygen"
        )
    return Identity.from_private_key(pk)


def _encode(hrp: str, payload: bytes) -> str:
    return bech32_encode(hrp, convertbits(payload, 8, 5, True))


def _split_bech32(value: str):
    """
    (hrp, 5-bit data) of a checksummed bech32 string, or (None, None).
    bech32_decode caps input at 90 chars; nprofile with relay hints runs longer.
    """
    if not value or (value.lower() != value and value.upper() != value):
        return None, None
    value = value.lower()
    pos = value.rfind("1")
    if pos < 1 or pos + 7 > len(value):
        return None, None
    hrp = value[:pos]
    data = [CHARSET.find(c) for c in value[pos + 1 :]]
    if -1 in data or not bech32_verify_checksum(hrp, data):
        return None, None
    return hrp, data[:-6]


def encode_npub(public_key: str) -> str:
    if not HEX_KEY_RE.match(public_key or ""):
        raise InvalidIdentifier("Public key must be 64 hex characters")
    return _encode("npub", bytes.fromhex(public_key))


def encode_nsec(private_key: str) -> str:
    if not HEX_KEY_RE.match(private_key or ""):
        raise InvalidIdentifier("Private key must be 64 hex characters")
    return _encode("nsec", bytes.fromhex(private_key))


def decode_alias(value: str) -> DecodedAlias:
    """
    Decode npub / nsec / note / nprofile. nprofile yields the pubkey from its
    TLV special entry; relay hints are ignored.
    """
    hrp, data = _split_bech32((value or "").strip())
    if hrp is None or data is None:
        raise InvalidIdentifier(f"Not a valid bech32 alias: {value!r}")
    raw = convertbits(data, 5, 8, False)
    if raw is None:
        raise InvalidIdentifier(f"Invalid bech32 payload in {value!r}")
    payload = bytes(raw)

    if hrp in ("npub", "nsec", "note"):
        if len(payload) != 32:
            raise InvalidIdentifier(f"{hrp} payload must be 32 bytes, got {len(payload)}")
        return DecodedAlias(type=hrp, data=payload.hex())

    if hrp == "nprofile":
        i = 0
        while i + 2 <= len(payload):
            t, length = payload[i], payload[i + 1]
            v = payload[i + 2 : i + 2 + length]
            if len(v) != length:
                break
            if t == _TLV_SPECIAL and length == 32:
                return DecodedAlias(type=hrp, data=v.hex())
            i += 2 + length
        raise InvalidIdentifier("nprofile has no public key entry")

    raise InvalidIdentifier(f"Unsupported alias type: {hrp}")


class IdentityResolver:
    """Normalizes a provider identifier to a canonical (lowercase) hex public key."""

    def __init__(self, decode: Callable[[str], DecodedAlias] = decode_alias):
        self._decode = decode

    def resolve(self, identifier: str) -> str:
        value = (identifier or "").strip()
        if HEX_KEY_RE.match(value):
            return value.lower()
        if not value:
            raise InvalidIdentifier("Empty provider identifier")
        try:
            decoded = self._decode(value)
        except InvalidIdentifier:
            raise
        except ValueError as e:
            raise InvalidIdentifier(f"Could not decode {value!r}: {e}") from e
        if decoded.type not in PUBKEY_ALIAS_TYPES:
            raise InvalidIdentifier(f"{decoded.type} does not identify a public key")
        if not HEX_KEY_RE.match(decoded.data or ""):
            raise InvalidIdentifier(f"Decoded {decoded.type} is not a 32-byte key")
        return decoded.data.lower()


def resolve_pubkey(identifier: str) -> str:
    return IdentityResolver().resolve(identifier)
