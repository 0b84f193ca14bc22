"""
Payload encryption between two identities (NIP-04 envelope).

Shared secret: x-coordinate of ECDH(my_private_key, their_public_key) on
secp256k1. Both sides derive the same value, so the consumer can decrypt what
the provider encrypted for it with the secret derived at request time.

Envelope: base64(AES-256-CBC ciphertext) + "?iv=" + base64(16-byte IV).
The IV travels in the envelope, so decrypt needs only the envelope and secret.
"""

import base64
import binascii
import logging
import os
from dataclasses import dataclass, field

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from dvmpay.errors import CryptoError, DecryptError

logger = logging.getLogger(__name__)

IV_SEPARATOR = "?iv="
IV_SIZE = 16
BLOCK_BITS = 128


@dataclass(frozen=True)
class SharedSecret:
    """32-byte symmetric key. Kept in memory only; never serialized."""

    key: bytes = field(repr=False)

    def __post_init__(self):
        if len(self.key) != 32:
            raise CryptoError(f"Shared secret must be 32 bytes, got {len(self.key)}")


def derive_shared_secret(my_private_key: str, their_public_key: str) -> SharedSecret:
    """
    ECDH between our private key and their x-only public key.

    Raises:
        CryptoError: If either key is malformed or the point is not on the curve
    """
    try:
        sk_int = int.from_bytes(bytes.fromhex(my_private_key), "big")
        private_key = ec.derive_private_key(sk_int, ec.SECP256K1())
        # x-only keys are lifted to the even-y point; ECDH x is parity-independent
        public_key = ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256K1(), b"\x02" + bytes.fromhex(their_public_key)
        )
        return SharedSecret(private_key.exchange(ec.ECDH(), public_key))
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Failed to derive shared secret: {e}") from e


def encrypt(plaintext: str, secret: SharedSecret) -> str:
    """Encrypt UTF-8 text into a self-describing envelope."""
    iv = os.urandom(IV_SIZE)
    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(secret.key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return (
        base64.b64encode(ciphertext).decode("ascii")
        + IV_SEPARATOR
        + base64.b64encode(iv).decode("ascii")
    )


def decrypt(envelope: str, secret: SharedSecret) -> str:
    """
    Decrypt an envelope produced by encrypt().

    Raises:
        DecryptError: Wrong key, malformed envelope or corrupted ciphertext
    """
    if not isinstance(envelope, str) or IV_SEPARATOR not in envelope:
        raise DecryptError("Envelope has no IV")
    ct_b64, iv_b64 = envelope.split(IV_SEPARATOR, 1)
    try:
        ciphertext = base64.b64decode(ct_b64, validate=True)
        iv = base64.b64decode(iv_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptError(f"Envelope is not valid base64: {e}") from e
    if len(iv) != IV_SIZE:
        raise DecryptError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
    if not ciphertext or len(ciphertext) % (BLOCK_BITS // 8):
        raise DecryptError("Ciphertext length is not a positive multiple of the block size")

    decryptor = Cipher(algorithms.AES(secret.key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    try:
        unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
        data = unpadder.update(padded) + unpadder.finalize()
        return data.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug(f"Decrypt failed: {e}")
        raise DecryptError("Could not decrypt envelope (wrong key or corrupted data)") from e


def looks_like_envelope(content: str) -> bool:
    return bool(content) and IV_SEPARATOR in content
