"""
Credential vault: AES-256-CBC encryption for secrets at rest and for
signed transit envelopes exchanged with tenants.

Storage format is base64(iv || ciphertext) with a random 16 byte IV per call.
The storage key is SHA-256 of the master secret supplied through the
environment. decrypt() and decrypt_transit() return None on any failure;
callers treat that as "value unavailable".
"""
import base64
import binascii
import hashlib
import hmac
import json
import os
import time
from typing import Any, Callable, Dict, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from perf_hub_server.errors import ConfigurationError
from perf_hub_server.logging_config import get_logger

logger = get_logger(__name__)

IV_SIZE = 16
BLOCK_BITS = 128
TRANSIT_MAX_AGE_SECONDS = 300


def _derive_key(secret: str, suffix: str = "") -> bytes:
    return hashlib.sha256(f"{secret}{suffix}".encode("utf-8")).digest()


def _aes_encrypt(key: bytes, plaintext: bytes) -> str:
    iv = os.urandom(IV_SIZE)
    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    encrypted = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(iv + encrypted).decode("ascii")


def _aes_decrypt(key: bytes, token: str) -> Optional[bytes]:
    try:
        data = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError, TypeError):
        return None

    # IV plus at least one cipher block
    if len(data) < IV_SIZE + 1 or (len(data) - IV_SIZE) % (BLOCK_BITS // 8):
        return None

    iv, encrypted = data[:IV_SIZE], data[IV_SIZE:]
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(encrypted) + decryptor.finalize()
        unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        return None


class CredentialVault:
    """Encrypt and decrypt secrets with a key derived from the master secret."""

    def __init__(
        self,
        master_secret: str,
        transit_max_age: int = TRANSIT_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not master_secret:
            raise ConfigurationError("ENCRYPTION_KEY not configured", setting="ENCRYPTION_KEY")
        self._key = _derive_key(master_secret)
        self.transit_max_age = transit_max_age
        self._clock = clock

    def encrypt(self, plaintext: str) -> str:
        return _aes_encrypt(self._key, plaintext.encode("utf-8"))

    def decrypt(self, ciphertext: str) -> Optional[str]:
        """Return the plaintext, or None when the input is malformed or tampered."""
        raw = _aes_decrypt(self._key, ciphertext or "")
        if raw is None:
            logger.debug("decrypt_failed", length=len(ciphertext or ""))
            return None
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return None

    def encrypt_transit(self, data: Dict[str, Any], api_key: str) -> str:
        """
        Wrap a payload for a tenant.

        The payload is encrypted with a key derived from the tenant's API key,
        signed with HMAC-SHA256 over the encoded ciphertext and timestamped.
        """
        body = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
        payload = _aes_encrypt(_derive_key(api_key, ":transit"), body.encode("utf-8"))
        signature = hmac.new(api_key.encode("utf-8"), payload.encode("ascii"), hashlib.sha256).hexdigest()
        return json.dumps({
            "payload": payload,
            "signature": signature,
            "timestamp": int(self._clock()),
        })

    def decrypt_transit(self, envelope: str, api_key: str) -> Optional[Dict[str, Any]]:
        """
        Open a transit envelope.

        Returns None when the envelope is malformed, the signature does not
        match, the timestamp is not an integer or lies more than
        transit_max_age seconds from now, or the payload does not decrypt to
        a JSON object.
        """
        try:
            parsed = json.loads(envelope)
        except (TypeError, ValueError):
            return None
        if not isinstance(parsed, dict):
            return None

        payload = parsed.get("payload")
        signature = parsed.get("signature")
        timestamp = parsed.get("timestamp")
        if not isinstance(payload, str) or not isinstance(signature, str) or not payload:
            return None

        expected = hmac.new(api_key.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature):
            logger.warning("transit_signature_mismatch")
            return None

        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            return None
        age = abs(self._clock() - timestamp)
        if age > self.transit_max_age:
            logger.warning("transit_envelope_stale", age_seconds=int(age))
            return None

        raw = _aes_decrypt(_derive_key(api_key, ":transit"), payload)
        if raw is None:
            return None
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        return data if isinstance(data, dict) and data else None


def generate_encryption_key() -> str:
    """Produce a value suitable for ENCRYPTION_KEY."""
    return os.urandom(32).hex()
