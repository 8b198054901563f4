"""Ed25519 request signing (PyNaCl) and request fingerprinting."""

import hashlib
import json
import secrets
from datetime import UTC, datetime

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

AUTH_SCHEME = "WalletSig"


def generate_keypair() -> tuple[str, str]:
    """Generate an Ed25519 keypair. Returns (private_key_hex, public_key_hex)."""
    signing_key = SigningKey.generate()
    private_hex = signing_key.encode(encoder=HexEncoder).decode()
    public_hex = signing_key.verify_key.encode(encoder=HexEncoder).decode()
    return private_hex, public_hex


def build_signature_message(
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> bytes:
    """Build the message to sign: timestamp\\nmethod\\npath\\nsha256(body)."""
    body_hash = hashlib.sha256(body).hexdigest()
    return f"{timestamp}\n{method}\n{path}\n{body_hash}".encode()


def sign_request(
    private_key_hex: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> str:
    """Sign a request and return the hex-encoded signature."""
    signing_key = SigningKey(private_key_hex.encode(), encoder=HexEncoder)
    message = build_signature_message(timestamp, method, path, body)
    signed = signing_key.sign(message, encoder=HexEncoder)
    return signed.signature.decode()


def verify_signature(
    public_key_hex: str,
    signature_hex: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> bool:
    """Verify an Ed25519 signature. Malformed keys or signatures count as invalid."""
    try:
        verify_key = VerifyKey(public_key_hex.encode(), encoder=HexEncoder)
        message = build_signature_message(timestamp, method, path, body)
        verify_key.verify(message, HexEncoder.decode(signature_hex.encode()))
    except (BadSignatureError, CryptoError, ValueError, TypeError):
        return False
    return True


def is_valid_public_key(public_key_hex: str) -> bool:
    try:
        VerifyKey(public_key_hex.encode(), encoder=HexEncoder)
    except (CryptoError, ValueError, TypeError):
        return False
    return True


def generate_nonce() -> str:
    """Generate a cryptographically secure nonce."""
    return secrets.token_hex(16)


def is_timestamp_valid(timestamp: str, max_age_seconds: int = 30) -> bool:
    """Check if a timezone-aware ISO timestamp is within the allowed window."""
    try:
        ts = datetime.fromisoformat(timestamp)
    except (ValueError, TypeError):
        return False
    if ts.tzinfo is None:
        return False
    delta = abs((datetime.now(UTC) - ts).total_seconds())
    return delta <= max_age_seconds


def hash_request(payload: dict) -> str:
    """SHA-256 of the canonical JSON form of a request payload.

    Used to detect an Idempotency-Key being replayed with a different body.
    """
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
