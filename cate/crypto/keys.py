"""Signer keypairs — Ed25519 keys in the 64-byte ``seed ‖ public`` form.

Secrets are exchanged as base58 strings, or base64 with a ``b64:`` prefix.
"""

import base64
from dataclasses import dataclass

import base58
from cryptography.exceptions import InvalidSignature as _CryptoInvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

SEED_LENGTH = 32
PUBLIC_KEY_LENGTH = 32
SECRET_KEY_LENGTH = 64
SIGNATURE_LENGTH = 64


def _raw_public(private_key: ed25519.Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _raw_seed(private_key: ed25519.Ed25519PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


@dataclass(frozen=True)
class Keypair:
    """An Ed25519 signing identity."""

    seed: bytes
    public_key: bytes

    def __post_init__(self) -> None:
        if len(self.seed) != SEED_LENGTH:
            raise ValueError(f"seed must be {SEED_LENGTH} bytes, got {len(self.seed)}")
        derived = _raw_public(ed25519.Ed25519PrivateKey.from_private_bytes(self.seed))
        if derived != self.public_key:
            raise ValueError("public key does not match seed")

    def __repr__(self) -> str:
        return f"Keypair(public_key={self.public_key_base58})"

    @property
    def secret_key(self) -> bytes:
        """64-byte secret key (seed followed by public key)."""
        return self.seed + self.public_key

    @property
    def public_key_base58(self) -> str:
        return base58.b58encode(self.public_key).decode()

    def sign(self, message: bytes) -> bytes:
        private_key = ed25519.Ed25519PrivateKey.from_private_bytes(self.seed)
        return private_key.sign(message)


def generate_keypair() -> Keypair:
    private_key = ed25519.Ed25519PrivateKey.generate()
    return Keypair(seed=_raw_seed(private_key), public_key=_raw_public(private_key))


def keypair_from_seed(seed: bytes) -> Keypair:
    private_key = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
    return Keypair(seed=seed, public_key=_raw_public(private_key))


def load_keypair(secret: str) -> Keypair:
    """Decode a base58 or ``b64:``-prefixed base64 secret key.

    Accepts the 64-byte secret-key form or a bare 32-byte seed.
    Raises ``ValueError`` on malformed input.
    """
    secret = secret.strip()
    try:
        if secret.startswith("b64:"):
            raw = base64.b64decode(secret[4:], validate=True)
        else:
            raw = base58.b58decode(secret)
    except ValueError as exc:
        raise ValueError(f"signer secret is not valid encoded key material: {exc}") from exc

    if len(raw) == SECRET_KEY_LENGTH:
        return Keypair(seed=raw[:SEED_LENGTH], public_key=raw[SEED_LENGTH:])
    if len(raw) == SEED_LENGTH:
        return keypair_from_seed(raw)
    raise ValueError(
        f"signer secret must decode to {SECRET_KEY_LENGTH} or {SEED_LENGTH} bytes, got {len(raw)}"
    )


def export_keypair(keypair: Keypair) -> dict:
    """Serializable form of a keypair (includes the secret)."""
    return {
        "public_key": keypair.public_key_base58,
        "secret_key": base58.b58encode(keypair.secret_key).decode(),
        "secret_key_b64": base64.b64encode(keypair.secret_key).decode(),
    }


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Ed25519 verification that never raises on bad input."""
    if len(public_key) != PUBLIC_KEY_LENGTH or len(signature) != SIGNATURE_LENGTH:
        return False
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (_CryptoInvalidSignature, ValueError):
        return False
    return True
