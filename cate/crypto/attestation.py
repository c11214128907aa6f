"""Attestation engine — hash, sign and verify decision payloads.

Signing and verification are pure CPU operations.  Verification rejects a
tampered payload with ``HashMismatch`` before the signature is checked.
"""

import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

import base58

from cate.crypto.codec import DecisionPayload, SigningRequest, generate_nonce
from cate.crypto.keys import Keypair, verify_signature
from cate.errors import (
    AttestationError,
    DecisionAlreadyUsed,
    HashMismatch,
    InvalidSignature,
    InvalidSigner,
)
from cate.risk.models import RiskAction, RiskDecision

logger = logging.getLogger("cate.crypto")


@dataclass(frozen=True)
class SignedDecision:
    """A payload bound to its hash, signature and signer."""

    payload: DecisionPayload
    decision_hash: bytes
    signature: bytes
    signer_public_key: bytes

    @property
    def hash_base58(self) -> str:
        return base58.b58encode(self.decision_hash).decode()

    @property
    def signer_base58(self) -> str:
        return base58.b58encode(self.signer_public_key).decode()

    def to_dict(self) -> dict:
        p = self.payload
        return {
            "asset_id": p.asset_id,
            "price": p.price,
            "confidence": p.confidence,
            "risk_score": p.risk_score,
            "action": p.action.value,
            "size_multiplier": p.size_multiplier,
            "timestamp_ms": p.timestamp_ms,
            "nonce": base58.b58encode(p.nonce).decode(),
            "decision_hash": self.hash_base58,
            "signature": base58.b58encode(self.signature).decode(),
            "signer": self.signer_base58,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SignedDecision":
        """Inverse of ``to_dict``.  Raises ``ValueError`` on malformed input."""
        try:
            payload = DecisionPayload(
                asset_id=str(data["asset_id"]),
                price=float(data["price"]),
                confidence=float(data["confidence"]),
                risk_score=int(data["risk_score"]),
                action=RiskAction(data["action"]),
                size_multiplier=float(data["size_multiplier"]),
                timestamp_ms=int(data["timestamp_ms"]),
                nonce=_b58_field(data, "nonce"),
            )
            if not all(map(math.isfinite, (payload.price, payload.confidence, payload.size_multiplier))):
                raise ValueError("price, confidence and size_multiplier must be finite")
            return cls(
                payload=payload,
                decision_hash=_b58_field(data, "decision_hash"),
                signature=_b58_field(data, "signature"),
                signer_public_key=_b58_field(data, "signer"),
            )
        except KeyError as exc:
            raise ValueError(f"missing field: {exc.args[0]}") from exc
        except (TypeError, OverflowError) as exc:
            raise ValueError(f"malformed decision: {exc}") from exc


def _b58_field(data: dict, name: str) -> bytes:
    value = data[name]
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a base58 string")
    return base58.b58decode(value)


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    error: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict:
        out: dict = {"valid": self.valid}
        if self.error:
            out["error"] = self.error
            out["message"] = self.message
        return out


def payload_from_decision(
    decision: RiskDecision,
    nonce: Optional[bytes] = None,
) -> DecisionPayload:
    """Project a ``RiskDecision`` onto its canonical signed subset."""
    metrics = decision.inputs.metrics
    return DecisionPayload(
        asset_id=decision.asset_id,
        price=metrics.price,
        confidence=metrics.confidence,
        risk_score=decision.risk_score,
        action=decision.action,
        size_multiplier=decision.size_multiplier,
        timestamp_ms=int(round(decision.timestamp * 1000)),
        nonce=nonce if nonce is not None else generate_nonce(),
    )


class AttestationEngine:
    """Owns one signer keypair for the lifetime of the process.

    Args:
        keypair: The signing identity.
    """

    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair

    @property
    def public_key(self) -> bytes:
        return self._keypair.public_key

    @property
    def public_key_base58(self) -> str:
        return self._keypair.public_key_base58

    # ── Signing ──────────────────────────────────────────────────────────

    def sign(self, payload: DecisionPayload) -> SignedDecision:
        digest = payload.hash()
        signature = self._keypair.sign(digest)
        return SignedDecision(
            payload=payload,
            decision_hash=digest,
            signature=signature,
            signer_public_key=self._keypair.public_key,
        )

    def sign_decision(
        self,
        decision: RiskDecision,
        nonce: Optional[bytes] = None,
    ) -> SignedDecision:
        signed = self.sign(payload_from_decision(decision, nonce))
        logger.info(
            "Signed %s %s (risk %d, size %.2f) hash=%s",
            decision.asset_id, decision.action.value, decision.risk_score,
            decision.size_multiplier, signed.hash_base58,
        )
        return signed

    def sign_request(self, request: SigningRequest) -> tuple[bytes, bytes]:
        """Sign a validated HTTP signing request; returns ``(hash, signature)``."""
        digest = request.hash()
        return digest, self._keypair.sign(digest)

    # ── Verification ─────────────────────────────────────────────────────

    @staticmethod
    def check(signed: SignedDecision, expected_signer: Optional[bytes] = None) -> None:
        """Raise the specific ``AttestationError`` or ``InvalidSigner``."""
        if signed.payload.hash() != signed.decision_hash:
            raise HashMismatch("decision hash does not match payload")
        if expected_signer is not None and signed.signer_public_key != expected_signer:
            raise InvalidSigner("decision was not signed by the trusted signer")
        if not verify_signature(signed.signer_public_key, signed.decision_hash, signed.signature):
            raise InvalidSignature("Ed25519 signature verification failed")

    @classmethod
    def verify(
        cls,
        signed: SignedDecision,
        expected_signer: Optional[bytes] = None,
    ) -> VerificationResult:
        """Verify independently of the signer's runtime; never raises."""
        try:
            cls.check(signed, expected_signer)
        except (AttestationError, InvalidSigner) as exc:
            return VerificationResult(False, exc.code, exc.message)
        except ValueError as exc:
            return VerificationResult(False, HashMismatch.code, str(exc))
        return VerificationResult(True)

    @staticmethod
    def verify_raw(message_hash: bytes, signature: bytes, public_key: bytes) -> bool:
        return verify_signature(public_key, message_hash, signature)


class ReplayGuard:
    """Bounded set of seen decision hashes with FIFO eviction.

    Args:
        max_size: Number of hashes remembered.
        max_age_seconds: Entries older than this are pruned on each check
            (``None`` disables age pruning).
    """

    def __init__(self, max_size: int = 1000, max_age_seconds: Optional[float] = None) -> None:
        self._max_size = max_size
        self._max_age = max_age_seconds
        self._seen: OrderedDict[bytes, float] = OrderedDict()

    def _prune(self, now: float) -> None:
        if self._max_age is None:
            return
        cutoff = now - self._max_age
        while self._seen:
            oldest, seen_at = next(iter(self._seen.items()))
            if seen_at >= cutoff:
                break
            self._seen.pop(oldest)

    def seen(self, decision_hash: bytes) -> bool:
        return decision_hash in self._seen

    def check_and_record(self, decision_hash: bytes, now: Optional[float] = None) -> None:
        """Raise ``DecisionAlreadyUsed`` for a repeat, otherwise remember it."""
        now = time.time() if now is None else now
        self._prune(now)
        if decision_hash in self._seen:
            raise DecisionAlreadyUsed(
                f"decision {base58.b58encode(decision_hash).decode()} already used"
            )
        self._seen[decision_hash] = now
        while len(self._seen) > self._max_size:
            self._seen.popitem(last=False)

    def __len__(self) -> int:
        return len(self._seen)

