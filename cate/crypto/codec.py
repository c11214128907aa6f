"""Canonical byte layouts for hashing and signing.

All multi-byte fields are little-endian.  Layouts are fixed so that an
independent implementation in any language produces identical bytes.

DecisionPayload (75 bytes)::

    asset_id[16] NUL-padded | price f64 | confidence f64 | size_multiplier f64
    | timestamp_ms i64 | confidence_bps u64 | risk_score u8 | action u8
    | is_blocked u8 | nonce[16]

SigningRequest (51 bytes)::

    asset_id[16] | price f64 | timestamp i64 | confidence_ratio u64
    | risk_score u8 | is_blocked u8 | publisher_count u8 | nonce u64
"""

import hashlib
import os
import struct
from dataclasses import dataclass

from cate.risk.models import RiskAction

ASSET_ID_LENGTH = 16
NONCE_LENGTH = 16
HASH_LENGTH = 32
MAX_CONFIDENCE_BPS = 10_000

ACTION_CODES: dict[RiskAction, int] = {
    RiskAction.ALLOW: 0,
    RiskAction.SCALE: 1,
    RiskAction.BLOCK: 2,
}
ACTIONS_BY_CODE = {v: k for k, v in ACTION_CODES.items()}

_PAYLOAD_STRUCT = struct.Struct("<16sdddqQBBB16s")
_REQUEST_STRUCT = struct.Struct("<16sdqQBBBQ")

PAYLOAD_SIZE = _PAYLOAD_STRUCT.size
REQUEST_SIZE = _REQUEST_STRUCT.size


def encode_asset_id(asset_id: str) -> bytes:
    """UTF-8 asset id, NUL-padded to 16 bytes.  Longer ids are rejected."""
    raw = asset_id.encode("utf-8")
    if not raw:
        raise ValueError("asset_id must not be empty")
    if len(raw) > ASSET_ID_LENGTH:
        raise ValueError(f"asset_id {asset_id!r} exceeds {ASSET_ID_LENGTH} bytes")
    return raw.ljust(ASSET_ID_LENGTH, b"\x00")


def decode_asset_id(raw: bytes) -> str:
    return raw.rstrip(b"\x00").decode("utf-8")


def decision_hash(message: bytes) -> bytes:
    """SHA-512 truncated to 32 bytes."""
    return hashlib.sha512(message).digest()[:HASH_LENGTH]


def generate_nonce() -> bytes:
    return os.urandom(NONCE_LENGTH)


def confidence_bps(price: float, confidence: float) -> int:
    """Confidence as basis points of price, clamped to [0, 10000]."""
    if price <= 0:
        return MAX_CONFIDENCE_BPS
    return max(0, min(MAX_CONFIDENCE_BPS, round(confidence / price * 10_000)))


@dataclass(frozen=True)
class DecisionPayload:
    """The canonical, signed subset of a ``RiskDecision``."""

    asset_id: str
    price: float
    confidence: float
    risk_score: int
    action: RiskAction
    size_multiplier: float
    timestamp_ms: int
    nonce: bytes

    @property
    def is_blocked(self) -> bool:
        return self.action is RiskAction.BLOCK

    @property
    def confidence_bps(self) -> int:
        return confidence_bps(self.price, self.confidence)

    def to_bytes(self) -> bytes:
        if len(self.nonce) != NONCE_LENGTH:
            raise ValueError(f"nonce must be {NONCE_LENGTH} bytes")
        if not 0 <= self.risk_score <= 100:
            raise ValueError(f"risk_score out of range: {self.risk_score}")
        try:
            return _PAYLOAD_STRUCT.pack(
                encode_asset_id(self.asset_id),
                float(self.price),
                float(self.confidence),
                float(self.size_multiplier),
                int(self.timestamp_ms),
                self.confidence_bps,
                int(self.risk_score),
                ACTION_CODES[self.action],
                1 if self.is_blocked else 0,
                self.nonce,
            )
        except struct.error as exc:
            raise ValueError(f"payload field out of range: {exc}") from exc

    @classmethod
    def from_bytes(cls, data: bytes) -> "DecisionPayload":
        if len(data) != PAYLOAD_SIZE:
            raise ValueError(f"payload must be {PAYLOAD_SIZE} bytes, got {len(data)}")
        (
            asset, price, confidence, multiplier, ts_ms,
            _bps, score, action, _blocked, nonce,
        ) = _PAYLOAD_STRUCT.unpack(data)
        return cls(
            asset_id=decode_asset_id(asset),
            price=price,
            confidence=confidence,
            risk_score=score,
            action=ACTIONS_BY_CODE[action],
            size_multiplier=multiplier,
            timestamp_ms=ts_ms,
            nonce=nonce,
        )

    def hash(self) -> bytes:
        return decision_hash(self.to_bytes())


@dataclass(frozen=True)
class SigningRequest:
    """A decision-signing request received at the HTTP boundary."""

    asset_id: str
    price: float
    timestamp: int  # unix seconds
    confidence_ratio: int  # basis points
    risk_score: int
    is_blocked: bool
    publisher_count: int
    nonce: int

    def validate(self, now: float, tolerance_seconds: int = 300) -> list[str]:
        """Return every validation error; an empty list means valid."""
        errors: list[str] = []
        raw = self.asset_id.encode("utf-8") if isinstance(self.asset_id, str) else b""
        if not raw:
            errors.append("assetId must be a non-empty string")
        elif len(raw) > ASSET_ID_LENGTH:
            errors.append(f"assetId must be at most {ASSET_ID_LENGTH} bytes")
        if abs(self.timestamp - now) > tolerance_seconds:
            errors.append(f"timestamp must be within {tolerance_seconds}s of server time")
        if not 0 <= self.confidence_ratio <= MAX_CONFIDENCE_BPS:
            errors.append(f"confidenceRatio must be within [0, {MAX_CONFIDENCE_BPS}]")
        if not 0 <= self.risk_score <= 100:
            errors.append("riskScore must be within [0, 100]")
        if not self.price > 0:
            errors.append("price must be positive")
        if not 0 <= self.publisher_count <= 255:
            errors.append("publisherCount must be within [0, 255]")
        if not 0 <= self.nonce < 2 ** 64:
            errors.append("nonce must be an unsigned 64-bit integer")
        return errors

    def to_bytes(self) -> bytes:
        return _REQUEST_STRUCT.pack(
            encode_asset_id(self.asset_id),
            float(self.price),
            int(self.timestamp),
            int(self.confidence_ratio),
            int(self.risk_score),
            1 if self.is_blocked else 0,
            int(self.publisher_count),
            int(self.nonce),
        )

    def hash(self) -> bytes:
        return decision_hash(self.to_bytes())
