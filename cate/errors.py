"""CATE — error taxonomy.

Every failure the engine can surface carries a stable ``code`` so the HTTP
layer and external verifiers can match on it without parsing messages.
Data-quality errors are recovered locally by downgrading to BLOCK;
cryptographic and protocol errors always propagate.
"""


class CateError(Exception):
    """Base class for all engine errors."""

    code = "CATE_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


# ── Oracle input ─────────────────────────────────────────────────────────


class InvalidSample(CateError, ValueError):
    """Malformed oracle sample (non-positive price, negative confidence, …)."""

    code = "INVALID_SAMPLE"


class OracleUnavailable(CateError):
    """The oracle feed exhausted its reconnect budget."""

    code = "ORACLE_UNAVAILABLE"


# ── Request boundary ─────────────────────────────────────────────────────


class ValidationFailed(CateError, ValueError):
    """A decision-signing request failed field validation."""

    code = "VALIDATION_FAILED"

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid decision parameters: " + "; ".join(errors))
        self.errors = list(errors)


# ── Attestation ──────────────────────────────────────────────────────────


class AttestationError(CateError):
    code = "ATTESTATION_ERROR"


class HashMismatch(AttestationError):
    """Recomputed payload hash differs from the carried decision hash."""

    code = "HASH_MISMATCH"


class InvalidSignature(AttestationError):
    """Ed25519 verification of the decision hash failed."""

    code = "INVALID_SIGNATURE"


# ── Trust anchor (on-chain contract violations) ──────────────────────────


class TrustViolation(CateError):
    """A publish transaction was rejected; asset state is unchanged."""

    code = "TRUST_VIOLATION"


class MissingVerificationInstruction(TrustViolation):
    code = "MISSING_ED25519_INSTRUCTION"


class InvalidEd25519Program(MissingVerificationInstruction):
    """The instruction preceding the publish is not a native Ed25519 verify."""

    code = "INVALID_ED25519_PROGRAM"


class InvalidEd25519Data(TrustViolation):
    code = "INVALID_ED25519_DATA"


class InvalidInstructionData(TrustViolation, ValueError):
    """The publish instruction is missing or its arguments are truncated."""

    code = "INVALID_INSTRUCTION_DATA"


class MessageMismatch(TrustViolation):
    code = "MESSAGE_MISMATCH"


class SignatureMismatch(TrustViolation):
    code = "SIGNATURE_MISMATCH"


class InvalidSigner(TrustViolation):
    code = "INVALID_SIGNER"


class InvalidRiskScore(TrustViolation):
    code = "INVALID_RISK_SCORE"


class InvalidConfidenceRatio(TrustViolation):
    code = "INVALID_CONFIDENCE_RATIO"


class AssetIdEmpty(TrustViolation):
    code = "ASSET_ID_EMPTY"


class AssetIdTooLong(TrustViolation):
    code = "ASSET_ID_TOO_LONG"


class InvalidTimestamp(TrustViolation):
    code = "INVALID_TIMESTAMP"


class DecisionAlreadyUsed(TrustViolation):
    code = "DECISION_ALREADY_USED"


class Unauthorized(TrustViolation):
    code = "UNAUTHORIZED"


class AlreadyInitialized(TrustViolation):
    code = "ALREADY_INITIALIZED"


class NotInitialized(TrustViolation):
    """The requested account has never been written."""

    code = "NOT_INITIALIZED"


# ── Circuit breaker ──────────────────────────────────────────────────────


class CircuitOpen(CateError):
    """Systemic failure: every asset is forced to BLOCK."""

    code = "CIRCUIT_OPEN"


class AssetBlocked(CateError):
    """Local failure: only the named asset is forced to BLOCK."""

    code = "ASSET_BLOCKED"
