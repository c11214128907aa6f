"""Internal API routers — /health, /api/v1, /decisions, /circuit, /risk, /chain endpoints.

No business logic, no DB access. Delegates to the pipeline, repos and the
read-only chain client.
"""

import logging
import math
import secrets
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import base58
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from cate.api.rate_limit import SlidingWindowLimiter
from cate.chain.protocol import asset_risk_address, config_address, used_decisions_address
from cate.crypto.attestation import AttestationEngine, SignedDecision
from cate.crypto.codec import SigningRequest
from cate.errors import AssetBlocked, CircuitOpen, NotInitialized, ValidationFailed
from cate.risk.models import RiskAction

logger = logging.getLogger("cate.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_pipeline = None      # Set via configure_routers()
_repo = None          # Set via configure_routers()
_rpc_client = None    # Set via configure_routers()
_program_id: Optional[str] = None
_timestamp_tolerance = 300
_clock: Callable[[], float] = time.time
_sign_limiter = SlidingWindowLimiter()


def configure_routers(
    pipeline,
    repo=None,
    rpc_client=None,
    program_id: Optional[str] = None,
    timestamp_tolerance: int = 300,
    clock: Callable[[], float] = time.time,
    sign_rate_limit: int = 30,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        pipeline: A ``DecisionPipeline`` (owns signer, breaker, evaluator, history).
        repo: Optional ``DecisionRepo`` for decisions evicted from memory.
        rpc_client: Optional ``SolanaRpcClient`` for on-chain reads.
        program_id: Base58 trust-anchor program id for address derivation.
        timestamp_tolerance: Accepted clock skew for signing requests.
        clock: Returns the current unix time; injected for tests.
        sign_rate_limit: Signing requests admitted per client per minute
            (0 disables the limit).
    """
    global _pipeline, _repo, _rpc_client, _program_id, _timestamp_tolerance, _clock, _sign_limiter  # noqa: PLW0603
    _pipeline = pipeline
    _repo = repo
    _rpc_client = rpc_client
    _program_id = program_id
    _timestamp_tolerance = timestamp_tolerance
    _clock = clock
    _sign_limiter = SlidingWindowLimiter(sign_rate_limit, 60.0, clock=clock)


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "code": code, **extra},
    )


def _not_configured() -> JSONResponse:
    return _error(503, "NOT_CONFIGURED", "Engine not configured")


# ── Health ───────────────────────────────────────────────────────────────


@router.get("/health")
async def health():
    """Liveness plus the signer identity for out-of-band trust bootstrapping."""
    return {
        "status": "ok",
        "publicKey": _pipeline.attestation.public_key_base58 if _pipeline else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── Signing ──────────────────────────────────────────────────────────────


def _parse_signing_request(body: dict) -> SigningRequest:
    """Build a ``SigningRequest`` from camelCase JSON.

    Raises ``ValidationFailed`` listing every problem found.
    """
    errors: list[str] = []
    fields = {
        "price": ("price", float),
        "timestamp": ("timestamp", int),
        "confidenceRatio": ("confidence_ratio", int),
        "riskScore": ("risk_score", int),
        "publisherCount": ("publisher_count", int),
    }
    values: dict = {}

    asset_id = body.get("assetId")
    if not isinstance(asset_id, str):
        errors.append("assetId must be a non-empty string")
        asset_id = ""
    values["asset_id"] = asset_id

    for key, (attr, kind) in fields.items():
        raw = body.get(key)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            errors.append(f"{key} must be a number")
            values[attr] = kind(1) if key == "price" else 0
            continue
        if isinstance(raw, float) and not raw.is_integer() and kind is int:
            errors.append(f"{key} must be an integer")
            values[attr] = 0
            continue
        if isinstance(raw, float) and not math.isfinite(raw):
            errors.append(f"{key} must be finite")
            values[attr] = kind(1) if key == "price" else 0
            continue
        values[attr] = kind(raw)

    is_blocked = body.get("isBlocked")
    if not isinstance(is_blocked, bool):
        errors.append("isBlocked must be a boolean")
        is_blocked = True
    values["is_blocked"] = is_blocked

    nonce = body.get("nonce")
    if nonce is None:
        nonce = secrets.randbits(64)
    elif isinstance(nonce, bool) or not isinstance(nonce, int):
        errors.append("nonce must be an unsigned 64-bit integer")
        nonce = 0
    values["nonce"] = nonce

    request = SigningRequest(**values)
    # Type errors above would otherwise be masked by placeholder values.
    if not errors:
        errors = request.validate(_clock(), _timestamp_tolerance)
    if errors:
        raise ValidationFailed(errors)
    return request


@router.post("/api/v1/sign-decision")
async def sign_decision(body: dict, request: Request):
    """Sign an externally computed decision with the engine key."""
    if _pipeline is None:
        return _not_configured()
    client_key = request.client.host if request.client else "unknown"
    retry_after = _sign_limiter.hit(client_key)
    if retry_after is not None:
        logger.warning("Signing rate limit exceeded for %s", client_key)
        response = _error(429, "RATE_LIMITED", "Too many signing requests")
        response.headers["Retry-After"] = str(math.ceil(retry_after))
        return response
    try:
        signing_request = _parse_signing_request(body)
    except ValidationFailed as exc:
        logger.warning("Rejected signing request: %s", exc.message)
        return _error(400, exc.code, "Invalid decision parameters", errors=exc.errors)

    attestation: AttestationEngine = _pipeline.attestation
    digest, signature = attestation.sign_request(signing_request)
    logger.info(
        "Signed request for %s (risk %d, blocked %s)",
        signing_request.asset_id, signing_request.risk_score, signing_request.is_blocked,
    )
    return {
        "success": True,
        "data": {
            "assetId": signing_request.asset_id,
            "price": signing_request.price,
            "riskScore": signing_request.risk_score,
            "isBlocked": signing_request.is_blocked,
            "confidenceRatio": signing_request.confidence_ratio,
            "publisherCount": signing_request.publisher_count,
            "timestamp": signing_request.timestamp,
            "nonce": signing_request.nonce,
            "decisionHash": list(digest),
            "signature": list(signature),
            "signerPublicKey": list(attestation.public_key),
            "signerBase58": attestation.public_key_base58,
        },
        "meta": {
            "signedAt": datetime.now(timezone.utc).isoformat(),
            "algorithm": "Ed25519",
            "hashAlgorithm": "SHA-512/256",
        },
    }


@router.post("/api/v1/verify")
async def verify_decision(body: dict):
    """Verify a serialized ``SignedDecision``; optionally pin the signer."""
    try:
        signed = SignedDecision.from_dict(body.get("decision", body))
    except (ValueError, TypeError) as exc:
        return _error(400, ValidationFailed.code, f"Malformed signed decision: {exc}")

    expected = None
    if body.get("expectedSigner"):
        try:
            expected = base58.b58decode(str(body["expectedSigner"]))
        except ValueError as exc:
            return _error(400, ValidationFailed.code, f"Malformed expectedSigner: {exc}")
    return AttestationEngine.verify(signed, expected_signer=expected).to_dict()


def _byte_array(value, length: int) -> bytes:
    if not isinstance(value, list) or len(value) != length:
        raise ValueError(f"expected an array of {length} bytes")
    return bytes(value)


@router.post("/api/v1/verify-local")
async def verify_local(body: dict):
    """Check a raw ``(messageHash, signature, publicKey)`` triple."""
    try:
        message_hash = _byte_array(body.get("messageHash"), 32)
        signature = _byte_array(body.get("signature"), 64)
        public_key = _byte_array(body.get("publicKey"), 32)
    except (ValueError, TypeError) as exc:
        return _error(400, ValidationFailed.code, str(exc))
    return {"valid": AttestationEngine.verify_raw(message_hash, signature, public_key)}


# ── Decisions ────────────────────────────────────────────────────────────


@router.get("/decisions/recent")
async def get_recent_decisions(
    limit: int = Query(50, ge=1, le=1000),
    asset: Optional[str] = Query(None),
    blocked: bool = Query(False),
):
    """Recent decisions from the in-memory log, newest first."""
    if _pipeline is None:
        return {"decisions": [], "count": 0}
    history = _pipeline.history
    entries = history.blocked(limit) if blocked else history.recent(limit, asset_id=asset)
    if blocked and asset:
        entries = [e for e in entries if e.decision.asset_id == asset]
    return {"decisions": [e.to_dict() for e in entries], "count": len(entries)}


@router.get("/decisions/summary")
async def get_decision_summary():
    if _pipeline is None:
        return {"total_decisions": 0}
    return {**_pipeline.history.summary(), **_pipeline.stats}


@router.get("/decisions/export")
async def export_decisions(
    limit: int = Query(1000, ge=1, le=100_000),
    asset: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
):
    """Audit export of decision history as a JSON attachment.

    Reads the SQLite audit trail when configured, otherwise the in-memory log.
    """
    try:
        action_filter = RiskAction(action.upper()) if action else None
    except ValueError:
        return _error(400, ValidationFailed.code, f"Unknown action {action!r}")

    if _repo is not None:
        result = _repo.get_decisions(
            limit=limit,
            asset_id=asset,
            action=action_filter.value if action_filter else None,
        )
        source, decisions, total = "sqlite", result["decisions"], result["total"]
    elif _pipeline is not None:
        entries = _pipeline.history.export(asset_id=asset, action=action_filter)
        source, decisions, total = "memory", entries[-limit:][::-1], len(entries)
    else:
        return _not_configured()

    exported_at = datetime.fromtimestamp(_clock(), timezone.utc)
    content = {
        "exported_at": exported_at.isoformat(),
        "source": source,
        "total": total,
        "count": len(decisions),
        "summary": _pipeline.history.summary() if _pipeline is not None else None,
        "decisions": decisions,
    }
    filename = f"cate-decisions-{exported_at.strftime('%Y%m%dT%H%M%SZ')}.json"
    return JSONResponse(
        content=content,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/decisions/{decision_hash}")
async def get_decision(decision_hash: str):
    """Look a decision up by its base58 hash (memory first, then SQLite)."""
    if _pipeline is not None:
        entry = _pipeline.history.find_by_hash(decision_hash)
        if entry is not None:
            return entry.to_dict()
    if _repo is not None:
        row = _repo.get_by_hash(decision_hash)
        if row is not None:
            return row
    return _error(404, "NOT_FOUND", f"Unknown decision {decision_hash}")


# ── Assets ───────────────────────────────────────────────────────────────


@router.get("/assets/{asset_id:path}/decision")
async def get_asset_decision(asset_id: str):
    """Latest signed decision for one asset."""
    if _pipeline is None:
        return _not_configured()
    entry = _pipeline.latest(asset_id)
    if entry is None:
        return _error(404, "NOT_FOUND", f"No decision yet for {asset_id}")
    return entry.to_dict()


@router.get("/assets/{asset_id:path}/gate")
async def get_asset_gate(asset_id: str):
    """Whether the circuit breaker currently admits *asset_id*."""
    if _pipeline is None:
        return _not_configured()
    gate = _pipeline.breaker.is_allowed(asset_id, probe=False)
    try:
        gate.raise_if_denied()
    except (CircuitOpen, AssetBlocked) as exc:
        return _error(423, exc.code, exc.message, allowed=False)
    return {"allowed": True, "reason": gate.reason}


# ── Circuit breaker ──────────────────────────────────────────────────────


@router.get("/circuit/status")
async def get_circuit_status():
    if _pipeline is None:
        return _not_configured()
    return _pipeline.breaker.status().to_dict()


@router.get("/circuit/failures")
async def get_circuit_failures(limit: int = Query(50, ge=1, le=1000)):
    if _pipeline is None:
        return _not_configured()
    failures = _pipeline.breaker.recent_failures(limit)
    return {"failures": [f.to_dict() for f in reversed(failures)], "count": len(failures)}


@router.post("/circuit/emergency-stop")
async def emergency_stop(body: Optional[dict] = None):
    """Force every asset to BLOCK until a manual reset."""
    if _pipeline is None:
        return _not_configured()
    reason = (body or {}).get("reason") or "manual emergency stop"
    _pipeline.breaker.emergency_stop(str(reason))
    return {"status": "stopped", "reason": reason}


@router.post("/circuit/reset")
async def reset_circuit():
    if _pipeline is None:
        return _not_configured()
    if not _pipeline.breaker.manual_reset():
        return _error(409, "DEBOUNCED", "Circuit transition debounced or already closed")
    logger.info("Circuit reset via API.")
    return {"status": "reset", "state": _pipeline.breaker.state.value}


# ── Risk parameters ──────────────────────────────────────────────────────


@router.get("/risk/parameters")
async def get_risk_parameters():
    if _pipeline is None:
        return _not_configured()
    return _pipeline.evaluator.parameters.to_dict()


@router.post("/risk/parameters")
async def post_risk_parameters(body: dict):
    """Update thresholds; the whole update is rejected if any value is invalid."""
    if _pipeline is None:
        return _not_configured()
    try:
        params = _pipeline.evaluator.update_parameters(**body)
    except (ValueError, TypeError) as exc:
        return _error(400, ValidationFailed.code, str(exc))
    return {"success": True, "parameters": params.to_dict()}


# ── Chain (read-only) ────────────────────────────────────────────────────


@router.get("/chain/risk-status/{asset_id:path}")
async def get_chain_risk_status(asset_id: str):
    """Last risk status published on chain for *asset_id*."""
    if _rpc_client is None:
        return _error(503, "NOT_CONFIGURED", "No RPC client configured")
    try:
        status = await _rpc_client.fetch_risk_status(asset_id)
    except NotInitialized as exc:
        return _error(404, exc.code, exc.message)
    except ValueError as exc:
        return _error(400, ValidationFailed.code, str(exc))
    return status.to_dict()


@router.get("/chain/addresses/{asset_id:path}")
async def get_chain_addresses(asset_id: str):
    """Derived program addresses for *asset_id*."""
    if _program_id is None:
        return _error(503, "NOT_CONFIGURED", "No program id configured")
    try:
        asset_address, asset_bump = asset_risk_address(_program_id, asset_id)
    except ValueError as exc:
        return _error(400, ValidationFailed.code, str(exc))
    cfg_address, cfg_bump = config_address(_program_id)
    used_address, used_bump = used_decisions_address(_program_id)
    return {
        "programId": _program_id,
        "config": {"address": str(cfg_address), "bump": cfg_bump},
        "usedDecisions": {"address": str(used_address), "bump": used_bump},
        "assetRisk": {"address": str(asset_address), "bump": asset_bump},
    }
