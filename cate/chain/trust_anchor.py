"""Reference trust anchor — an in-process model of the on-chain verifier.

Enforces every rule of the publish contract against a list of
``solders`` instructions, so clients can be checked without a validator.
Every check runs before any state is written: a rejected transaction
leaves the asset record and the replay set untouched.
"""

import hmac
import logging
import time
from typing import Callable, Optional, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from cate.chain.protocol import (
    ED25519_PROGRAM_ID,
    INITIALIZE_CONFIG_DISCRIMINATOR,
    UPDATE_RISK_STATUS_DISCRIMINATOR,
    UPDATE_TRUSTED_SIGNER_DISCRIMINATOR,
    AssetRiskStatus,
    PublishArgs,
    TrustConfig,
    asset_risk_address,
    config_address,
    decode_publish_args,
    parse_ed25519_instruction,
)
from cate.crypto.attestation import ReplayGuard
from cate.crypto.codec import ASSET_ID_LENGTH, MAX_CONFIDENCE_BPS
from cate.crypto.keys import PUBLIC_KEY_LENGTH, verify_signature
from cate.errors import (
    AlreadyInitialized,
    AssetIdEmpty,
    AssetIdTooLong,
    DecisionAlreadyUsed,
    InvalidConfidenceRatio,
    InvalidEd25519Program,
    InvalidInstructionData,
    InvalidRiskScore,
    InvalidSigner,
    InvalidTimestamp,
    MessageMismatch,
    MissingVerificationInstruction,
    NotInitialized,
    SignatureMismatch,
    Unauthorized,
)

logger = logging.getLogger("cate.chain")

MAX_PAST_SKEW_SECONDS = 300
MAX_FUTURE_SKEW_SECONDS = 60
USED_DECISION_TTL_SECONDS = 3600
MAX_USED_DECISIONS = 1000


def _key_bytes(key: Pubkey | bytes) -> bytes:
    return bytes(key)


class TrustAnchor:
    """Verifier and registry for published risk decisions.

    Args:
        program_id: Program that owns the config and asset accounts.
        clock: Chain clock in unix seconds; injected for tests.
    """

    def __init__(
        self,
        program_id: Pubkey | str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._program_id = (
            program_id if isinstance(program_id, Pubkey) else Pubkey.from_string(program_id)
        )
        self._clock = clock
        self._config: Optional[TrustConfig] = None
        self._assets: dict[str, AssetRiskStatus] = {}
        self._used = ReplayGuard(
            max_size=MAX_USED_DECISIONS, max_age_seconds=USED_DECISION_TTL_SECONDS,
        )

    @property
    def program_id(self) -> Pubkey:
        return self._program_id

    # ── Configuration ────────────────────────────────────────────────────

    def initialize_config(self, authority: Pubkey | bytes, trusted_signer: Pubkey | bytes) -> TrustConfig:
        if self._config is not None:
            raise AlreadyInitialized("config already initialized")
        _, bump = config_address(self._program_id)
        self._config = TrustConfig(
            bump=bump,
            authority=_key_bytes(authority),
            is_initialized=True,
            trusted_signer=_key_bytes(trusted_signer),
        )
        logger.info("Trust anchor initialized with signer %s", Pubkey.from_bytes(self._config.trusted_signer))
        return self._config

    def update_trusted_signer(self, authority: Pubkey | bytes, new_signer: Pubkey | bytes) -> TrustConfig:
        config = self._require_config()
        if not hmac.compare_digest(config.authority, _key_bytes(authority)):
            raise Unauthorized("only the config authority may change the trusted signer")
        self._config = TrustConfig(
            bump=config.bump,
            authority=config.authority,
            is_initialized=True,
            trusted_signer=_key_bytes(new_signer),
            nonce=config.nonce + 1,
        )
        logger.warning("Trusted signer rotated to %s", Pubkey.from_bytes(self._config.trusted_signer))
        return self._config

    def process_config_instruction(self, instruction: Instruction) -> TrustConfig:
        """Apply an ``initialize_config`` or ``update_trusted_signer`` instruction.

        The authority is the instruction's single signing account.
        """
        if instruction.program_id != self._program_id:
            raise InvalidInstructionData("instruction targets another program")
        data = bytes(instruction.data)
        signers = [meta.pubkey for meta in instruction.accounts if meta.is_signer]
        if len(data) != 8 + PUBLIC_KEY_LENGTH or len(signers) != 1:
            raise InvalidInstructionData("malformed config instruction")
        key = data[8:]
        if data[:8] == INITIALIZE_CONFIG_DISCRIMINATOR:
            return self.initialize_config(signers[0], key)
        if data[:8] == UPDATE_TRUSTED_SIGNER_DISCRIMINATOR:
            return self.update_trusted_signer(signers[0], key)
        raise InvalidInstructionData("not a config instruction")

    def _require_config(self) -> TrustConfig:
        if self._config is None or not self._config.is_initialized:
            raise NotInitialized("trust anchor config not initialized")
        return self._config

    # ── Publish ──────────────────────────────────────────────────────────

    def _publish_index(self, instructions: Sequence[Instruction]) -> int:
        for index, ix in enumerate(instructions):
            if ix.program_id == self._program_id and bytes(ix.data[:8]) == UPDATE_RISK_STATUS_DISCRIMINATOR:
                return index
        raise InvalidInstructionData("transaction carries no update_risk_status instruction")

    @staticmethod
    def _check_bounds(args: PublishArgs, now: float) -> None:
        raw = args.asset_id.encode("utf-8")
        if len(raw) > ASSET_ID_LENGTH:
            raise AssetIdTooLong(f"asset id exceeds {ASSET_ID_LENGTH} bytes")
        if not raw:
            raise AssetIdEmpty("asset id is empty")
        if args.risk_score > 100:
            raise InvalidRiskScore(f"risk score {args.risk_score} exceeds 100")
        if args.confidence_ratio_bps > MAX_CONFIDENCE_BPS:
            raise InvalidConfidenceRatio(
                f"confidence ratio {args.confidence_ratio_bps} exceeds {MAX_CONFIDENCE_BPS} bps"
            )
        if not now - MAX_PAST_SKEW_SECONDS <= args.timestamp <= now + MAX_FUTURE_SKEW_SECONDS:
            raise InvalidTimestamp(f"timestamp {args.timestamp} outside accepted window")

    @staticmethod
    def _check_verification(
        instructions: Sequence[Instruction],
        publish_index: int,
        args: PublishArgs,
    ) -> None:
        """The instruction immediately before the publish must verify its hash."""
        if publish_index == 0:
            raise MissingVerificationInstruction("no Ed25519 instruction precedes the publish")
        verify_ix = instructions[publish_index - 1]
        if verify_ix.program_id != ED25519_PROGRAM_ID:
            raise InvalidEd25519Program("preceding instruction is not an Ed25519 verification")

        first_error: Optional[Exception] = None
        for entry in parse_ed25519_instruction(bytes(verify_ix.data)):
            if not hmac.compare_digest(entry.public_key, args.signer_pubkey):
                error: Exception = InvalidSigner("verification key is not the trusted signer")
            elif not hmac.compare_digest(entry.message, args.decision_hash):
                error = MessageMismatch("verified message differs from the decision hash")
            elif not hmac.compare_digest(entry.signature, args.signature):
                error = SignatureMismatch("verified signature differs from the published one")
            elif not verify_signature(entry.public_key, entry.message, entry.signature):
                error = SignatureMismatch("Ed25519 verification failed")
            else:
                return
            first_error = first_error or error
        raise first_error  # type: ignore[misc]

    def process_transaction(
        self,
        instructions: Sequence[Instruction],
        authority: Pubkey | bytes,
    ) -> AssetRiskStatus:
        """Apply a ``[verify, publish]`` transaction or raise a ``TrustViolation``."""
        now = self._clock()
        config = self._require_config()
        if not hmac.compare_digest(config.authority, _key_bytes(authority)):
            raise Unauthorized("transaction authority does not match config")

        index = self._publish_index(instructions)
        args = decode_publish_args(bytes(instructions[index].data))

        self._check_bounds(args, now)
        if not hmac.compare_digest(args.signer_pubkey, config.trusted_signer):
            raise InvalidSigner("decision signer is not the trusted signer")
        if self._used.seen(args.decision_hash):
            raise DecisionAlreadyUsed("decision hash already published")
        self._check_verification(instructions, index, args)

        self._used.check_and_record(args.decision_hash, now=now)
        _, bump = asset_risk_address(self._program_id, args.asset_id)
        status = AssetRiskStatus(
            bump=bump,
            asset_id=args.asset_id,
            risk_score=args.risk_score,
            is_blocked=args.is_blocked,
            last_updated=int(now),
            timestamp=args.timestamp,
            confidence_ratio=args.confidence_ratio_bps,
            publisher_count=args.publisher_count,
            decision_hash=args.decision_hash,
            signature=args.signature,
            signer_pubkey=args.signer_pubkey,
        )
        self._assets[args.asset_id] = status
        logger.info(
            "Risk updated: %s | Score: %d | Blocked: %s",
            args.asset_id, args.risk_score, args.is_blocked,
        )
        return status

    # ── Queries ──────────────────────────────────────────────────────────

    def get_risk_status(self, asset_id: str) -> AssetRiskStatus:
        status = self._assets.get(asset_id)
        if status is None:
            raise NotInitialized(f"no risk status published for {asset_id}")
        return status

    def account_data(self, address: Pubkey) -> Optional[bytes]:
        """Raw account bytes at *address*, as an RPC node would return them."""
        if self._config is not None and address == config_address(self._program_id)[0]:
            return self._config.to_bytes()
        for asset_id, status in self._assets.items():
            if address == asset_risk_address(self._program_id, asset_id)[0]:
                return status.to_bytes()
        return None
