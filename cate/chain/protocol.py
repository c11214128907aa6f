"""Trust-anchor wire contract — addresses, instruction and account layouts.

A publish transaction must carry, in order:

1. a native Ed25519 signature-verification instruction over
   ``{public_key, message=decision_hash, signature}``;
2. the ``update_risk_status`` instruction with the same hash, signature and
   signer.

Everything here is byte-exact and free of I/O.  Instruction data uses the
8-byte ``sha256("global:<name>")`` discriminator followed by borsh-encoded
arguments; accounts start with ``sha256("account:<Name>")[:8]``.
"""

import hashlib
import struct
from dataclasses import dataclass

import base58
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from cate.crypto.codec import ASSET_ID_LENGTH, HASH_LENGTH, decode_asset_id, encode_asset_id
from cate.crypto.keys import PUBLIC_KEY_LENGTH, SIGNATURE_LENGTH
from cate.errors import InvalidEd25519Data, InvalidInstructionData

ED25519_PROGRAM_ID = Pubkey.from_string("Ed25519SigVerify111111111111111111111111111")
SYSVAR_INSTRUCTIONS_ID = Pubkey.from_string("Sysvar1nstructions1111111111111111111111111")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

CONFIG_SEED = b"config"
ASSET_RISK_SEED = b"asset_risk"
USED_DECISIONS_SEED = b"used_decisions"

# Ed25519 instruction layout
_ED25519_HEADER_LEN = 2
_ED25519_OFFSETS_LEN = 14
_ED25519_DATA_START = _ED25519_HEADER_LEN + _ED25519_OFFSETS_LEN
_PUBKEY_OFFSET = _ED25519_DATA_START
_SIGNATURE_OFFSET = _PUBKEY_OFFSET + PUBLIC_KEY_LENGTH
_MESSAGE_OFFSET = _SIGNATURE_OFFSET + SIGNATURE_LENGTH
CURRENT_INSTRUCTION = 0xFFFF

_OFFSETS_STRUCT = struct.Struct("<7H")


def _discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


UPDATE_RISK_STATUS_DISCRIMINATOR = _discriminator("global", "update_risk_status")
INITIALIZE_CONFIG_DISCRIMINATOR = _discriminator("global", "initialize_config")
UPDATE_TRUSTED_SIGNER_DISCRIMINATOR = _discriminator("global", "update_trusted_signer")
CONFIG_ACCOUNT_DISCRIMINATOR = _discriminator("account", "Config")
ASSET_RISK_ACCOUNT_DISCRIMINATOR = _discriminator("account", "AssetRiskStatus")


# ── Addresses ────────────────────────────────────────────────────────────


def _program(program_id: Pubkey | str) -> Pubkey:
    return program_id if isinstance(program_id, Pubkey) else Pubkey.from_string(program_id)


def config_address(program_id: Pubkey | str) -> tuple[Pubkey, int]:
    return Pubkey.find_program_address([CONFIG_SEED], _program(program_id))


def used_decisions_address(program_id: Pubkey | str) -> tuple[Pubkey, int]:
    return Pubkey.find_program_address([USED_DECISIONS_SEED], _program(program_id))


def asset_risk_address(program_id: Pubkey | str, asset_id: str) -> tuple[Pubkey, int]:
    """Per-asset status address: seeds ``[b"asset_risk", asset_id_utf8]``."""
    raw = asset_id.encode("utf-8")
    if not raw or len(raw) > ASSET_ID_LENGTH:
        raise ValueError(f"asset_id must be 1..{ASSET_ID_LENGTH} bytes")
    return Pubkey.find_program_address([ASSET_RISK_SEED, raw], _program(program_id))


# ── Ed25519 verification instruction ─────────────────────────────────────


@dataclass(frozen=True)
class Ed25519Entry:
    public_key: bytes
    signature: bytes
    message: bytes


def ed25519_instruction_data(public_key: bytes, message: bytes, signature: bytes) -> bytes:
    """Single-signature data with every offset pointing into this instruction."""
    if len(public_key) != PUBLIC_KEY_LENGTH:
        raise ValueError("public key must be 32 bytes")
    if len(signature) != SIGNATURE_LENGTH:
        raise ValueError("signature must be 64 bytes")
    if len(message) != HASH_LENGTH:
        raise ValueError("message must be the 32-byte decision hash")
    header = bytes([1, 0])
    offsets = _OFFSETS_STRUCT.pack(
        _SIGNATURE_OFFSET, CURRENT_INSTRUCTION,
        _PUBKEY_OFFSET, CURRENT_INSTRUCTION,
        _MESSAGE_OFFSET, len(message), CURRENT_INSTRUCTION,
    )
    return header + offsets + public_key + signature + message


def build_ed25519_instruction(public_key: bytes, message: bytes, signature: bytes) -> Instruction:
    return Instruction(
        ED25519_PROGRAM_ID,
        ed25519_instruction_data(public_key, message, signature),
        [],
    )


def parse_ed25519_instruction(data: bytes) -> list[Ed25519Entry]:
    """Decode and bounds-check every signature entry.

    Raises ``InvalidEd25519Data`` for malformed headers, offsets that run
    past the data, message sizes other than 32, or entries referencing
    another instruction.
    """
    if len(data) < _ED25519_HEADER_LEN:
        raise InvalidEd25519Data("instruction data too short")
    count, padding = data[0], data[1]
    if count < 1 or padding != 0:
        raise InvalidEd25519Data("bad signature count or padding")
    if len(data) < _ED25519_HEADER_LEN + _ED25519_OFFSETS_LEN * count:
        raise InvalidEd25519Data("offsets table truncated")

    entries: list[Ed25519Entry] = []
    for i in range(count):
        start = _ED25519_HEADER_LEN + _ED25519_OFFSETS_LEN * i
        (
            sig_off, sig_ix, key_off, key_ix, msg_off, msg_size, msg_ix,
        ) = _OFFSETS_STRUCT.unpack_from(data, start)
        if {sig_ix, key_ix, msg_ix} != {CURRENT_INSTRUCTION}:
            raise InvalidEd25519Data("offsets must reference the verification instruction")
        if sig_off + SIGNATURE_LENGTH > len(data):
            raise InvalidEd25519Data("signature offset overflow")
        if key_off + PUBLIC_KEY_LENGTH > len(data):
            raise InvalidEd25519Data("public key offset overflow")
        if msg_size != HASH_LENGTH:
            raise InvalidEd25519Data(f"message size must be {HASH_LENGTH}, got {msg_size}")
        if msg_off + msg_size > len(data):
            raise InvalidEd25519Data("message offset overflow")
        entries.append(Ed25519Entry(
            public_key=bytes(data[key_off:key_off + PUBLIC_KEY_LENGTH]),
            signature=bytes(data[sig_off:sig_off + SIGNATURE_LENGTH]),
            message=bytes(data[msg_off:msg_off + msg_size]),
        ))
    return entries


# ── Publish instruction ──────────────────────────────────────────────────


@dataclass(frozen=True)
class PublishArgs:
    asset_id: str
    risk_score: int
    is_blocked: bool
    confidence_ratio_bps: int
    publisher_count: int
    timestamp: int  # unix seconds
    decision_hash: bytes
    signature: bytes
    signer_pubkey: bytes


def _borsh_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def encode_publish_args(args: PublishArgs) -> bytes:
    """Discriminator plus borsh arguments, in declaration order.

    Range checks are left to the verifier; only encodability is enforced.
    """
    if len(args.decision_hash) != HASH_LENGTH:
        raise ValueError("decision_hash must be 32 bytes")
    if len(args.signature) != SIGNATURE_LENGTH:
        raise ValueError("signature must be 64 bytes")
    if len(args.signer_pubkey) != PUBLIC_KEY_LENGTH:
        raise ValueError("signer_pubkey must be 32 bytes")
    return (
        UPDATE_RISK_STATUS_DISCRIMINATOR
        + _borsh_string(args.asset_id)
        + struct.pack(
            "<B?QBq",
            args.risk_score,
            bool(args.is_blocked),
            args.confidence_ratio_bps,
            args.publisher_count,
            args.timestamp,
        )
        + args.decision_hash
        + args.signature
        + args.signer_pubkey
    )


_PUBLISH_FIELDS = struct.Struct("<B?QBq")
_PUBLISH_TAIL_LEN = HASH_LENGTH + SIGNATURE_LENGTH + PUBLIC_KEY_LENGTH


def decode_publish_args(data: bytes) -> PublishArgs:
    if data[:8] != UPDATE_RISK_STATUS_DISCRIMINATOR:
        raise InvalidInstructionData("not an update_risk_status instruction")
    offset = 8
    if len(data) < offset + 4:
        raise InvalidInstructionData("publish instruction truncated before asset_id")
    (length,) = struct.unpack_from("<I", data, offset)
    offset += 4
    if len(data) < offset + length:
        raise InvalidInstructionData("publish instruction truncated inside asset_id")
    try:
        asset_id = data[offset:offset + length].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidInstructionData("asset_id is not valid UTF-8") from exc
    offset += length
    if len(data) < offset + _PUBLISH_FIELDS.size:
        raise InvalidInstructionData("publish instruction truncated before risk fields")
    score, blocked, bps, publishers, ts = _PUBLISH_FIELDS.unpack_from(data, offset)
    offset += _PUBLISH_FIELDS.size
    tail = data[offset:]
    if len(tail) != _PUBLISH_TAIL_LEN:
        raise InvalidInstructionData("publish instruction has wrong trailing length")
    return PublishArgs(
        asset_id=asset_id,
        risk_score=score,
        is_blocked=blocked,
        confidence_ratio_bps=bps,
        publisher_count=publishers,
        timestamp=ts,
        decision_hash=tail[:HASH_LENGTH],
        signature=tail[HASH_LENGTH:HASH_LENGTH + SIGNATURE_LENGTH],
        signer_pubkey=tail[HASH_LENGTH + SIGNATURE_LENGTH:],
    )


def build_publish_instruction(
    program_id: Pubkey | str,
    authority: Pubkey,
    args: PublishArgs,
) -> Instruction:
    program = _program(program_id)
    accounts = [
        AccountMeta(config_address(program)[0], is_signer=False, is_writable=False),
        AccountMeta(used_decisions_address(program)[0], is_signer=False, is_writable=True),
        AccountMeta(asset_risk_address(program, args.asset_id)[0], is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=True),
        AccountMeta(SYSVAR_INSTRUCTIONS_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program, encode_publish_args(args), accounts)


def build_publish_transaction(
    program_id: Pubkey | str,
    authority: Pubkey,
    args: PublishArgs,
) -> list[Instruction]:
    """The mandatory ``[verify, publish]`` instruction pair."""
    return [
        build_ed25519_instruction(args.signer_pubkey, args.decision_hash, args.signature),
        build_publish_instruction(program_id, authority, args),
    ]


def build_initialize_config_instruction(
    program_id: Pubkey | str,
    authority: Pubkey,
    trusted_signer: Pubkey,
) -> Instruction:
    program = _program(program_id)
    accounts = [
        AccountMeta(config_address(program)[0], is_signer=False, is_writable=True),
        AccountMeta(used_decisions_address(program)[0], is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(
        program, INITIALIZE_CONFIG_DISCRIMINATOR + bytes(trusted_signer), accounts,
    )


def build_update_signer_instruction(
    program_id: Pubkey | str,
    authority: Pubkey,
    new_signer: Pubkey,
) -> Instruction:
    program = _program(program_id)
    accounts = [
        AccountMeta(config_address(program)[0], is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=True),
    ]
    return Instruction(
        program, UPDATE_TRUSTED_SIGNER_DISCRIMINATOR + bytes(new_signer), accounts,
    )


# ── Accounts ─────────────────────────────────────────────────────────────

_CONFIG_STRUCT = struct.Struct("<B32s?32sQ")
_ASSET_RISK_STRUCT = struct.Struct("<B16sB?qqQB32s64s32s")


@dataclass(frozen=True)
class TrustConfig:
    bump: int
    authority: bytes
    is_initialized: bool
    trusted_signer: bytes
    nonce: int = 0

    def to_bytes(self) -> bytes:
        return CONFIG_ACCOUNT_DISCRIMINATOR + _CONFIG_STRUCT.pack(
            self.bump, self.authority, self.is_initialized, self.trusted_signer, self.nonce,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "TrustConfig":
        if data[:8] != CONFIG_ACCOUNT_DISCRIMINATOR:
            raise ValueError("account is not a Config")
        if len(data) < 8 + _CONFIG_STRUCT.size:
            raise ValueError("Config account data truncated")
        return cls(*_CONFIG_STRUCT.unpack_from(data, 8))


@dataclass(frozen=True)
class AssetRiskStatus:
    """On-chain record of the last accepted decision for one asset."""

    bump: int
    asset_id: str
    risk_score: int
    is_blocked: bool
    last_updated: int
    timestamp: int
    confidence_ratio: int  # basis points
    publisher_count: int
    decision_hash: bytes
    signature: bytes
    signer_pubkey: bytes

    def to_bytes(self) -> bytes:
        return ASSET_RISK_ACCOUNT_DISCRIMINATOR + _ASSET_RISK_STRUCT.pack(
            self.bump,
            encode_asset_id(self.asset_id),
            self.risk_score,
            self.is_blocked,
            self.last_updated,
            self.timestamp,
            self.confidence_ratio,
            self.publisher_count,
            self.decision_hash,
            self.signature,
            self.signer_pubkey,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "AssetRiskStatus":
        if data[:8] != ASSET_RISK_ACCOUNT_DISCRIMINATOR:
            raise ValueError("account is not an AssetRiskStatus")
        if len(data) < 8 + _ASSET_RISK_STRUCT.size:
            raise ValueError("AssetRiskStatus account data truncated")
        (
            bump, asset, score, blocked, updated, ts, bps,
            publishers, digest, signature, signer,
        ) = _ASSET_RISK_STRUCT.unpack_from(data, 8)
        return cls(
            bump=bump,
            asset_id=decode_asset_id(asset),
            risk_score=score,
            is_blocked=blocked,
            last_updated=updated,
            timestamp=ts,
            confidence_ratio=bps,
            publisher_count=publishers,
            decision_hash=digest,
            signature=signature,
            signer_pubkey=signer,
        )

    def to_dict(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "risk_score": self.risk_score,
            "is_blocked": self.is_blocked,
            "last_updated": self.last_updated,
            "timestamp": self.timestamp,
            "confidence_ratio": self.confidence_ratio,
            "publisher_count": self.publisher_count,
            "decision_hash": base58.b58encode(self.decision_hash).decode(),
            "signature": base58.b58encode(self.signature).decode(),
            "signer": base58.b58encode(self.signer_pubkey).decode(),
        }
