"""Tests for cate.chain.rpc_client — account reads over JSON-RPC."""

import base64

import base58
import httpx
import pytest

from cate.chain.protocol import AssetRiskStatus, TrustConfig, asset_risk_address
from cate.chain.rpc_client import SolanaRpcClient
from cate.errors import NotInitialized


PROGRAM_ID = "77kRa7xJb2SQpPC1fdFGj8edzm5MJxhq2j54BxMWtPe6"
RPC_URL = "https://rpc.example"

STATUS = AssetRiskStatus(
    bump=254,
    asset_id="SOL/USD",
    risk_score=12,
    is_blocked=False,
    last_updated=1_700_000_005,
    timestamp=1_700_000_000,
    confidence_ratio=20,
    publisher_count=5,
    decision_hash=b"\x01" * 32,
    signature=b"\x02" * 64,
    signer_pubkey=b"\x03" * 32,
)


def _account(data: bytes) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {
            "context": {"slot": 1},
            "value": {
                "data": [base64.b64encode(data).decode(), "base64"],
                "executable": False,
                "lamports": 1_000_000,
                "owner": PROGRAM_ID,
            },
        },
    }


def _patch_post(monkeypatch, payload, calls=None):
    async def _mock_post(self, url, *, json=None, timeout=None):
        if calls is not None:
            calls.append(json)
        return httpx.Response(200, json=payload, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)


@pytest.mark.asyncio
async def test_fetch_risk_status_decodes_account(monkeypatch):
    calls: list[dict] = []
    _patch_post(monkeypatch, _account(STATUS.to_bytes()), calls)

    status = await SolanaRpcClient(RPC_URL, PROGRAM_ID).fetch_risk_status("SOL/USD")

    assert status == STATUS
    assert calls[0]["method"] == "getAccountInfo"
    expected, _ = asset_risk_address(PROGRAM_ID, "SOL/USD")
    assert calls[0]["params"][0] == str(expected)
    assert calls[0]["params"][1] == {"encoding": "base64"}


@pytest.mark.asyncio
async def test_missing_account_is_not_initialized(monkeypatch):
    _patch_post(monkeypatch, {"jsonrpc": "2.0", "id": 1, "result": {"context": {"slot": 1}, "value": None}})

    with pytest.raises(NotInitialized):
        await SolanaRpcClient(RPC_URL, PROGRAM_ID).fetch_risk_status("BTC/USD")


@pytest.mark.asyncio
async def test_rpc_error_raised(monkeypatch):
    _patch_post(monkeypatch, {"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad"}})

    with pytest.raises(RuntimeError, match="getAccountInfo"):
        await SolanaRpcClient(RPC_URL, PROGRAM_ID).fetch_risk_status("SOL/USD")


@pytest.mark.asyncio
async def test_fetch_config(monkeypatch):
    config = TrustConfig(bump=255, authority=b"\x07" * 32, is_initialized=True, trusted_signer=b"\x03" * 32)
    _patch_post(monkeypatch, _account(config.to_bytes()))

    assert await SolanaRpcClient(RPC_URL, PROGRAM_ID).fetch_config() == config


@pytest.mark.asyncio
async def test_wrong_account_type_rejected(monkeypatch):
    config = TrustConfig(bump=255, authority=b"\x07" * 32, is_initialized=True, trusted_signer=b"\x03" * 32)
    _patch_post(monkeypatch, _account(config.to_bytes()))

    with pytest.raises(ValueError, match="AssetRiskStatus"):
        await SolanaRpcClient(RPC_URL, PROGRAM_ID).fetch_risk_status("SOL/USD")


@pytest.mark.asyncio
async def test_truncated_account_rejected(monkeypatch):
    _patch_post(monkeypatch, _account(STATUS.to_bytes()[:60]))

    with pytest.raises(ValueError, match="truncated"):
        await SolanaRpcClient(RPC_URL, PROGRAM_ID).fetch_risk_status("SOL/USD")


def test_status_to_dict_uses_base58():
    data = STATUS.to_dict()
    assert data["asset_id"] == "SOL/USD"
    assert data["confidence_ratio"] == 20
    assert base58.b58decode(data["decision_hash"]) == b"\x01" * 32
    assert base58.b58decode(data["signer"]) == b"\x03" * 32
