"""Solana JSON-RPC async client — read-only account queries.

Fetches the last published ``AssetRiskStatus`` for an asset from its
deterministic address.  Submitting transactions is out of scope.
"""

import asyncio
import base64
import logging
from typing import Optional

import httpx
from solders.pubkey import Pubkey

from cate.chain.protocol import AssetRiskStatus, TrustConfig, asset_risk_address, config_address
from cate.errors import NotInitialized

logger = logging.getLogger("cate.chain")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 1.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}


class SolanaRpcClient:
    """Async JSON-RPC client for program account reads.

    Args:
        endpoint: RPC URL, e.g. ``https://api.devnet.solana.com``.
        program_id: Base58 id of the trust-anchor program.
    """

    def __init__(self, endpoint: str, program_id: str) -> None:
        self._endpoint = endpoint
        self._program_id = Pubkey.from_string(program_id)
        self._request_id = 0

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _rpc(self, method: str, params: list) -> dict:
        """POST a JSON-RPC call with exponential-backoff retry.

        Retries on transient server errors and rate limits.  An RPC-level
        ``error`` object is raised as ``RuntimeError`` without retrying.
        """
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(self._endpoint, json=body, timeout=15.0)

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "RPC %s returned %d, retry %d/%d in %.1fs",
                        method, resp.status_code, attempt + 1, _MAX_RETRIES, delay,
                    )
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    await asyncio.sleep(delay)
                    continue

                resp.raise_for_status()
                payload = resp.json()
                if payload.get("error"):
                    raise RuntimeError(f"RPC {method} failed: {payload['error']}")
                return payload.get("result", {})

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "RPC %s transport error (%s), retry %d/%d in %.1fs",
                    method, exc, attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        """Raw account bytes, or ``None`` when the account does not exist."""
        result = await self._rpc(
            "getAccountInfo", [str(address), {"encoding": "base64"}],
        )
        value = result.get("value")
        if value is None:
            return None
        data, _encoding = value["data"]
        return base64.b64decode(data)

    # ── Queries ──────────────────────────────────────────────────────────

    async def fetch_risk_status(self, asset_id: str) -> AssetRiskStatus:
        """Last published status for *asset_id*.

        Raises ``NotInitialized`` if nothing has been published.
        """
        address, _ = asset_risk_address(self._program_id, asset_id)
        data = await self.get_account_data(address)
        if data is None:
            raise NotInitialized(f"no risk status published for {asset_id}")
        return AssetRiskStatus.from_bytes(data)

    async def fetch_config(self) -> TrustConfig:
        address, _ = config_address(self._program_id)
        data = await self.get_account_data(address)
        if data is None:
            raise NotInitialized("trust anchor config not initialized")
        return TrustConfig.from_bytes(data)
