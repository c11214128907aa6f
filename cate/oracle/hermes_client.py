"""Pyth Hermes async client and polling feed.

``HermesClient`` fetches the latest parsed price updates over REST.
``OracleFeed`` polls it on an interval, reconnects with exponential backoff
and reports connection state changes so the circuit breaker can react.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from cate.errors import OracleUnavailable
from cate.models.asset_config import AssetConfig
from cate.oracle.models import OracleSample, SourceTag

logger = logging.getLogger("cate.oracle")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

# Hermes does not report the publisher count in parsed updates.
DEFAULT_PUBLISHER_COUNT = 5


class ConnectionState(str, Enum):
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"
    STOPPED = "STOPPED"


class HermesClient:
    """Async client wrapping the Hermes REST API.

    Args:
        endpoint: Base URL, e.g. ``https://hermes.pyth.network``.
        publisher_count: Value stamped on every sample.
    """

    def __init__(
        self,
        endpoint: str = "https://hermes.pyth.network",
        publisher_count: int = DEFAULT_PUBLISHER_COUNT,
    ) -> None:
        self._base_url = endpoint.rstrip("/")
        self._publisher_count = publisher_count
        self._headers = {"Accept": "application/json"}

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=self._headers,
                        timeout=10.0,
                        **kwargs,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Hermes %s %s returned %d, retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    await asyncio.sleep(delay)
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Hermes %s %s transport error (%s), retry %d/%d in %.1fs",
                    method.upper(), url, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    # ── Prices ───────────────────────────────────────────────────────────

    async def fetch_latest(self, assets: list[AssetConfig]) -> list[OracleSample]:
        """Fetch the latest price for every asset.

        Prices and confidences are scaled by ``10 ** expo``.  Feeds missing
        from the response are skipped.
        """
        if not assets:
            return []
        by_feed = {a.normalized_feed_id: a for a in assets}
        url = f"{self._base_url}/v2/updates/price/latest"
        params = [("ids[]", fid) for fid in by_feed] + [("parsed", "true")]

        resp = await self._request_with_retry("get", url, params=params)

        samples: list[OracleSample] = []
        for item in resp.json().get("parsed", []):
            feed_id = str(item["id"]).lower().removeprefix("0x")
            asset = by_feed.get(feed_id)
            if asset is None:
                continue
            p = item["price"]
            scale = 10.0 ** int(p["expo"])
            samples.append(
                OracleSample(
                    asset_id=asset.asset_id,
                    price=int(p["price"]) * scale,
                    confidence=int(p["conf"]) * scale,
                    publish_time=float(p["publish_time"]),
                    source=SourceTag.LIVE,
                    publisher_count=self._publisher_count,
                    feed_id=feed_id,
                )
            )
        return samples


class OracleFeed:
    """Polling loop over a ``HermesClient`` with reconnect backoff.

    On a failed poll the last known samples are re-emitted tagged
    ``CACHED`` so downstream evaluation fails closed instead of going quiet.
    After ``max_attempts`` consecutive failures the feed enters the terminal
    ``ERROR`` state and raises ``OracleUnavailable``.

    Args:
        client: A ``HermesClient`` (or compatible duck-type / mock).
        assets: Assets to poll.
        on_sample: Awaited once per sample.
        on_state: Called on every connection state change.
        poll_interval: Seconds between successful polls.
    """

    def __init__(
        self,
        client: HermesClient,
        assets: list[AssetConfig],
        on_sample: Callable[[OracleSample], Awaitable[object]],
        on_state: Optional[Callable[[ConnectionState], None]] = None,
        poll_interval: float = 5.0,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 10,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._assets = [a for a in assets if a.enabled]
        self._on_sample = on_sample
        self._on_state = on_state
        self._poll_interval = poll_interval
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._sleep = sleep
        self._state = ConnectionState.DISCONNECTED
        self._running = False
        self._attempts = 0
        self._last_samples: dict[str, OracleSample] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info("Oracle feed %s → %s", self._state.value, state.value)
        self._state = state
        if self._on_state is not None:
            self._on_state(state)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect *attempt* (1-based)."""
        return min(self._max_delay, self._base_delay * (2 ** (attempt - 1)))

    async def poll_once(self) -> list[OracleSample]:
        """Fetch and dispatch one round of samples."""
        samples = await self._client.fetch_latest(self._assets)
        await self._dispatch(samples)
        return samples

    async def _dispatch(self, samples: list[OracleSample]) -> None:
        for sample in samples:
            self._last_samples[sample.asset_id] = sample
            await self._on_sample(sample)

    async def _emit_cached(self) -> None:
        for sample in list(self._last_samples.values()):
            cached = OracleSample(
                asset_id=sample.asset_id,
                price=sample.price,
                confidence=sample.confidence,
                publish_time=sample.publish_time,
                source=SourceTag.CACHED,
                publisher_count=sample.publisher_count,
                feed_id=sample.feed_id,
            )
            await self._on_sample(cached)

    def stop(self) -> None:
        """Do not schedule another poll; an in-flight poll completes.

        The feed then ends in ``STOPPED``, which the breaker does not count
        as a failure.
        """
        self._running = False

    async def run(self, max_polls: int = 0) -> int:
        """Poll until stopped; returns the number of successful polls.

        Args:
            max_polls: Stop after this many successful polls (0 = unlimited).
        """
        self._running = True
        self._attempts = 0
        polls = 0
        self._set_state(ConnectionState.CONNECTING)

        while self._running:
            try:
                samples = await self._client.fetch_latest(self._assets)
            except (httpx.HTTPError, KeyError, ValueError) as exc:
                self._attempts += 1
                if self._attempts > self._max_attempts:
                    self._set_state(ConnectionState.ERROR)
                    self._running = False
                    raise OracleUnavailable(
                        f"oracle unreachable after {self._max_attempts} reconnect attempts: {exc}"
                    ) from exc
                delay = self.backoff_delay(self._attempts)
                logger.warning(
                    "Oracle poll failed (%s), reconnect %d/%d in %.1fs",
                    exc, self._attempts, self._max_attempts, delay,
                )
                self._set_state(ConnectionState.RECONNECTING)
                await self._emit_cached()
                await self._sleep(delay)
                continue

            await self._dispatch(samples)
            self._attempts = 0
            self._set_state(ConnectionState.CONNECTED)
            polls += 1
            if max_polls > 0 and polls >= max_polls:
                break
            await self._sleep(self._poll_interval)

        self._running = False
        self._set_state(ConnectionState.STOPPED)
        return polls
