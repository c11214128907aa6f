"""Asset configuration dataclass.

Represents one oracle-fed asset tracked by the decision pipeline.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class AssetConfig:
    """Configuration for a single tracked asset.

    ``feed_id`` is the hex price-feed identifier on the Hermes endpoint.
    ``asset_id`` must fit the 16-byte on-chain identifier field.
    """

    asset_id: str  # e.g. "SOL/USD"
    feed_id: str
    symbol: str = ""
    enabled: bool = True

    def __post_init__(self) -> None:
        raw = self.asset_id.encode("utf-8")
        if not raw:
            raise ValueError("asset_id must not be empty")
        if len(raw) > 16:
            raise ValueError(f"asset_id {self.asset_id!r} exceeds 16 bytes")
        if not self.feed_id:
            raise ValueError(f"feed_id missing for asset {self.asset_id!r}")

    @property
    def normalized_feed_id(self) -> str:
        """Feed id without the ``0x`` prefix, lower-cased."""
        fid = self.feed_id.lower()
        return fid[2:] if fid.startswith("0x") else fid
