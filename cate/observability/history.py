"""Decision history — bounded, append-only ring buffer with summary metrics.

Eviction is FIFO by count, never by time.
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from cate.crypto.attestation import SignedDecision
from cate.risk.models import RiskAction, RiskDecision

_METRICS_WINDOW_SECONDS = 3600.0


@dataclass(frozen=True)
class DecisionLogEntry:
    """One signed decision as recorded for audit."""

    entry_id: int
    logged_at: float
    decision: RiskDecision
    signed: Optional[SignedDecision]

    @property
    def decision_hash(self) -> Optional[str]:
        return self.signed.hash_base58 if self.signed else None

    def to_dict(self) -> dict:
        d = self.decision
        return {
            "id": f"DEC-{self.entry_id:06d}",
            "logged_at": self.logged_at,
            "asset_id": d.asset_id,
            "action": d.action.value,
            "risk_score": d.risk_score,
            "size_multiplier": d.size_multiplier,
            "explanation": d.explanation,
            "triggered_factors": [f.name for f in d.triggered_factors],
            "decision_hash": self.decision_hash,
            "signed": self.signed.to_dict() if self.signed else None,
        }


class DecisionLog:
    """Recent decisions, newest last.

    Args:
        max_entries: Capacity of the ring buffer.
        clock: Returns the current unix time; injected for tests.
    """

    def __init__(self, max_entries: int = 1000, clock: Callable[[], float] = time.time) -> None:
        self._entries: deque[DecisionLogEntry] = deque(maxlen=max_entries)
        self._clock = clock
        self._next_id = 1

    def record(
        self,
        decision: RiskDecision,
        signed: Optional[SignedDecision] = None,
    ) -> DecisionLogEntry:
        entry = DecisionLogEntry(self._next_id, self._clock(), decision, signed)
        self._next_id += 1
        self._entries.append(entry)
        return entry

    def __len__(self) -> int:
        return len(self._entries)

    # ── Queries ──────────────────────────────────────────────────────────

    def recent(self, count: int = 50, asset_id: Optional[str] = None) -> list[DecisionLogEntry]:
        """Newest first."""
        entries = [
            e for e in reversed(self._entries)
            if asset_id is None or e.decision.asset_id == asset_id
        ]
        return entries[:count]

    def blocked(self, count: int = 50) -> list[DecisionLogEntry]:
        return [e for e in reversed(self._entries) if e.decision.is_blocked][:count]

    def latest(self, asset_id: str) -> Optional[DecisionLogEntry]:
        for entry in reversed(self._entries):
            if entry.decision.asset_id == asset_id:
                return entry
        return None

    def find_by_hash(self, decision_hash: str) -> Optional[DecisionLogEntry]:
        for entry in reversed(self._entries):
            if entry.decision_hash == decision_hash:
                return entry
        return None

    def export(
        self,
        asset_id: Optional[str] = None,
        action: Optional[RiskAction] = None,
    ) -> list[dict]:
        """Every retained entry, oldest first, serialized for audit export."""
        return [
            e.to_dict() for e in self._entries
            if (asset_id is None or e.decision.asset_id == asset_id)
            and (action is None or e.decision.action is action)
        ]

    def summary(self) -> dict:
        """Action rates and mean risk score over the last hour."""
        cutoff = self._clock() - _METRICS_WINDOW_SECONDS
        window = [e for e in self._entries if e.logged_at >= cutoff]
        total = len(window)
        counts = {action: 0 for action in RiskAction}
        for e in window:
            counts[e.decision.action] += 1
        return {
            "total_decisions": total,
            "allow_rate": counts[RiskAction.ALLOW] / total if total else 0.0,
            "scale_rate": counts[RiskAction.SCALE] / total if total else 0.0,
            "block_rate": counts[RiskAction.BLOCK] / total if total else 0.0,
            "avg_risk_score": (
                sum(e.decision.risk_score for e in window) / total if total else 0.0
            ),
            "assets": sorted({e.decision.asset_id for e in window}),
        }
