"""Decision repository — SQLite audit trail of signed decisions."""

from datetime import datetime, timezone
from typing import Optional

from cate.crypto.attestation import SignedDecision
from cate.repos.db import get_connection
from cate.risk.models import RiskDecision


class DecisionRepo:
    """Data access layer for signed decision records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_decision(self, signed: SignedDecision, decision: RiskDecision) -> int:
        """Insert a signed decision and return its ``id``."""
        p = signed.payload
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO decisions
                    (asset_id, action, risk_score, size_multiplier, price,
                     confidence, timestamp_ms, decision_hash, signature,
                     signer, explanation, triggered, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    p.asset_id, p.action.value, p.risk_score, p.size_multiplier,
                    p.price, p.confidence, p.timestamp_ms, signed.hash_base58,
                    signed.to_dict()["signature"], signed.signer_base58,
                    decision.explanation,
                    ",".join(f.name for f in decision.triggered_factors),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_decisions(
        self,
        limit: int = 50,
        asset_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> dict:
        """Return recent decisions, newest first, with the total count."""
        clauses: list[str] = []
        params: list = []
        if asset_id:
            clauses.append("asset_id = ?")
            params.append(asset_id)
        if action:
            clauses.append("action = ?")
            params.append(action.upper())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = get_connection(self._db_path)
        try:
            total = conn.execute(
                f"SELECT COUNT(*) FROM decisions {where}", params,
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM decisions {where} ORDER BY id DESC LIMIT ?",
                [*params, limit],
            ).fetchall()
            return {"decisions": [dict(r) for r in rows], "total": total}
        finally:
            conn.close()

    def get_by_hash(self, decision_hash: str) -> Optional[dict]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM decisions WHERE decision_hash = ?", (decision_hash,),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()
