"""Tests for decision history, the SQLite audit repo and the CLI dashboard."""

import os

import pytest

from cate.cli.dashboard import print_circuit, print_decision
from cate.crypto.attestation import AttestationEngine
from cate.crypto.keys import keypair_from_seed
from cate.observability.history import DecisionLog
from cate.oracle.models import OracleMetrics, SourceTag
from cate.repos.db import get_connection, init_db
from cate.repos.decision_repo import DecisionRepo
from cate.risk.evaluator import evaluate
from cate.risk.models import RiskAction, RiskParameters


NOW = 1_700_000_000.0
ENGINE = AttestationEngine(keypair_from_seed(bytes(range(32))))


class FakeClock:
    def __init__(self, start: float = NOW) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _decision(asset_id="SOL/USD", ratio=0.2, source=SourceTag.LIVE):
    metrics = OracleMetrics(
        asset_id=asset_id, price=100.0, confidence=ratio, confidence_ratio=ratio,
        confidence_zscore=0.0, volatility_realized=10.0, volatility_expected=18.7,
        data_freshness_seconds=1.0, data_quality_score=90.0,
        avg_confidence_ratio_1h=ratio, price_change_1h=0.0, update_frequency_1m=12,
        sample_count_1h=60, timestamp=NOW,
    )
    return evaluate(metrics, source, RiskParameters())


def _record(log: DecisionLog, **kwargs):
    decision = _decision(**kwargs)
    return log.record(decision, ENGINE.sign_decision(decision))


# ── DecisionLog ──────────────────────────────────────────────────────────


class TestDecisionLog:
    def test_recent_is_newest_first(self):
        log = DecisionLog(clock=FakeClock())
        first = _record(log)
        second = _record(log, asset_id="BTC/USD")
        assert log.recent() == [second, first]
        assert log.recent(asset_id="SOL/USD") == [first]
        assert log.recent(count=1) == [second]

    def test_fifo_eviction_by_count(self):
        log = DecisionLog(max_entries=3, clock=FakeClock())
        entries = [_record(log) for _ in range(5)]
        assert len(log) == 3
        assert log.recent(10) == list(reversed(entries[2:]))

    def test_blocked_filter(self):
        log = DecisionLog(clock=FakeClock())
        _record(log)
        blocked = _record(log, ratio=4.0)
        assert log.blocked() == [blocked]

    def test_latest_per_asset(self):
        log = DecisionLog(clock=FakeClock())
        _record(log)
        _record(log, asset_id="BTC/USD")
        last_sol = _record(log, ratio=4.0)
        assert log.latest("SOL/USD") == last_sol
        assert log.latest("ETH/USD") is None

    def test_find_by_hash(self):
        log = DecisionLog(clock=FakeClock())
        entry = _record(log)
        assert log.find_by_hash(entry.decision_hash) == entry
        assert log.find_by_hash("unknown") is None

    def test_summary_rates(self):
        clock = FakeClock()
        log = DecisionLog(clock=clock)
        _record(log)
        clock.now += 4000
        _record(log)
        _record(log, ratio=4.0)
        summary = log.summary()
        assert summary["total_decisions"] == 2
        assert summary["allow_rate"] == pytest.approx(0.5)
        assert summary["block_rate"] == pytest.approx(0.5)
        assert summary["assets"] == ["SOL/USD"]

    def test_export_oldest_first_with_filters(self):
        log = DecisionLog(clock=FakeClock())
        first = _record(log)
        _record(log, asset_id="BTC/USD")
        blocked = _record(log, ratio=4.0)
        exported = log.export()
        assert [e["id"] for e in exported] == ["DEC-000001", "DEC-000002", "DEC-000003"]
        assert log.export(asset_id="SOL/USD") == [first.to_dict(), blocked.to_dict()]
        assert log.export(action=RiskAction.BLOCK) == [blocked.to_dict()]

    def test_empty_summary(self):
        summary = DecisionLog().summary()
        assert summary["total_decisions"] == 0
        assert summary["avg_risk_score"] == 0.0

    def test_entry_serializes(self):
        log = DecisionLog(clock=FakeClock())
        data = _record(log, ratio=4.0).to_dict()
        assert data["id"] == "DEC-000001"
        assert data["action"] == "BLOCK"
        assert "Confidence Ratio" in data["triggered_factors"]
        assert data["signed"]["decision_hash"] == data["decision_hash"]


# ── DecisionRepo ─────────────────────────────────────────────────────────


@pytest.fixture
def repo(tmp_path):
    db_path = os.path.join(str(tmp_path), "data", "cate.db")
    init_db(db_path)
    return DecisionRepo(db_path)


class TestDecisionRepo:
    def test_init_db_creates_schema(self, tmp_path):
        db_path = str(tmp_path / "fresh.db")
        init_db(db_path)
        init_db(db_path)  # idempotent
        conn = get_connection(db_path)
        try:
            tables = {r["name"] for r in conn.execute("SELECT name FROM sqlite_master")}
        finally:
            conn.close()
        assert "decisions" in tables

    def test_insert_and_get_by_hash(self, repo):
        decision = _decision()
        signed = ENGINE.sign_decision(decision)
        row_id = repo.insert_decision(signed, decision)
        assert row_id == 1

        row = repo.get_by_hash(signed.hash_base58)
        assert row["asset_id"] == "SOL/USD"
        assert row["action"] == "ALLOW"
        assert row["signer"] == ENGINE.public_key_base58
        assert row["timestamp_ms"] == int(NOW * 1000)
        assert repo.get_by_hash("missing") is None

    def test_get_decisions_filters(self, repo):
        for kwargs in ({}, {"ratio": 4.0}, {"asset_id": "BTC/USD"}):
            decision = _decision(**kwargs)
            repo.insert_decision(ENGINE.sign_decision(decision), decision)

        everything = repo.get_decisions()
        assert everything["total"] == 3
        assert everything["decisions"][0]["asset_id"] == "BTC/USD"

        blocked = repo.get_decisions(action="block")
        assert blocked["total"] == 1
        assert blocked["decisions"][0]["triggered"] == "Confidence Ratio"

        sol = repo.get_decisions(asset_id="SOL/USD", limit=1)
        assert sol["total"] == 2
        assert len(sol["decisions"]) == 1


# ── Dashboard ────────────────────────────────────────────────────────────


class TestDashboard:
    def test_print_decision_entry(self, capsys):
        log = DecisionLog(clock=FakeClock())
        entry = _record(log, ratio=4.0)
        output = print_decision(entry)
        assert "Action:          BLOCK" in output
        assert entry.decision_hash in output
        assert "TRADE BLOCKED" in capsys.readouterr().out

    def test_print_bare_decision(self):
        output = print_decision(_decision(source=SourceTag.CACHED))
        assert "Source:          CACHED" in output
        assert "unsigned" in output

    def test_print_circuit(self):
        output = print_circuit({
            "state": "OPEN",
            "failure_count": 5,
            "reason": "feed down",
            "assets": {"SOL/USD": {"blocked": True}, "BTC/USD": {"blocked": False}},
        })
        assert "OPEN" in output
        assert "Blocked Assets:  SOL/USD" in output
