"""CLI dashboard — prints decisions and breaker status to the console."""

from cate.observability.history import DecisionLogEntry
from cate.risk.models import RiskDecision


def print_decision(item) -> str:
    """Format and print one decision.

    Args:
        item: A ``DecisionLogEntry`` or a bare ``RiskDecision``.

    Returns:
        The formatted string (also printed to stdout).
    """
    if isinstance(item, DecisionLogEntry):
        decision: RiskDecision = item.decision
        decision_hash = item.decision_hash or "unsigned"
    else:
        decision = item
        decision_hash = "unsigned"

    metrics = decision.inputs.metrics
    triggered = ", ".join(f.name for f in decision.triggered_factors) or "none"

    lines = [
        f"──────────────── {decision.asset_id} ────────────────",
        f"  Action:          {decision.action.value}",
        f"  Size:            {decision.size_multiplier:.2f}x",
        f"  Risk Score:      {decision.risk_score}/100",
        f"  Price:           {metrics.price:,.6f}",
        f"  Confidence:      ±{metrics.confidence:,.6f} ({metrics.confidence_ratio:.3f}%)",
        f"  Source:          {decision.inputs.source.value}",
        f"  Triggered:       {triggered}",
        f"  Hash:            {decision_hash}",
        f"  {decision.explanation}",
        "──────────────────────────────────────────────────",
    ]
    output = "\n".join(lines)
    print(output)
    return output


def print_circuit(status: dict) -> str:
    """Format and print a ``CircuitStatus.to_dict()`` snapshot."""
    blocked = [a for a, s in status.get("assets", {}).items() if s.get("blocked")]
    lines = [
        "──────────────── Circuit Breaker ────────────────",
        f"  State:           {status.get('state', 'unknown')}",
        f"  Failures:        {status.get('failure_count', 0)}",
        f"  Reason:          {status.get('reason') or 'N/A'}",
        f"  Blocked Assets:  {', '.join(blocked) or 'none'}",
        "──────────────────────────────────────────────────",
    ]
    output = "\n".join(lines)
    print(output)
    return output
