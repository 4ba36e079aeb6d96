"""Unit tests for the briefing and growth stages."""

from datetime import datetime, timedelta

from ledgerflow import db
from ledgerflow.briefing import briefing_type_for, compile_briefing
from ledgerflow.growth import analyze, generate_insights, wants_content
from ledgerflow.workflow import create_alert, create_task, pending_tasks

USER = "user-brief"
NOW = datetime(2024, 6, 3, 8, 30)


def _op(amount: float, operation_type: str, category: str = None, days_ago: int = 1, status: str = "pending_review") -> dict:
    when = NOW - timedelta(days=days_ago)
    return {"user_id": USER, "amount": amount, "operation_type": operation_type, "category": category,
            "transaction_date": when.date().isoformat(), "status": status}


def test_briefing_type_by_hour() -> None:
    """Ensure mornings and afternoons get different briefings."""
    assert briefing_type_for(datetime(2024, 1, 1, 11, 59)) == "morning"
    assert briefing_type_for(datetime(2024, 1, 1, 12, 0)) == "evening"


def test_tasks_ordered_by_explicit_priority() -> None:
    """Ensure critical sorts before high, medium and low regardless of insertion order."""
    for p in ("low", "high", "critical", "medium"):
        create_task(USER, f"{p} task", priority=p)

    assert [t["priority"] for t in pending_tasks(USER)] == ["critical", "high", "medium", "low"]


def test_compile_briefing_persists_and_summarizes() -> None:
    """Ensure the briefing reports cash flow, priorities and alerts, and is stored."""
    db.insert("master_operations", _op(3000, "income"))
    db.insert("master_operations", _op(1000, "expense"))
    create_task(USER, "Approve transaction", priority="high")
    create_alert(USER, "anomaly_detected", "critical", "Anomaly: Amount Outlier")

    result = compile_briefing(USER, now=NOW)

    content = result["content"]
    assert result["briefing_type"] == "morning"
    assert content["summary"].startswith("Good morning!")
    assert "$2,000.00 CAD" in content["summary"]
    assert content["financial_snapshot"]["net_cash_flow"] == 2000
    assert content["financial_snapshot"]["trend"] == "positive"
    assert content["priorities"][0]["title"] == "Approve transaction"
    assert content["alerts"]["critical"] == 1
    assert "Address 1 critical alert(s)" in content["action_items"]
    assert db.find_one("briefings", id=result["briefing_id"])["user_id"] == USER


def test_negative_cash_flow_wording() -> None:
    """Ensure a negative 30-day balance is called out."""
    db.insert("master_operations", _op(500, "expense"))

    content = compile_briefing(USER, now=NOW.replace(hour=18))["content"]

    assert content["briefing_type"] == "evening"
    assert "negative at -$500.00" in content["summary"]


def test_growth_always_returns_an_insight() -> None:
    """Ensure an empty account still gets at least one insight."""
    insights = generate_insights([], [], [], NOW)

    assert len(insights) >= 1


def test_growth_heuristics() -> None:
    """Ensure margin, concentration and scaling heuristics fire on matching data."""
    operations = [_op(12000, "income", "consulting"), _op(1000, "expense", "rent"),
                  _op(200, "expense", "software")]
    companies = [{"id": "c1"}]
    clients = [{"id": "k1", "created_at": (NOW - timedelta(days=60)).isoformat()}]

    types = [i["type"] for i in generate_insights(operations, companies, clients, NOW)]

    assert types == ["growth_opportunity", "client_acquisition", "diversification",
                     "cost_optimization", "scaling"]


def test_low_margin_and_client_growth() -> None:
    """Ensure a thin margin and three recent clients are both reported."""
    operations = [_op(1000, "income", "sales"), _op(900, "expense", "payroll")]
    clients = [{"id": str(i), "created_at": (NOW - timedelta(days=2)).isoformat()} for i in range(3)]

    types = [i["type"] for i in generate_insights(operations, [], clients, NOW)]

    assert types[:2] == ["margin_optimization", "client_growth"]


def test_analyze_with_content_request() -> None:
    """Ensure content suggestions appear only when asked for."""
    db.insert("master_operations", _op(100, "income", "sales"))

    plain = analyze(USER, now=NOW)
    content = analyze(USER, "content.generate", {"topic": "cash flow"}, now=NOW)

    assert plain["analysis_period"] == "Last 90 days"
    assert plain["content_suggestions"] is None
    assert content["content_suggestions"]["hashtag_suggestions"][0] == "#cashflow"
    assert wants_content("growth.analyze", {"platform": "instagram"}) is True
    assert wants_content("growth.analyze", {}) is False
