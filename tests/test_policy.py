"""Unit tests for policy evaluation and runtime thresholds."""

from ledgerflow import db
from ledgerflow.matching import dedup
from ledgerflow.policy import (
    DEFAULT_POLICY,
    evaluate,
    get_approval_threshold,
    get_policy,
    reset_policy,
    run,
    update_policy,
)
from ledgerflow.stages import StageContext

# 2024-05-01 is a Wednesday
WEEKDAY = "2024-05-01"
SATURDAY = "2024-05-04"


def _record(amount: float, **overrides) -> dict:
    record = {"amount": amount, "currency": "CAD", "transaction_date": WEEKDAY,
              "description": "Supplier invoice", "operation_type": "expense"}
    record.update(overrides)
    return record


def _rules(result: dict) -> list:
    return [v["rule"] for v in result["violations"]]


def test_amount_at_threshold_is_compliant() -> None:
    """Ensure the threshold itself does not trigger approval."""
    result = evaluate(_record(1000), 1000)

    assert result["is_compliant"] is True
    assert result["requires_approval"] is False
    assert result["policies_checked"] == 5


def test_amount_above_threshold_requires_approval() -> None:
    """Ensure one cent over the threshold is a high-severity violation."""
    result = evaluate(_record(1000.01), 1000)

    assert _rules(result) == ["Approval Threshold Exceeded"]
    assert result["violations"][0]["severity"] == "high"
    assert result["requires_approval"] is True


def test_far_above_threshold_is_critical() -> None:
    """Ensure more than five times the threshold is critical."""
    result = evaluate(_record(5000.01), 1000)

    assert result["violations"][0]["severity"] == "critical"


def test_missing_documentation() -> None:
    """Ensure a large record with no description or counterparty is flagged medium."""
    result = evaluate(_record(600, description=None), 1000)

    assert _rules(result) == ["Missing Documentation"]
    assert result["is_compliant"] is False
    assert result["requires_approval"] is False


def test_weekend_large_transaction() -> None:
    """Ensure weekend records above 1000 get a low-severity flag."""
    result = evaluate(_record(1500, transaction_date=SATURDAY), 5000)

    assert _rules(result) == ["Weekend Large Transaction"]


def test_meals_over_limit() -> None:
    """Ensure meals above 200 are flagged as a category mismatch."""
    result = evaluate(_record(250), 1000, category="meals")

    assert _rules(result) == ["Category Amount Mismatch"]


def test_potential_duplicate_flag() -> None:
    """Ensure an upstream duplicate flag produces a medium violation."""
    result = evaluate(_record(50), 1000, potential_duplicate=True)

    assert _rules(result) == ["Potential Duplicate"]


def test_custom_rule_operators() -> None:
    """Ensure $gt/$lte operator rules are evaluated and counted."""
    rules = [{"name": "Big software spend", "priority": 1,
              "conditions": {"amount": {"$gt": 100, "$lte": 500}, "operation_type": "expense",
                             "severity": "high", "message": "Software over 100"}}]

    hit = evaluate(_record(300), 1000, rules)
    miss = evaluate(_record(600), 1000, rules)

    assert _rules(hit) == ["Big software spend"]
    assert hit["requires_approval"] is True
    assert hit["policies_checked"] == 6
    assert "Big software spend" not in _rules(miss)


def test_profile_threshold_overrides_default() -> None:
    """Ensure a profile approval_threshold beats the policy default."""
    db.insert("profiles", {"id": "user-p", "approval_threshold": 250})

    assert get_approval_threshold("user-p") == 250
    assert get_approval_threshold("no-profile") == DEFAULT_POLICY["approval_threshold"]


def test_update_and_reset_policy() -> None:
    """Ensure only known numeric fields change and reset restores defaults."""
    update_policy({"approval_threshold": 2500, "unknown_key": 1, "outlier_z": "bad"})

    assert get_policy()["approval_threshold"] == 2500
    assert "unknown_key" not in get_policy()
    assert get_policy()["outlier_z"] == DEFAULT_POLICY["outlier_z"]

    reset_policy()
    assert get_policy()["approval_threshold"] == DEFAULT_POLICY["approval_threshold"]


def test_stage_moves_operation_to_pending_approval_and_alerts() -> None:
    """Ensure a high-severity violation transitions status and raises a policy alert."""
    normalized = _record(1200)
    dd = dedup(normalized, "user-p")
    ctx = StageContext("evt-p", "transaction.created", {}, "user-p",
                       {"normalization": {"normalized_data": normalized}, "deduplication": dd})

    result = run(ctx)

    assert result["requires_approval"] is True
    op = db.find_one("master_operations", id=dd["master_operation_id"])
    assert op["status"] == "pending_approval"
    alerts = db.find("alerts", user_id="user-p", alert_type="policy_violation")
    assert [a["severity"] for a in alerts] == ["high"]
