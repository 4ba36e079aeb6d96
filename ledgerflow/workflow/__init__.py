"""
Ledgerflow — Workflow Records

Tasks, alerts and command-log rows written by the policy, anomaly and
action stages, plus the master-operation status machine.

Status lifecycle (never backward):
  pending_review → pending_approval ─┐
        │                 ↓          ↓
        └────────→ flagged_for_review → approved
"""

import logging
from datetime import datetime, timedelta

from ledgerflow import db
from ledgerflow.config import SEVERITIES, TASK_PRIORITIES, STATUS_TRANSITIONS

logger = logging.getLogger(__name__)


# ============================================================
# ALERTS
# ============================================================
def create_alert(user_id: str, alert_type: str, severity: str, title: str,
                 description: str = "", data: dict = None) -> dict:
    if severity not in SEVERITIES:
        severity = "medium"
    return db.insert("alerts", {
        "user_id": user_id, "alert_type": alert_type, "severity": severity,
        "title": title, "description": description, "data": data or {},
        "is_read": False,
    })


# ============================================================
# TASKS
# ============================================================
def create_task(user_id: str, title: str, description: str = "", priority: str = "medium",
                due_in_days: int = None, source_type: str = None, source_id: str = None) -> dict:
    if priority not in TASK_PRIORITIES:
        priority = "medium"
    due_date = (datetime.now() + timedelta(days=due_in_days)).date().isoformat() if due_in_days is not None else None
    return db.insert("tasks", {
        "user_id": user_id, "title": title, "description": description,
        "priority": priority, "status": "pending", "due_date": due_date,
        "source_type": source_type, "source_id": source_id,
    })


def priority_rank(priority: str) -> int:
    """critical → 0 ... low → 3; unknown sorts last."""
    return TASK_PRIORITIES.index(priority) if priority in TASK_PRIORITIES else len(TASK_PRIORITIES)


def pending_tasks(user_id: str, limit: int = 5) -> list:
    tasks = db.find("tasks", user_id=user_id, status="pending")
    tasks.sort(key=lambda t: (priority_rank(t.get("priority")), t.get("created_at") or ""))
    return tasks[:limit]


# ============================================================
# COMMAND LOG
# ============================================================
def log_command(user_id: str, command_type: str, command_text: str, result: dict = None) -> dict:
    return db.insert("command_logs", {
        "user_id": user_id, "command_type": command_type,
        "command_text": command_text, "result": result or {},
    })


# ============================================================
# MASTER OPERATION STATUS
# ============================================================
def transition_status(operation_id: str, new_status: str) -> bool:
    """Move a master operation forward. Returns False (and leaves it alone) for a backward move."""
    op = db.find_one("master_operations", id=operation_id)
    if not op:
        logger.warning("[Workflow] master operation %s not found", operation_id)
        return False
    current = op.get("status") or "pending_review"
    if current == new_status:
        return True
    if new_status not in STATUS_TRANSITIONS.get(current, []):
        logger.info("[Workflow] ignoring %s → %s for %s", current, new_status, operation_id)
        return False
    db.update("master_operations", operation_id, {"status": new_status})
    return True
