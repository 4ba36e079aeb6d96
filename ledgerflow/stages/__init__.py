"""
Ledgerflow — Stage Contract

Every pipeline stage is a callable `run(ctx: StageContext) -> dict`.

The context carries the event identity, the original payload and the
outputs of every stage that ran before, keyed by stage name. Stages read
upstream results only through the accessors below, which always return a
dict (empty when the stage did not run or failed), so no stage assumes a
field is present.

A stage may return an `_audit` entry ({action_type, input_data,
confidence_score}); the orchestrator pops it into the AgentLog row.
"""
from dataclasses import dataclass, field
from enum import Enum


class Stage(str, Enum):
    NORMALIZATION = "normalization"
    DEDUPLICATION = "deduplication"
    CLASSIFICATION = "classification"
    POLICY = "policy"
    ANOMALY = "anomaly"
    ACTION = "action"
    BRIEFING = "briefing"
    GROWTH = "growth"


@dataclass
class StageContext:
    event_id: str
    event_type: str
    payload: dict
    user_id: str = None
    previous_results: dict = field(default_factory=dict)

    def result(self, stage) -> dict:
        """Output of an upstream stage; empty when it did not run or failed."""
        out = self.previous_results.get(Stage(stage).value)
        if not isinstance(out, dict) or "error" in out:
            return {}
        return out

    def normalized(self) -> dict:
        """Normalized record when normalization ran, else the raw payload."""
        return self.result(Stage.NORMALIZATION).get("normalized_data") or self.payload or {}

    def master_operation_id(self):
        return self.result(Stage.DEDUPLICATION).get("master_operation_id")

    @classmethod
    def from_dict(cls, data: dict):
        return cls(event_id=data.get("event_id"), event_type=data.get("event_type") or "",
                   payload=data.get("payload") or {}, user_id=data.get("user_id"),
                   previous_results=data.get("previous_results") or {})
