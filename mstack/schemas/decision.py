"""
Decision / DualState / LogRecord Schema
========================================

Contracts of the Control → Learn → Audit half of the pipeline.

Design Philosophy:
    - DualState is the ONLY process-wide mutable entity. The model itself is
      frozen: the Calibrator replaces it wholesale, readers hold snapshots.
    - A Decision carries the DualState snapshot it was made under, so every
      logged decision can be replayed against the same thresholds.
    - LogRecords are hash-linked: prev_hash is the content hash of the
      previous record's canonical serialization.

Data Flow:
    Signals + Scores + DualState → Decision → LogRecord → (outcome) → DualState'
"""

from __future__ import annotations

import math
import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mstack.schemas.signals import Scores, Signals
from mstack.utils import compute_content_hash

GENESIS_HASH = "0" * 64


class Action(str, Enum):
    """
    Controller actions.

    - EMIT:    return the best candidate
    - REVISE:  regenerate with the consistent claims as guidance (internal loop)
    - VERIFY:  resample more candidates and re-check against evidence (internal loop)
    - ABSTAIN: decline to answer; zero-cost and always feasible
    """
    EMIT = "emit"
    REVISE = "revise"
    VERIFY = "verify"
    ABSTAIN = "abstain"

    @property
    def is_terminal(self) -> bool:
        return self in (Action.EMIT, Action.ABSTAIN)


# Deterministic tie-break order for equal utilities.
ACTION_PREFERENCE: tuple[Action, ...] = (
    Action.EMIT,
    Action.REVISE,
    Action.VERIFY,
    Action.ABSTAIN,
)


class DualState(BaseModel):
    """
    Lagrange multipliers and conformal threshold.

    Initialized at λ=μ=τ=0; mutated only by the Calibrator.
    """
    model_config = ConfigDict(frozen=True)

    lambda_: float = Field(default=0.0, ge=0.0, description="Cost multiplier λ")
    mu: float = Field(default=0.0, ge=0.0, description="Risk multiplier μ")
    tau: float = Field(default=0.0, ge=0.0, le=1.0, description="Conformal coverage threshold τ")
    version: int = Field(default=0, ge=0, description="Accepted updates applied so far")


class Decision(BaseModel):
    """
    The controller's output for one pass through the pipeline.

    Schema:
        {
          "action": "verify",
          "rationale": "rag_coverage=0.20 < tau=0.50 with context supplied",
          "policy_version": "cmdp-v1.0",
          "thresholds_used": {"lambda_": 0.0, "mu": 0.0, "tau": 0.5, "version": 12},
          "triggers": ["rag_coverage"],
          "risk": 0.41,
          "utilities": {"emit": 0.59, ...}
        }
    """
    model_config = ConfigDict(frozen=True)

    action: Action
    rationale: str = Field(description="Human-readable reason naming the triggering signal(s)")
    policy_version: str
    thresholds_used: DualState
    triggers: list[str] = Field(default_factory=list, description="Names of the signals that fired")
    risk: float = Field(default=1.0, ge=0.0, le=1.0, description="Risk proxy at decision time")
    utilities: dict[str, float] = Field(default_factory=dict, description="U(a) per feasible action")


class CalibrationOutcome(BaseModel):
    """
    An observed outcome for a past decision, consumed by the Calibrator.

    observed_cost and cost_budget are normalized (tokens spent / token_cap).
    observed_risk is the realized error (1.0 wrong, 0.0 correct, or a graded loss).
    """
    qid: Optional[str] = None
    observed_cost: float = Field(ge=0.0, allow_inf_nan=False)
    observed_risk: float = Field(ge=0.0, le=1.0, allow_inf_nan=False)
    cost_budget: float = Field(ge=0.0, allow_inf_nan=False)
    risk_cap: float = Field(gt=0.0, lt=1.0, allow_inf_nan=False)
    coverage: Optional[float] = Field(default=None, ge=0.0, le=1.0, allow_inf_nan=False)


class LogRecord(BaseModel):
    """
    One append-only audit record per completed request.

    Candidates are redacted to hashes; `output` holds the emitted text
    (None when abstaining).
    """
    qid: str = Field(description="Unique request/log identifier")
    timestamp: str = Field(
        default_factory=lambda: time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        description="ISO 8601 timestamp"
    )
    input_hash: str = Field(description="SHA-256 of the canonical request")
    candidates: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Redacted candidates: {candidate_id, text_hash, n_tokens}"
    )
    signals: Optional[Signals] = None
    scores: Optional[Scores] = None
    decision: Decision
    output: Optional[str] = None
    cost: dict[str, Any] = Field(default_factory=dict, description="Tokens, latency, rounds, drops")
    prev_hash: str = Field(default=GENESIS_HASH, description="Content hash of the previous record")

    @field_validator("prev_hash")
    @classmethod
    def validate_hex(cls, v: str) -> str:
        if len(v) != 64 or any(c not in "0123456789abcdef" for c in v):
            raise ValueError("prev_hash must be a 64-char lowercase hex digest")
        return v

    def content_hash(self) -> str:
        """Hash of this record's canonical serialization."""
        return compute_content_hash(self.model_dump(mode="json"))


def is_finite(*values: float) -> bool:
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in values)
