"""
M-Stack Data Schemas
=====================

Pydantic v2 models for every data contract of the decision pipeline:

1. Request / Candidate / Response  — the edge of the pipeline
2. Claim / ClaimGraph              — claim decomposition and entailment edges
3. Signals / Scores                — Monitor and Evaluator outputs
4. DualState / Decision / LogRecord — control, calibration and audit

All schemas support runtime validation, JSON Schema export and
canonical serialization for the audit hash chain.
"""

from mstack.schemas.decision import (
    ACTION_PREFERENCE,
    GENESIS_HASH,
    Action,
    CalibrationOutcome,
    Decision,
    DualState,
    LogRecord,
)
from mstack.schemas.signals import WORST_SCORES, Scores, Signals
from mstack.schemas.claim_graph import (
    Claim,
    ClaimGraph,
    EdgeLabel,
    EntailmentEdge,
    EntailmentResult,
)
from mstack.schemas.request import (
    Budget,
    Candidate,
    ContextBundle,
    EvidenceSpan,
    Request,
    Response,
    SourceInfo,
)

__all__ = [
    # Request
    "Budget",
    "Candidate",
    "ContextBundle",
    "EvidenceSpan",
    "Request",
    "Response",
    "SourceInfo",
    # Claims
    "Claim",
    "ClaimGraph",
    "EdgeLabel",
    "EntailmentEdge",
    "EntailmentResult",
    # Signals
    "Scores",
    "Signals",
    "WORST_SCORES",
    # Decision
    "ACTION_PREFERENCE",
    "Action",
    "CalibrationOutcome",
    "Decision",
    "DualState",
    "GENESIS_HASH",
    "LogRecord",
]
