"""
M-Stack — Inference-Time Reliability Controller
================================================

M-Stack wraps an arbitrary text generator and decides, per request,
whether to emit its answer, revise it, verify it against evidence, or
abstain, under explicit risk and cost budgets.

Architecture Overview:
    Monitor → Evaluate → Control → (verify / revise loop) → Audit → Learn

Modules:
    - adapters:  Generator / entailment / scorer / retrieval interfaces and implementations
    - claims:    Claim extraction and the pairwise entailment graph
    - monitor:   Dynamic-K selection and the four Monitor signals
    - evaluate:  Judge / PRM / citation scoring and score calibration
    - control:   Constrained-optimization decision policy with the conformal gate
    - learn:     Dual ascent and conformal threshold calibration
    - audit:     Hash-chained append-only audit log
    - pipeline:  End-to-end orchestrator
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
