"""
Decision Controller
====================

Maps (Signals, Scores, budget, risk cap, DualState snapshot) to one of
emit / revise / verify / abstain. This is a DETERMINISTIC policy: no
model calls, no randomness, no mutation of shared state. λ, μ and τ
are read from the snapshot handed in; only the Calibrator changes them.

Risk proxy:
    risk = w_judge·(1 − judge) + w_contradiction·contradiction_mass
         + w_coverage·(1 − rag_coverage)

Without context there is nothing to cover, so the coverage term is
dropped and the judge and contradiction weights are rescaled to sum to 1.

Lagrangian utility of an action a:
    U(a) = base(a) − λ·max(0, cost(a) − soft_cost_budget)
                   − μ·max(0, risk_after(a) − risk_cap)

    base(emit)    = 1 − risk
    base(revise)  = 1 − risk·(1 − revise_risk_reduction) − revise_overhead
    base(verify)  = 1 − risk·(1 − verify_risk_reduction) − verify_overhead
    base(abstain) = abstain_utility
    cost(a)       = estimated extra tokens of a / token_cap

Decision rule, first match wins:
    0. risk ≥ fail_safe_risk                        → abstain
    1. context supplied and rag_coverage < τ        → verify, else abstain
    2. contradiction_mass > contradiction_high_water → revise, else abstain
    3. argmax U(a) over feasible actions, ties emit > revise > verify > abstain
    4. nothing feasible                             → abstain

An action is feasible when its loop counter is positive and its
estimated tokens and latency fit in what is left of the budget.
Emit and abstain add no generation cost and are always feasible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from mstack.config import ControllerConfig, MStackConfig
from mstack.schemas.decision import ACTION_PREFERENCE, Action, Decision, DualState
from mstack.schemas.request import Request
from mstack.schemas.signals import Scores, Signals
from mstack.utils import clip01

logger = logging.getLogger("mstack.control.controller")


@dataclass(frozen=True)
class RemainingBudget:
    """What is left for the current request when the controller runs."""
    tokens: int
    latency_ms: float
    verify_left: int
    revise_left: int


@dataclass(frozen=True)
class CostEstimate:
    """Expected extra spend of re-entering the loop with an action."""
    tokens: int = 0
    latency_ms: float = 0.0


class DecisionController:
    """
    Constrained-optimization decision policy.

    Usage:
        controller = DecisionController.from_config(config)
        decision = controller.decide(signals, scores, request, dual.snapshot(), remaining)

    Args:
        config: Controller weights, thresholds and utilities.
        verify_k: Samples drawn by a verification round.
    """

    def __init__(self, config: Optional[ControllerConfig] = None, verify_k: int = 5):
        self.config = config or ControllerConfig()
        self.verify_k = verify_k

    @classmethod
    def from_config(cls, config: MStackConfig) -> "DecisionController":
        return cls(config=config.controller, verify_k=config.loop.verify_k)

    @property
    def policy_version(self) -> str:
        return self.config.policy_version

    # ── Proxies ────────────────────────────────────────────────────

    def risk(self, signals: Signals, scores: Scores, has_context: bool = True) -> float:
        cfg = self.config
        grounded = cfg.w_judge * (1.0 - scores.judge) + cfg.w_contradiction * signals.contradiction_mass
        scale = cfg.w_judge + cfg.w_contradiction
        if not has_context and scale > 0:
            return clip01(grounded / scale)
        return clip01(grounded + cfg.w_coverage * (1.0 - signals.rag_coverage))

    def risk_after(self, action: Action, risk: float) -> float:
        cfg = self.config
        if action == Action.REVISE:
            return risk * (1.0 - cfg.revise_risk_reduction)
        if action == Action.VERIFY:
            return risk * (1.0 - cfg.verify_risk_reduction)
        if action == Action.ABSTAIN:
            return 0.0
        return risk

    def estimate(
        self,
        action: Action,
        k_last: int = 1,
        tokens_per_candidate: Optional[float] = None,
        round_latency_ms: Optional[float] = None,
    ) -> CostEstimate:
        """Extra tokens / latency of an action; revise resamples K, verify verify_k."""
        if action not in (Action.REVISE, Action.VERIFY):
            return CostEstimate()
        per_candidate = tokens_per_candidate or self.config.default_tokens_per_candidate
        latency = round_latency_ms or self.config.default_latency_ms
        n = self.verify_k if action == Action.VERIFY else max(1, k_last)
        return CostEstimate(tokens=int(round(n * per_candidate)), latency_ms=latency)

    def is_feasible(self, action: Action, estimate: CostEstimate, remaining: RemainingBudget) -> bool:
        if action == Action.VERIFY and remaining.verify_left <= 0:
            return False
        if action == Action.REVISE and remaining.revise_left <= 0:
            return False
        return estimate.tokens <= remaining.tokens and estimate.latency_ms <= remaining.latency_ms

    def utility(
        self,
        action: Action,
        risk: float,
        estimate: CostEstimate,
        token_cap: int,
        risk_cap: float,
        dual: DualState,
    ) -> float:
        cfg = self.config
        after = self.risk_after(action, risk)
        if action == Action.EMIT:
            base = 1.0 - risk
        elif action == Action.REVISE:
            base = 1.0 - after - cfg.revise_overhead
        elif action == Action.VERIFY:
            base = 1.0 - after - cfg.verify_overhead
        else:
            base = cfg.abstain_utility
        cost = estimate.tokens / token_cap
        return (
            base
            - dual.lambda_ * max(0.0, cost - cfg.soft_cost_budget)
            - dual.mu * max(0.0, after - risk_cap)
        )

    # ── Decision ───────────────────────────────────────────────────

    def decide(
        self,
        signals: Signals,
        scores: Scores,
        request: Request,
        dual: DualState,
        remaining: RemainingBudget,
        k_last: int = 1,
        tokens_per_candidate: Optional[float] = None,
        round_latency_ms: Optional[float] = None,
    ) -> Decision:
        cfg = self.config
        risk = self.risk(signals, scores, request.has_context)

        estimates = {
            a: self.estimate(a, k_last, tokens_per_candidate, round_latency_ms)
            for a in ACTION_PREFERENCE
        }
        feasible = [a for a in ACTION_PREFERENCE if self.is_feasible(a, estimates[a], remaining)]
        utilities = {
            a.value: self.utility(a, risk, estimates[a], request.budget.token_cap, request.risk_cap, dual)
            for a in feasible
        }

        def make(action: Action, rationale: str, triggers: list[str]) -> Decision:
            decision = Decision(
                action=action,
                rationale=rationale,
                policy_version=cfg.policy_version,
                thresholds_used=dual,
                triggers=triggers,
                risk=risk,
                utilities=utilities,
            )
            logger.info(f"Decision: {action.value} ({rationale})")
            return decision

        # Rule 0: fail-safe
        if risk >= cfg.fail_safe_risk:
            return make(
                Action.ABSTAIN,
                f"Fail-safe: risk={risk:.3f} >= fail_safe_risk={cfg.fail_safe_risk} "
                f"(judge={scores.judge:.2f}, contradiction_mass={signals.contradiction_mass:.2f}, "
                f"rag_coverage={signals.rag_coverage:.2f})",
                ["judge", "contradiction_mass", "rag_coverage"],
            )

        # Rule 1: conformal coverage gate
        if request.has_context and signals.rag_coverage < dual.tau:
            gate = f"rag_coverage={signals.rag_coverage:.3f} < tau={dual.tau:.3f} with context supplied"
            if Action.VERIFY in feasible:
                return make(Action.VERIFY, gate, ["rag_coverage"])
            return make(Action.ABSTAIN, f"{gate}; verify budget exhausted", ["rag_coverage"])

        # Rule 2: contradiction high-water mark
        if signals.contradiction_mass > cfg.contradiction_high_water:
            gate = (
                f"contradiction_mass={signals.contradiction_mass:.3f} > "
                f"high_water={cfg.contradiction_high_water}"
            )
            if Action.REVISE in feasible:
                return make(Action.REVISE, gate, ["contradiction_mass"])
            return make(Action.ABSTAIN, f"{gate}; revise budget exhausted", ["contradiction_mass"])

        # Rule 3: Lagrangian utility over feasible actions
        if feasible:
            best = feasible[0]
            for action in feasible[1:]:
                if utilities[action.value] > utilities[best.value]:
                    best = action
            return make(
                best,
                f"max utility U({best.value})={utilities[best.value]:.3f} at risk={risk:.3f} "
                f"(lambda={dual.lambda_:.3f}, mu={dual.mu:.3f}, risk_cap={request.risk_cap})",
                ["utility"],
            )

        # Rule 4: escape hatch
        return make(Action.ABSTAIN, "No action fits the remaining budget", ["budget"])
