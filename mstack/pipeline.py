"""
M-Stack End-to-End Pipeline
============================

Orchestrates one request through the reliability controller:
    Dynamic-K → Generate (K concurrent samples) → Claim Graph → Signals
    → Evaluate → Decide → (verify / revise re-entry) → Response → Audit

This is the single entry point for running M-Stack on a request.
It manages component wiring, the bounded action loop, budgets,
timing and the fail-safe paths.

Termination:
    Each verify / revise decision consumes one unit of its loop counter
    (LoopConfig.max_verify / max_revise) and the controller never picks
    an action whose counter is spent, so a request runs at most
    max_verify + max_revise + 1 rounds and always ends in emit or abstain.

Abstain paths that bypass the controller:
    - every sample dropped         → "generation unavailable"
    - token budget exceeded        → "token budget exceeded"
    - latency cap exceeded         → "latency budget exceeded" (outstanding calls cancelled)

Two Modes:
    - LITE: heuristic NLI / coverage / scorers; the generator is supplied
    - FULL: OpenAI generator and judge, heuristic NLI / coverage / PRM / citation

Usage:
    from mstack.pipeline import MStackPipeline

    pipeline = MStackPipeline.from_config(config, generator=my_generator)
    response = await pipeline.run(request)
    pipeline.record_outcome(response.log_id, correct=True)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from mstack.adapters.base import (
    BudgetExceeded,
    EntailmentAdapter,
    Generator,
    RetrievalAdapter,
    Scorer,
)
from mstack.audit.logger import AuditLogger, LogSink
from mstack.claims.extractor import ClaimExtractor
from mstack.claims.graph import ClaimGraphBuilder
from mstack.config import MStackConfig, get_config
from mstack.control.controller import DecisionController, RemainingBudget
from mstack.evaluate.evaluator import Evaluator
from mstack.learn.calibrator import Calibrator
from mstack.monitor.dynamic_k import DynamicKSelector
from mstack.monitor.signals import SignalExtractor
from mstack.schemas.claim_graph import ClaimGraph
from mstack.schemas.decision import Action, Decision, LogRecord
from mstack.schemas.request import Candidate, Request, Response
from mstack.schemas.signals import Scores, Signals
from mstack.utils import compute_content_hash, compute_hash, generate_run_id

logger = logging.getLogger("mstack.pipeline")


@dataclass
class PipelineResult:
    """
    Complete trace of one request.

    Contains everything needed for benchmarking, debugging and auditing.
    """
    request: Request
    response: Response
    decision: Decision
    candidates: list[Candidate] = field(default_factory=list)
    best: Optional[Candidate] = None
    signals: Optional[Signals] = None
    scores: Optional[Scores] = None
    graph: Optional[ClaimGraph] = None
    cost: dict[str, Any] = field(default_factory=dict)
    timings: dict[str, float] = field(default_factory=dict)
    trail: list[str] = field(default_factory=list)

    @property
    def emitted(self) -> bool:
        return self.response.action == Action.EMIT

    @property
    def risk(self) -> float:
        return self.decision.risk


@dataclass
class _RequestState:
    """Mutable per-request bookkeeping; survives a latency-cap cancellation."""
    verify_left: int
    revise_left: int
    tokens_used: int = 0
    rounds: int = 0
    dropped: int = 0
    k_requested: list[int] = field(default_factory=list)
    trail: list[str] = field(default_factory=list)
    candidates: list[Candidate] = field(default_factory=list)
    graph: Optional[ClaimGraph] = None
    signals: Optional[Signals] = None
    scores: Optional[Scores] = None
    citations: list[str] = field(default_factory=list)
    kept_claims: list[str] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)

    def add_time(self, key: str, started: float) -> None:
        self.timings[key] = self.timings.get(key, 0.0) + (time.monotonic() - started) * 1000


@dataclass(frozen=True)
class _PendingOutcome:
    normalized_cost: float
    coverage: Optional[float]
    risk_cap: float
    token_cap: int


class MStackPipeline:
    """
    End-to-end M-Stack orchestrator.

    Usage:
        pipeline = MStackPipeline(
            generator=gen, entailment=OverlapEntailment(), retrieval=LexicalCoverage(),
            judge=LexicalJudge(), prm=HedgeStepPRM(), citation=OverlapCitationAligner(),
        )
        result = await pipeline.run_detailed(request)

    Args:
        generator, entailment, retrieval, judge, prm, citation: External adapters.
        config: M-Stack configuration.
        calibrator: Owner of DualState (a fresh one by default).
        audit: Audit logger; None disables auditing.
        extractor: Claim extractor override.
    """

    def __init__(
        self,
        generator: Generator,
        entailment: EntailmentAdapter,
        retrieval: RetrievalAdapter,
        judge: Scorer,
        prm: Scorer,
        citation: Scorer,
        config: Optional[MStackConfig] = None,
        calibrator: Optional[Calibrator] = None,
        audit: Optional[AuditLogger] = None,
        extractor: Optional[ClaimExtractor] = None,
    ):
        self.config = config or get_config()
        self.generator = generator
        self.dynamic_k = DynamicKSelector(self.config.dynamic_k)
        self.graph_builder = ClaimGraphBuilder.from_config(self.config, entailment, extractor)
        self.signal_extractor = SignalExtractor(self.config.signals, retrieval)
        self.evaluator = Evaluator.from_config(self.config, judge, prm, citation)
        self.controller = DecisionController.from_config(self.config)
        self.calibrator = calibrator or Calibrator(self.config.calibrator)
        self.audit = audit
        self._pending: OrderedDict[str, _PendingOutcome] = OrderedDict()

        logger.info(
            f"Pipeline initialized in {self.config.mode.value} mode "
            f"(config {self.config.config_hash()}, policy {self.controller.policy_version})"
        )

    @property
    def max_rounds(self) -> int:
        return self.config.loop.max_verify + self.config.loop.max_revise + 1

    @classmethod
    def from_config(
        cls,
        config: Optional[MStackConfig] = None,
        generator: Optional[Generator] = None,
        sink: Optional[LogSink] = None,
        audit: bool = True,
    ) -> "MStackPipeline":
        """
        Wire adapters for the configured mode.

        LITE needs a generator (scripted candidates or a custom adapter);
        FULL builds the OpenAI generator and judge from the API key.
        """
        from mstack.adapters.heuristic import (
            HedgeStepPRM,
            LexicalCoverage,
            LexicalJudge,
            OverlapCitationAligner,
            OverlapEntailment,
        )

        config = config or get_config()
        judge: Scorer = LexicalJudge()

        if config.is_full:
            if not config.openai_api_key:
                raise ValueError("FULL mode requires MSTACK_OPENAI_API_KEY")
            from mstack.adapters.openai_adapters import OpenAIGenerator, OpenAIJudge
            generator = generator or OpenAIGenerator(
                api_key=config.openai_api_key,
                model=config.openai_model,
                temperature=config.generation_temperature,
                timeout_s=config.evaluator.scorer_timeout_s * 3,
            )
            judge = OpenAIJudge(
                api_key=config.openai_api_key,
                model=config.judge_model,
                timeout_s=config.evaluator.scorer_timeout_s,
            )
        elif generator is None:
            raise ValueError("LITE mode needs a generator (e.g. ScriptedGenerator)")

        audit_logger = None
        if audit:
            if sink is None:
                config.ensure_dirs()
            audit_logger = AuditLogger.from_config(config, sink=sink)

        return cls(
            generator=generator,
            entailment=OverlapEntailment(),
            retrieval=LexicalCoverage(),
            judge=judge,
            prm=HedgeStepPRM(),
            citation=OverlapCitationAligner(min_overlap=config.signals.coverage_min_overlap),
            config=config,
            calibrator=Calibrator.from_config(config),
            audit=audit_logger,
        )

    # ── Public API ─────────────────────────────────────────────────

    async def run(self, request: Request) -> Response:
        """Run one request; always returns emit or abstain."""
        return (await self.run_detailed(request)).response

    async def run_detailed(self, request: Request) -> PipelineResult:
        qid = generate_run_id("q")
        started = time.monotonic()
        state = _RequestState(
            verify_left=self.config.loop.max_verify,
            revise_left=self.config.loop.max_revise,
        )
        cap_s = request.budget.latency_cap_ms / 1000.0

        try:
            decision = await asyncio.wait_for(self._loop(request, state, started), timeout=cap_s)
        except asyncio.TimeoutError:
            decision = self._abstain(
                f"latency budget exceeded ({request.budget.latency_cap_ms}ms)", ["latency"]
            )
        except BudgetExceeded as e:
            decision = self._abstain(f"token budget exceeded: {e}", ["tokens"])

        if decision.action.is_terminal and (not state.trail or state.trail[-1] != decision.action.value):
            state.trail.append(decision.action.value)
        state.timings["total_ms"] = (time.monotonic() - started) * 1000

        return await self._finish(qid, request, state, decision)

    def record_outcome(
        self,
        log_id: str,
        correct: Union[bool, float],
        realized_tokens: Optional[int] = None,
    ) -> bool:
        """
        Feed the eventual ground truth of a past request to the Calibrator.

        Args:
            log_id: Response.log_id of the request.
            correct: True / False, or a graded correctness in [0, 1].
            realized_tokens: Tokens actually spent, if known better than the log.

        Returns:
            True if the Calibrator accepted the update.
        """
        pending = self._pending.pop(log_id, None)
        if pending is None:
            logger.warning(f"Outcome for unknown or expired log_id {log_id}; ignored")
            return False
        cost = pending.normalized_cost
        if realized_tokens is not None:
            cost = realized_tokens / pending.token_cap
        return self.calibrator.update({
            "qid": log_id,
            "observed_cost": cost,
            "observed_risk": 1.0 - float(correct),
            "cost_budget": self.config.calibrator.cost_target,
            "risk_cap": pending.risk_cap,
            "coverage": pending.coverage,
        })

    async def drain_audit(self) -> None:
        if self.audit is not None:
            await self.audit.drain()

    # ── Loop ───────────────────────────────────────────────────────

    async def _loop(self, request: Request, state: _RequestState, started: float) -> Decision:
        token_cap = request.budget.token_cap
        k = self.dynamic_k.select(request).k
        per_candidate = self.config.controller.default_tokens_per_candidate
        affordable = max(1, token_cap // per_candidate)
        if k > affordable:
            logger.info(f"K={k} clipped to {affordable} by token_cap={token_cap}")
            k = affordable
        query = request.query

        for _ in range(self.max_rounds):
            state.rounds += 1
            state.k_requested.append(k)
            round_started = time.monotonic()

            t0 = time.monotonic()
            candidates = await self._generate(query, request, k, state, started)
            state.add_time("generate_ms", t0)
            state.candidates = candidates
            if not candidates:
                return self._abstain("generation unavailable: all samples dropped", ["generation"])

            spent = sum(c.n_tokens for c in candidates)
            state.tokens_used += spent
            if state.tokens_used > token_cap:
                raise BudgetExceeded(f"{state.tokens_used} > token_cap={token_cap}")

            t0 = time.monotonic()
            graph = await self.graph_builder.build(candidates)
            consistency = self.graph_builder.consistent_subgraph(graph)
            state.graph = graph
            state.add_time("claims_ms", t0)

            t0 = time.monotonic()
            signals, coverage = await self.signal_extractor.extract(
                candidates, graph, consistency, request.context
            )
            state.signals = signals
            state.citations = coverage.citations
            state.kept_claims = [graph.get_claim(cid).text for cid in consistency.kept]
            state.add_time("signals_ms", t0)

            t0 = time.monotonic()
            state.scores = await self.evaluator.evaluate(candidates, request.context)
            state.add_time("evaluate_ms", t0)

            t0 = time.monotonic()
            elapsed_ms = (time.monotonic() - started) * 1000
            remaining = RemainingBudget(
                tokens=max(0, token_cap - state.tokens_used),
                latency_ms=max(0.0, request.budget.latency_cap_ms - elapsed_ms),
                verify_left=state.verify_left,
                revise_left=state.revise_left,
            )
            decision = self.controller.decide(
                signals,
                state.scores,
                request,
                self.calibrator.snapshot(),
                remaining,
                k_last=k,
                tokens_per_candidate=spent / len(candidates),
                round_latency_ms=(time.monotonic() - round_started) * 1000,
            )
            state.add_time("decide_ms", t0)
            state.trail.append(decision.action.value)

            if decision.action.is_terminal:
                return decision
            if decision.action == Action.VERIFY:
                state.verify_left -= 1
                k = self.config.loop.verify_k
            else:
                state.revise_left -= 1
                query = self._revision_query(request.query, state.kept_claims)

        return self._abstain(f"action loop bound of {self.max_rounds} rounds reached", ["loop"])

    async def _generate(
        self,
        query: str,
        request: Request,
        k: int,
        state: _RequestState,
        started: float,
    ) -> list[Candidate]:
        """
        Issue K single-sample calls concurrently; drop the ones that fail.

        Samples share one deadline, `generation_share` of the latency still
        left, so a straggler is dropped while the round keeps the rest.
        """
        elapsed_ms = (time.monotonic() - started) * 1000
        remaining_ms = max(0.0, request.budget.latency_cap_ms - elapsed_ms)
        timeout_s = remaining_ms * self.config.loop.generation_share / 1000.0

        async def sample() -> list[Candidate]:
            return await asyncio.wait_for(
                self.generator.generate(query, request.context, 1),
                timeout=timeout_s,
            )

        results = await asyncio.gather(*(sample() for _ in range(k)), return_exceptions=True)

        candidates: list[Candidate] = []
        dropped = 0
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception) or not result:
                state.dropped += 1
                dropped += 1
                reason = type(result).__name__ if isinstance(result, Exception) else "empty result"
                logger.warning(f"Candidate dropped ({reason}); K degrades to {k - dropped}")
                continue
            candidates.append(result[0].model_copy(
                update={"candidate_id": f"r{state.rounds}-c{len(candidates)}"}
            ))
        return candidates

    @staticmethod
    def _revision_query(query: str, kept_claims: list[str]) -> str:
        if not kept_claims:
            return query
        bullet_list = "\n".join(f"- {c}" for c in kept_claims)
        return (
            f"{query}\n\nStatements the previous drafts agreed on:\n{bullet_list}\n"
            f"Revise the answer so it is consistent with these statements."
        )

    def _abstain(self, rationale: str, triggers: list[str]) -> Decision:
        logger.info(f"Decision: abstain ({rationale})")
        return Decision(
            action=Action.ABSTAIN,
            rationale=rationale,
            policy_version=self.controller.policy_version,
            thresholds_used=self.calibrator.snapshot(),
            triggers=triggers,
            risk=1.0,
        )

    # ── Response + audit ───────────────────────────────────────────

    async def _finish(
        self,
        qid: str,
        request: Request,
        state: _RequestState,
        decision: Decision,
    ) -> PipelineResult:
        best = None
        if state.scores is not None and state.candidates:
            best = next(
                (c for c in state.candidates if c.candidate_id == state.scores.best_candidate_id),
                None,
            )

        emit = decision.action == Action.EMIT and best is not None
        if decision.action == Action.EMIT and best is None:
            decision = self._abstain("no scored candidate to emit", ["generation"])

        response = Response(
            action=Action.EMIT if emit else Action.ABSTAIN,
            text=best.text if emit else None,
            citations=list(state.citations) if emit else [],
            confidence=1.0 - decision.risk,
            log_id=qid,
            rationale=decision.rationale,
        )

        cost = {
            "tokens": state.tokens_used,
            "normalized_cost": state.tokens_used / request.budget.token_cap,
            "latency_ms": round(state.timings.get("total_ms", 0.0), 3),
            "rounds": state.rounds,
            "dropped_candidates": state.dropped,
            "k_requested": list(state.k_requested),
            "actions": list(state.trail),
        }

        self._remember(qid, request, state, cost["normalized_cost"])

        if self.audit is not None:
            record = LogRecord(
                qid=qid,
                input_hash=compute_content_hash(request.model_dump(mode="json")),
                candidates=[
                    {
                        "candidate_id": c.candidate_id,
                        "text_hash": compute_hash(c.text, length=64),
                        "n_tokens": c.n_tokens,
                    }
                    for c in state.candidates
                ],
                signals=state.signals,
                scores=state.scores,
                decision=decision,
                output=response.text,
                cost=cost,
            )
            if self.audit.blocking:
                await self.audit.append(record)
            else:
                self.audit.submit(record)

        logger.info(
            f"Request {qid}: {response.action.value} after {state.rounds} round(s) "
            f"[{' → '.join(state.trail)}] | tokens={state.tokens_used} "
            f"| {state.timings['total_ms']:.0f}ms"
        )

        return PipelineResult(
            request=request,
            response=response,
            decision=decision,
            candidates=state.candidates,
            best=best,
            signals=state.signals,
            scores=state.scores,
            graph=state.graph,
            cost=cost,
            timings=state.timings,
            trail=state.trail,
        )

    def _remember(self, qid: str, request: Request, state: _RequestState, normalized_cost: float) -> None:
        coverage = None
        if request.has_context and state.signals is not None:
            coverage = state.signals.rag_coverage
        self._pending[qid] = _PendingOutcome(
            normalized_cost=normalized_cost,
            coverage=coverage,
            risk_cap=request.risk_cap,
            token_cap=request.budget.token_cap,
        )
        while len(self._pending) > self.config.calibrator.max_pending_outcomes:
            self._pending.popitem(last=False)
