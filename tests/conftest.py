"""
M-Stack Test Configuration
============================

Shared fixtures, factories, and helpers for the entire test suite.
"""

from __future__ import annotations

import os
from typing import Optional

import pytest

# ── Ensure test mode ────────────────────────────────────────────
os.environ.setdefault("MSTACK_MODE", "lite")

from mstack.adapters.scripted import FixedCoverage, FixedScorer, ScriptedGenerator, TableEntailment
from mstack.audit.logger import AuditLogger
from mstack.config import MStackConfig
from mstack.learn.calibrator import Calibrator
from mstack.pipeline import MStackPipeline
from mstack.schemas.claim_graph import Claim
from mstack.schemas.decision import Action, Decision, DualState, LogRecord
from mstack.schemas.request import Budget, Candidate, ContextBundle, EvidenceSpan, Request, SourceInfo
from mstack.schemas.signals import Scores, Signals


# ── Markers ─────────────────────────────────────────────────────

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: fast unit tests")
    config.addinivalue_line("markers", "integration: multi-component tests")
    config.addinivalue_line("markers", "slow: tests that take >5s")


# ── Fixtures ────────────────────────────────────────────────────

@pytest.fixture
def config() -> MStackConfig:
    """Default test config (lite mode)."""
    return MStackConfig()


@pytest.fixture
def capital_spans() -> list[str]:
    """Five evidence spans; enough for the context to count as thick."""
    return [
        "Paris is the capital of France.",
        "The Eiffel Tower was built in 1889.",
        "Berlin is the capital of Germany.",
        "The Louvre Museum in Paris houses the Mona Lisa.",
        "France has a population of about 68 million people.",
    ]


# ── Factories ───────────────────────────────────────────────────

def make_context(spans: list[str]) -> ContextBundle:
    """Factory for an evidence bundle with span ids s0, s1, ..."""
    return ContextBundle(spans=tuple(
        EvidenceSpan(span_id=f"s{i}", text=text, source=SourceInfo(title=f"Doc {i}"))
        for i, text in enumerate(spans)
    ))


def make_request(
    query: str = "What is the capital of France?",
    spans: Optional[list[str]] = None,
    route: str = "general",
    token_cap: int = 4000,
    latency_cap_ms: int = 20000,
    risk_cap: float = 0.2,
) -> Request:
    """Factory for creating test requests."""
    return Request(
        query=query,
        context=make_context(spans) if spans is not None else None,
        route=route,
        budget=Budget(token_cap=token_cap, latency_cap_ms=latency_cap_ms),
        risk_cap=risk_cap,
    )


def make_candidate(
    text: str = "Paris is the capital of France.",
    candidate_id: str = "",
    confidence: Optional[float] = None,
    log_probs: tuple[float, ...] = (),
) -> Candidate:
    """Factory for creating test candidates."""
    return Candidate(
        candidate_id=candidate_id,
        text=text,
        token_log_probs=log_probs,
        self_reported_confidence=confidence,
    )


def make_claim(
    text: str = "Paris is the capital of France.",
    claim_id: str = "a:c0",
    candidate_id: Optional[str] = None,
    order: int = 0,
) -> Claim:
    """Factory for creating test claims."""
    return Claim(
        id=claim_id,
        source_candidate_id=candidate_id or claim_id.split(":")[0],
        text=text,
        start=0,
        end=len(text),
        order=order,
    )


def make_signals(**overrides) -> Signals:
    """Healthy signals unless overridden."""
    values = dict(
        k_sample_variance=0.0,
        entropy_prefix_slope=0.2,
        contradiction_mass=0.0,
        rag_coverage=0.9,
        num_candidates=1,
        num_claims=1,
        num_kept_claims=1,
    )
    values.update(overrides)
    return Signals(**values)


def make_scores(**overrides) -> Scores:
    """Confident scores unless overridden."""
    values = dict(judge=0.9, prm=0.9, citation_score=0.9, best_candidate_id="r1-c0")
    values.update(overrides)
    return Scores(**values)


def make_log_record(qid: str = "q-1", output: Optional[str] = "Paris.") -> LogRecord:
    """Factory for an audit record with a minimal decision."""
    return LogRecord(
        qid=qid,
        input_hash="ab" * 32,
        decision=Decision(
            action=Action.EMIT if output else Action.ABSTAIN,
            rationale="test",
            policy_version="cmdp-test",
            thresholds_used=DualState(),
            risk=0.1,
        ),
        output=output,
        cost={"tokens": 10},
    )


def make_pipeline(
    script=None,
    generator=None,
    judge: float | Exception = 0.9,
    prm: float | Exception = 0.9,
    citation: float | Exception = 0.9,
    entailment=None,
    retrieval=None,
    config: Optional[MStackConfig] = None,
    dual: Optional[DualState] = None,
    audit: Optional[AuditLogger] = None,
) -> MStackPipeline:
    """
    Pipeline wired to scripted adapters.

    `script` is a list of candidate texts or Candidate/Exception entries.
    """
    config = config or MStackConfig()
    if generator is None:
        entries = [make_candidate(s) if isinstance(s, str) else s for s in (script or ["Paris is the capital of France."])]
        generator = ScriptedGenerator(entries)
    return MStackPipeline(
        generator=generator,
        entailment=entailment or TableEntailment(),
        retrieval=retrieval or FixedCoverage(0.9),
        judge=FixedScorer(judge, name="judge"),
        prm=FixedScorer(prm, name="prm"),
        citation=FixedScorer(citation, name="citation"),
        config=config,
        calibrator=Calibrator(config.calibrator, initial=dual),
        audit=audit,
    )
