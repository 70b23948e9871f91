"""
Baseline Systems
==================

Comparison systems for the benchmark table:
    1. Base: one sample, always answered
    2. SelfConsistency: K=5 samples, majority vote on the final answer
    3. JudgeGate: one sample, answered only when the judge score clears a threshold
    4. MStackSystem: the full reliability controller

Every system answers a BenchItem with a SystemOutput, so the benchmark
scores them with the same metric functions.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from mstack.adapters.base import Generator, Scorer
from mstack.monitor.signals import final_answer
from mstack.schemas.request import Budget, Candidate, Request
from mstack.utils import normalize_whitespace

from eval.synthetic import BenchItem

logger = logging.getLogger("mstack.eval.baselines")


@dataclass
class SystemOutput:
    """What one system did with one benchmark item."""
    emitted: bool
    correct: bool
    confidence: float
    text: Optional[str] = None


class BaseBaseline(ABC):
    """Abstract base for benchmark systems."""

    name: str = "baseline"

    @abstractmethod
    async def answer(self, item: BenchItem) -> SystemOutput:
        ...


class Base(BaseBaseline):
    """
    Baseline 1: a single sample, always answered.

    Confidence is the sample's own token-probability confidence. This is
    the lower bound: what the generator does with no controller at all.
    """

    name = "Base"

    def __init__(self, generator: Generator):
        self.generator = generator

    async def answer(self, item: BenchItem) -> SystemOutput:
        candidates = await self.generator.generate(item.query, item.context, 1)
        if not candidates:
            return SystemOutput(emitted=False, correct=False, confidence=0.0)
        candidate = candidates[0]
        return SystemOutput(
            emitted=True,
            correct=item.is_correct(candidate.text),
            confidence=candidate.heuristic_confidence,
            text=candidate.text,
        )


class SelfConsistency(BaseBaseline):
    """
    Baseline 2: majority vote over K samples.

    Always answers with the first sample carrying the majority answer;
    confidence is the majority fraction.
    """

    name = "SelfConsistency"

    def __init__(self, generator: Generator, k: int = 5):
        self.generator = generator
        self.k = k

    async def answer(self, item: BenchItem) -> SystemOutput:
        batches = await asyncio.gather(
            *(self.generator.generate(item.query, item.context, 1) for _ in range(self.k))
        )
        candidates: list[Candidate] = [c for batch in batches for c in batch]
        if not candidates:
            return SystemOutput(emitted=False, correct=False, confidence=0.0)

        answers = [normalize_whitespace(final_answer(c.text)).lower() for c in candidates]
        majority, count = Counter(answers).most_common(1)[0]
        chosen = candidates[answers.index(majority)]
        return SystemOutput(
            emitted=True,
            correct=item.is_correct(chosen.text),
            confidence=count / len(candidates),
            text=chosen.text,
        )


class JudgeGate(BaseBaseline):
    """
    Baseline 3: one sample, gated by a grounding judge.

    Answers only when the judge score is at least `threshold`;
    the judge score doubles as the confidence.
    """

    name = "JudgeGate"

    def __init__(self, generator: Generator, judge: Scorer, threshold: float = 0.5):
        self.generator = generator
        self.judge = judge
        self.threshold = threshold

    async def answer(self, item: BenchItem) -> SystemOutput:
        candidates = await self.generator.generate(item.query, item.context, 1)
        if not candidates:
            return SystemOutput(emitted=False, correct=False, confidence=0.0)
        candidate = candidates[0]
        score = await self.judge.score(candidate, item.context)
        return SystemOutput(
            emitted=score >= self.threshold,
            correct=item.is_correct(candidate.text),
            confidence=score,
            text=candidate.text,
        )


class MStackSystem(BaseBaseline):
    """
    The reliability controller, learning online from each outcome.

    Correctness is judged on the best-scored candidate even when the
    request was abstained, so ECE and AURC cover every item. An abstained
    request feeds the Calibrator a zero realized risk (nothing wrong was
    said).

    Args:
        pipeline: An MStackPipeline.
        budget: Per-request caps.
        risk_cap: Per-request risk cap.
        learn: Feed outcomes back through record_outcome.
    """

    name = "MStack"

    def __init__(self, pipeline, budget: Optional[Budget] = None, risk_cap: float = 0.2, learn: bool = True):
        self.pipeline = pipeline
        self.budget = budget or Budget(token_cap=4000, latency_cap_ms=20000)
        self.risk_cap = risk_cap
        self.learn = learn
        self.results = []

    async def answer(self, item: BenchItem) -> SystemOutput:
        request = Request(
            query=item.query,
            context=item.context,
            route=item.route,
            budget=self.budget,
            risk_cap=self.risk_cap,
        )
        result = await self.pipeline.run_detailed(request)
        self.results.append(result)

        text = result.best.text if result.best is not None else None
        correct = item.is_correct(text)
        if self.learn:
            self.pipeline.record_outcome(
                result.response.log_id,
                correct=correct or not result.emitted,
            )
        return SystemOutput(
            emitted=result.emitted,
            correct=correct,
            confidence=result.response.confidence,
            text=text,
        )
