"""
Evaluator
==========

Scores the best candidate of a round with three independent external
scorers, concurrently:

    judge     overall quality / factuality judgement
    prm       process-reward (step-level soundness)
    citation  alignment of the candidate's statements with the context

The best candidate is the one with the highest judge-free heuristic
confidence (self-reported, else mean token probability). The three
calls share no data, so they are issued together with asyncio.gather
and the round costs max(call latencies), each bounded by its own
deadline.

Fail-safe: a scorer that raises, times out or returns a non-finite value
scores 0.0 and is listed in Scores.failed.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Optional

from mstack.adapters.base import Scorer
from mstack.config import MStackConfig
from mstack.evaluate.normalization import ScoreCalibrator
from mstack.monitor.signals import most_confident
from mstack.schemas.request import Candidate, ContextBundle
from mstack.schemas.signals import WORST_SCORES, Scores
from mstack.utils import clip01

logger = logging.getLogger("mstack.evaluate.evaluator")

SCORER_NAMES = ("judge", "prm", "citation")


class Evaluator:
    """
    Runs judge / PRM / citation scorers and normalizes their outputs.

    Usage:
        evaluator = Evaluator(judge=LexicalJudge(), prm=HedgeStepPRM(),
                              citation=OverlapCitationAligner())
        scores = await evaluator.evaluate(candidates, context)

    Args:
        judge, prm, citation: Scorer adapters.
        timeout_s: Per-scorer deadline.
        calibrators: Optional fitted ScoreCalibrator per scorer name.
        calibration_method: Method used by fit_calibrator.
    """

    def __init__(
        self,
        judge: Scorer,
        prm: Scorer,
        citation: Scorer,
        timeout_s: float = 10.0,
        calibrators: Optional[dict[str, ScoreCalibrator]] = None,
        calibration_method: str = "none",
    ):
        self.scorers = {"judge": judge, "prm": prm, "citation": citation}
        self.timeout_s = timeout_s
        self.calibrators = calibrators or {}
        self.calibration_method = calibration_method

    @classmethod
    def from_config(cls, config: MStackConfig, judge: Scorer, prm: Scorer, citation: Scorer) -> "Evaluator":
        return cls(
            judge=judge,
            prm=prm,
            citation=citation,
            timeout_s=config.evaluator.scorer_timeout_s,
            calibration_method=config.evaluator.calibration_method,
        )

    def set_calibrator(self, name: str, calibrator: ScoreCalibrator) -> None:
        if name not in self.scorers:
            raise ValueError(f"Unknown scorer: {name}")
        self.calibrators[name] = calibrator

    def fit_calibrator(self, name: str, raw_scores, labels) -> ScoreCalibrator:
        """Fit a calibrator for one scorer from labeled history and install it."""
        calibrator = ScoreCalibrator(method=self.calibration_method).fit(raw_scores, labels)
        self.set_calibrator(name, calibrator)
        return calibrator

    @staticmethod
    def select_best(candidates: list[Candidate]) -> Optional[Candidate]:
        return most_confident(candidates)

    async def _run_scorer(
        self,
        name: str,
        candidate: Candidate,
        context: Optional[ContextBundle],
    ) -> Optional[float]:
        """Normalized score, or None when the scorer failed."""
        try:
            raw = await asyncio.wait_for(
                self.scorers[name].score(candidate, context),
                timeout=self.timeout_s,
            )
            raw = float(raw)
        except asyncio.TimeoutError:
            logger.warning(f"Scorer '{name}' timed out after {self.timeout_s}s; scoring 0.0")
            return None
        except Exception as e:
            logger.warning(f"Scorer '{name}' failed: {e}; scoring 0.0")
            return None

        if not math.isfinite(raw):
            logger.warning(f"Scorer '{name}' returned {raw}; scoring 0.0")
            return None

        value = clip01(raw)
        calibrator = self.calibrators.get(name)
        if calibrator is not None and calibrator.is_fitted:
            value = clip01(calibrator.calibrate_single(value))
        return value

    async def evaluate(
        self,
        candidates: list[Candidate],
        context: Optional[ContextBundle],
    ) -> Scores:
        best = self.select_best(candidates)
        if best is None:
            return WORST_SCORES

        results = await asyncio.gather(
            *(self._run_scorer(name, best, context) for name in SCORER_NAMES)
        )
        values = dict(zip(SCORER_NAMES, results))
        failed = [name for name, v in values.items() if v is None]

        scores = Scores(
            judge=values["judge"] or 0.0,
            prm=values["prm"] or 0.0,
            citation_score=values["citation"] or 0.0,
            best_candidate_id=best.candidate_id,
            failed=failed,
        )
        logger.debug(
            f"Scores for {best.candidate_id}: judge={scores.judge:.3f} "
            f"prm={scores.prm:.3f} citation={scores.citation_score:.3f}"
        )
        return scores
