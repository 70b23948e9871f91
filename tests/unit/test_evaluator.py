"""
Evaluator Tests
=================

Scorers run concurrently, are clipped to [0, 1], and fail safe:
a scorer that raises, times out or returns a non-finite value
contributes 0.0 and is listed in Scores.failed.
"""

from __future__ import annotations

import time

import numpy as np
import pytest

from mstack.adapters.scripted import FixedScorer
from mstack.evaluate.evaluator import Evaluator
from mstack.evaluate.normalization import ScoreCalibrator, expected_calibration_error
from mstack.schemas.signals import WORST_SCORES

from tests.conftest import make_candidate

pytestmark = pytest.mark.unit


def _evaluator(judge=0.8, prm=0.7, citation=0.6, delay_s=0.0, timeout_s=10.0) -> Evaluator:
    return Evaluator(
        judge=FixedScorer(judge, name="judge", delay_s=delay_s),
        prm=FixedScorer(prm, name="prm", delay_s=delay_s),
        citation=FixedScorer(citation, name="citation", delay_s=delay_s),
        timeout_s=timeout_s,
    )


class TestEvaluate:

    async def test_scores_best_candidate(self):
        candidates = [
            make_candidate("low", candidate_id="c0", confidence=0.3),
            make_candidate("high", candidate_id="c1", confidence=0.9),
        ]
        scores = await _evaluator().evaluate(candidates, None)
        assert (scores.judge, scores.prm, scores.citation_score) == (0.8, 0.7, 0.6)
        assert scores.best_candidate_id == "c1"
        assert scores.failed == []

    async def test_each_scorer_called_once(self):
        evaluator = _evaluator()
        await evaluator.evaluate([make_candidate(candidate_id="c0")], None)
        assert [s.calls for s in evaluator.scorers.values()] == [1, 1, 1]

    async def test_no_candidates_is_worst_case(self):
        assert await _evaluator().evaluate([], None) == WORST_SCORES

    async def test_failing_scorer_scores_zero(self):
        evaluator = _evaluator(prm=RuntimeError("prm down"))
        scores = await evaluator.evaluate([make_candidate(candidate_id="c0")], None)
        assert scores.prm == 0.0
        assert scores.failed == ["prm"]
        assert scores.judge == 0.8

    async def test_timeout_scores_zero(self):
        evaluator = Evaluator(
            judge=FixedScorer(0.9, name="judge", delay_s=0.5),
            prm=FixedScorer(0.9, name="prm"),
            citation=FixedScorer(0.9, name="citation"),
            timeout_s=0.05,
        )
        scores = await evaluator.evaluate([make_candidate(candidate_id="c0")], None)
        assert scores.judge == 0.0
        assert scores.failed == ["judge"]

    @pytest.mark.parametrize("raw", [float("nan"), float("inf")])
    async def test_non_finite_scores_zero(self, raw):
        scores = await _evaluator(citation=raw).evaluate([make_candidate(candidate_id="c0")], None)
        assert scores.citation_score == 0.0
        assert "citation" in scores.failed

    async def test_out_of_range_is_clipped(self):
        scores = await _evaluator(judge=1.7, prm=-0.2).evaluate([make_candidate(candidate_id="c0")], None)
        assert scores.judge == 1.0
        assert scores.prm == 0.0
        assert scores.failed == []

    async def test_scorers_run_concurrently(self):
        evaluator = _evaluator(delay_s=0.3)
        t0 = time.monotonic()
        await evaluator.evaluate([make_candidate(candidate_id="c0")], None)
        assert time.monotonic() - t0 < 0.8

    async def test_fitted_calibrator_is_applied(self):
        evaluator = _evaluator(judge=0.9)
        calibrator = ScoreCalibrator(method="isotonic").fit([0.1, 0.5, 0.9, 0.95], [0, 0, 0, 0])
        evaluator.set_calibrator("judge", calibrator)
        scores = await evaluator.evaluate([make_candidate(candidate_id="c0")], None)
        assert scores.judge == 0.0

    def test_fit_calibrator_uses_configured_method(self, config):
        evaluator = Evaluator.from_config(
            config.model_copy(update={"evaluator": config.evaluator.model_copy(update={"calibration_method": "isotonic"})}),
            judge=FixedScorer(0.9), prm=FixedScorer(0.9), citation=FixedScorer(0.9),
        )
        calibrator = evaluator.fit_calibrator("prm", [0.2, 0.4, 0.6, 0.8], [0, 0, 1, 1])
        assert calibrator.method == "isotonic"
        assert evaluator.calibrators["prm"] is calibrator

    def test_unknown_calibrator_name_rejected(self):
        with pytest.raises(ValueError):
            _evaluator().set_calibrator("oracle", ScoreCalibrator())


class TestScoreCalibrator:

    def test_unknown_method_rejected(self):
        with pytest.raises(ValueError):
            ScoreCalibrator(method="platt")

    def test_unfitted_is_identity(self):
        calibrator = ScoreCalibrator(method="temperature")
        assert calibrator.calibrate_single(0.7) == pytest.approx(0.7)

    def test_temperature_fit_stays_in_bounds(self):
        rng = np.random.default_rng(0)
        scores = rng.uniform(0.05, 0.95, 200)
        labels = (rng.uniform(0, 1, 200) < scores).astype(float)
        calibrator = ScoreCalibrator(method="temperature").fit(scores, labels)
        assert calibrator.is_fitted
        assert 0.1 <= calibrator.temperature <= 10.0
        out = calibrator.calibrate(scores)
        assert np.all((out >= 0) & (out <= 1))

    def test_isotonic_is_monotone(self):
        scores = np.linspace(0, 1, 50)
        labels = (scores > 0.5).astype(float)
        calibrator = ScoreCalibrator(method="isotonic").fit(scores, labels)
        out = calibrator.calibrate(np.linspace(0, 1, 20))
        assert np.all(np.diff(out) >= 0)

    def test_fit_requires_samples(self):
        with pytest.raises(ValueError):
            ScoreCalibrator(method="isotonic").fit([], [])

    def test_ece_perfect_and_worst(self):
        assert expected_calibration_error([1.0, 1.0, 0.0, 0.0], [1, 1, 0, 0]) == 0.0
        assert expected_calibration_error([1.0, 1.0], [0, 0]) == pytest.approx(1.0)
