"""
Calibrator Tests
==================

Dual ascent, conformal τ, rejection of bad outcomes, checkpointing,
and the two single-writer disciplines (lock and worker task).
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from mstack.config import CalibratorConfig
from mstack.learn.calibrator import CalibrationWorker, Calibrator, conformal_quantile
from mstack.schemas.decision import CalibrationOutcome, DualState

pytestmark = pytest.mark.unit


def outcome(risk=1.0, cost=0.4, coverage=None, risk_cap=0.2, budget=0.5) -> dict:
    return {
        "observed_cost": cost,
        "observed_risk": risk,
        "cost_budget": budget,
        "risk_cap": risk_cap,
        "coverage": coverage,
    }


class TestConformalQuantile:

    def test_empty_window(self):
        assert conformal_quantile([], 0.1) == 0.0

    def test_small_sample_uses_maximum(self):
        scores = [0.1 * i for i in range(10)]
        assert conformal_quantile(scores, 0.1) == pytest.approx(0.9)

    def test_monotone_in_alpha(self):
        scores = np.random.default_rng(3).uniform(0, 1, 200)
        taus = [conformal_quantile(scores, a) for a in (0.3, 0.2, 0.1, 0.05)]
        assert taus == sorted(taus)

    def test_is_a_sample_value(self):
        scores = [0.2, 0.4, 0.6, 0.8]
        assert conformal_quantile(scores, 0.5) in scores


class TestDualAscent:

    def test_mu_rises_with_realized_risk(self):
        calibrator = Calibrator(CalibratorConfig(eta=0.05))
        assert calibrator.update(outcome(risk=1.0))
        assert calibrator.snapshot().mu == pytest.approx(0.05 * 0.8)

    def test_multipliers_are_projected_to_zero(self):
        calibrator = Calibrator(CalibratorConfig(eta=0.5))
        calibrator.update(outcome(risk=0.0, cost=0.0))
        state = calibrator.snapshot()
        assert state.lambda_ == 0.0
        assert state.mu == 0.0

    def test_multipliers_never_negative(self):
        calibrator = Calibrator(CalibratorConfig(eta=0.3))
        rng = np.random.default_rng(7)
        for _ in range(200):
            calibrator.update(outcome(risk=float(rng.uniform()), cost=float(rng.uniform(0, 2))))
            state = calibrator.snapshot()
            assert state.lambda_ >= 0.0 and state.mu >= 0.0

    def test_lambda_tracks_overspend(self):
        calibrator = Calibrator(CalibratorConfig(eta=0.1))
        calibrator.update(outcome(cost=1.5, budget=0.5))
        assert calibrator.snapshot().lambda_ == pytest.approx(0.1)

    def test_accepts_model_instances(self):
        calibrator = Calibrator()
        assert calibrator.update(CalibrationOutcome(**outcome()))
        assert calibrator.snapshot().version == 1


class TestRejection:

    @pytest.mark.parametrize("bad", [
        outcome(risk=float("nan")),
        outcome(cost=float("inf")),
        outcome(risk=1.5),
        {"observed_cost": 0.1},
        "not an outcome",
    ])
    def test_bad_outcome_keeps_state(self, bad):
        calibrator = Calibrator(initial=DualState(lambda_=0.2, mu=0.1, tau=0.3, version=4))
        before = calibrator.snapshot()
        assert not calibrator.update(bad)
        assert calibrator.snapshot() == before
        assert calibrator.skipped == 1

    def test_skip_is_logged(self, caplog):
        calibrator = Calibrator()
        with caplog.at_level("WARNING", logger="mstack.learn.calibrator"):
            calibrator.update(outcome(risk=float("nan")))
        assert "calibration skipped" in caplog.text

    def test_batch_skips_only_bad_entries(self):
        calibrator = Calibrator()
        accepted = calibrator.update_batch([outcome(), outcome(risk=float("nan")), outcome()])
        assert accepted == 2
        assert calibrator.snapshot().version == 2


class TestTau:

    def test_recomputed_after_enough_outcomes(self):
        calibrator = Calibrator(CalibratorConfig(recompute_every=5, min_window=5))
        for _ in range(4):
            calibrator.update(outcome(coverage=0.8))
        assert calibrator.snapshot().tau == 0.0
        calibrator.update(outcome(coverage=0.8))
        assert calibrator.snapshot().tau == pytest.approx(0.2)

    def test_outcomes_without_coverage_do_not_fill_window(self):
        calibrator = Calibrator(CalibratorConfig(recompute_every=1, min_window=1))
        calibrator.update(outcome(coverage=None))
        assert calibrator.window_size == 0
        assert calibrator.snapshot().tau == 0.0

    def test_window_is_bounded(self):
        calibrator = Calibrator(CalibratorConfig(window_size=10))
        for _ in range(25):
            calibrator.update(outcome(coverage=0.5))
        assert calibrator.window_size == 10

    def test_recalibrate_on_demand(self):
        calibrator = Calibrator(CalibratorConfig(recompute_every=1000))
        for cov in (0.9, 0.7, 0.5):
            calibrator.update(outcome(coverage=cov))
        tau = calibrator.recalibrate()
        assert tau == pytest.approx(0.5)
        assert calibrator.snapshot().tau == tau

    def test_smaller_alpha_never_lowers_tau(self):
        covs = np.random.default_rng(11).uniform(0.3, 1.0, 100)
        taus = []
        for alpha in (0.3, 0.1, 0.05):
            calibrator = Calibrator(CalibratorConfig(alpha=alpha, recompute_every=1000))
            calibrator.update_batch([outcome(coverage=float(c)) for c in covs])
            taus.append(calibrator.recalibrate())
        assert taus == sorted(taus)


class TestCheckpoint:

    def test_round_trip(self, tmp_path):
        path = tmp_path / "dual.json"
        calibrator = Calibrator(CalibratorConfig(recompute_every=1000))
        calibrator.update_batch([outcome(coverage=0.6), outcome(coverage=0.9)])
        calibrator.save_checkpoint(path)

        restored = Calibrator.load_checkpoint(path)
        assert restored.snapshot() == calibrator.snapshot()
        assert restored.window_size == 2
        assert restored.accepted == 2

    def test_periodic_checkpoint(self, tmp_path):
        path = tmp_path / "state" / "dual.json"
        calibrator = Calibrator(CalibratorConfig(checkpoint_path=path, checkpoint_every=2))
        calibrator.update(outcome())
        assert not path.exists()
        calibrator.update(outcome())
        assert path.exists()


class TestConcurrency:

    def test_threaded_updates_are_serialized(self):
        calibrator = Calibrator(CalibratorConfig(eta=0.01))
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda _: calibrator.update(outcome()), range(200)))
        state = calibrator.snapshot()
        assert state.version == 200
        assert state.mu == pytest.approx(200 * 0.01 * 0.8)

    async def test_worker_applies_queued_outcomes(self):
        calibrator = Calibrator()
        worker = CalibrationWorker(calibrator)
        await worker.start()
        assert worker.running
        for _ in range(10):
            await worker.submit(outcome())
        await worker.submit(outcome(risk=float("nan")))
        await worker.stop()
        assert not worker.running
        assert worker.processed == 11
        assert calibrator.snapshot().version == 10
        assert calibrator.skipped == 1
