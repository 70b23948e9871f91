"""
Calibrator (Learn)
===================

The only writer of DualState. Consumes observed outcomes of past
decisions, as they become available, and updates:

    λ ← max(0, λ + η·(observed_cost − cost_budget))
    μ ← max(0, μ + η·(observed_risk − risk_cap))
    τ ← conformal (1 − α)-quantile of (1 − coverage) over a sliding window

τ is recomputed every `recompute_every` accepted updates once the window
holds at least `min_window` outcomes, and on demand via recalibrate().
The quantile uses the finite-sample level ⌈(n + 1)(1 − α)⌉ / n (capped
at 1) with the "higher" interpolation, so τ never decreases when α
decreases.

Single-writer discipline:
    Updates run under a threading.Lock. DualState is frozen; an update
    builds a new instance and swaps the reference, so snapshot() always
    returns a consistent (λ, μ, τ, version).

    CalibrationWorker offers the alternative discipline: one asyncio task
    owns the Calibrator and drains an outcome queue sequentially.

Bad outcomes (schema violations, NaN / inf) are rejected one at a time:
the prior DualState is kept and a "calibration skipped" event is logged.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import threading
from collections import deque
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np
from pydantic import ValidationError

from mstack.config import CalibratorConfig, MStackConfig
from mstack.schemas.decision import CalibrationOutcome, DualState, is_finite

logger = logging.getLogger("mstack.learn.calibrator")

OutcomeLike = Union[CalibrationOutcome, dict[str, Any]]


def conformal_quantile(scores, alpha: float) -> float:
    """
    Finite-sample conformal (1 − α)-quantile of nonconformity scores.

    Returns 0.0 for an empty sample.
    """
    values = np.asarray(scores, dtype=np.float64)
    n = len(values)
    if n == 0:
        return 0.0
    level = min(1.0, math.ceil((n + 1) * (1.0 - alpha)) / n)
    return float(np.quantile(values, level, method="higher"))


class Calibrator:
    """
    Dual ascent on (λ, μ) plus conformal calibration of τ.

    Usage:
        calibrator = Calibrator.from_config(config)
        calibrator.update(CalibrationOutcome(observed_cost=0.4, observed_risk=1.0,
                                             cost_budget=0.5, risk_cap=0.2, coverage=0.7))
        dual = calibrator.snapshot()

    Args:
        config: Step size, α, window and checkpoint settings.
        initial: Starting DualState (λ = μ = τ = 0 by default).
    """

    def __init__(self, config: Optional[CalibratorConfig] = None, initial: Optional[DualState] = None):
        self.config = config or CalibratorConfig()
        self._state = initial or DualState()
        self._window: deque[float] = deque(maxlen=self.config.window_size)
        self._lock = threading.Lock()
        self._since_recompute = 0
        self.accepted = 0
        self.skipped = 0

    @classmethod
    def from_config(cls, config: MStackConfig) -> "Calibrator":
        cfg = config.calibrator
        if cfg.checkpoint_path is not None and Path(cfg.checkpoint_path).exists():
            return cls.load_checkpoint(cfg.checkpoint_path, config=cfg)
        return cls(config=cfg)

    # ── Reads ──────────────────────────────────────────────────────

    def snapshot(self) -> DualState:
        """Consistent copy of the current DualState."""
        with self._lock:
            return self._state

    @property
    def window_size(self) -> int:
        with self._lock:
            return len(self._window)

    # ── Updates ────────────────────────────────────────────────────

    def _validate(self, outcome: OutcomeLike) -> Optional[CalibrationOutcome]:
        try:
            if isinstance(outcome, dict):
                outcome = CalibrationOutcome.model_validate(outcome)
            elif not isinstance(outcome, CalibrationOutcome):
                raise TypeError(f"expected CalibrationOutcome, got {type(outcome).__name__}")
        except (ValidationError, TypeError) as e:
            self._skip(f"invalid outcome: {e}")
            return None

        values = [outcome.observed_cost, outcome.observed_risk, outcome.cost_budget, outcome.risk_cap]
        if outcome.coverage is not None:
            values.append(outcome.coverage)
        if not is_finite(*values):
            self._skip(f"non-finite outcome values {values}")
            return None
        return outcome

    def _skip(self, reason: str) -> None:
        self.skipped += 1
        logger.warning(f"calibration skipped: {reason}")

    def update(self, outcome: OutcomeLike) -> bool:
        """
        Apply one outcome. Returns False (state unchanged) when rejected.
        """
        checked = self._validate(outcome)
        if checked is None:
            return False

        eta = self.config.eta
        checkpoint_due = False
        with self._lock:
            state = self._state
            new_lambda = max(0.0, state.lambda_ + eta * (checked.observed_cost - checked.cost_budget))
            new_mu = max(0.0, state.mu + eta * (checked.observed_risk - checked.risk_cap))
            if not is_finite(new_lambda, new_mu):
                self._skip(f"update produced non-finite multipliers ({new_lambda}, {new_mu})")
                return False

            if checked.coverage is not None:
                self._window.append(1.0 - checked.coverage)
            self._since_recompute += 1

            tau = state.tau
            if (
                self._since_recompute >= self.config.recompute_every
                and len(self._window) >= self.config.min_window
            ):
                tau = self._quantile_locked()
                self._since_recompute = 0

            self._state = DualState(
                lambda_=new_lambda,
                mu=new_mu,
                tau=tau,
                version=state.version + 1,
            )
            self.accepted += 1
            checkpoint_due = (
                self.config.checkpoint_path is not None
                and self.accepted % self.config.checkpoint_every == 0
            )
            new_state = self._state

        logger.debug(
            f"Calibration v{new_state.version}: lambda={new_state.lambda_:.4f} "
            f"mu={new_state.mu:.4f} tau={new_state.tau:.4f}"
        )
        if checkpoint_due:
            self.save_checkpoint()
        return True

    def update_batch(self, outcomes: list[OutcomeLike]) -> int:
        """Apply outcomes in order; returns the number accepted."""
        return sum(1 for o in outcomes if self.update(o))

    def _quantile_locked(self) -> float:
        return min(1.0, max(0.0, conformal_quantile(list(self._window), self.config.alpha)))

    def recalibrate(self) -> float:
        """Recompute τ from the current window now; returns the new τ."""
        with self._lock:
            if not self._window:
                return self._state.tau
            tau = self._quantile_locked()
            self._state = self._state.model_copy(update={"tau": tau})
            self._since_recompute = 0
        logger.info(f"Recalibrated tau={tau:.4f} from {self.window_size} outcomes")
        return tau

    # ── Checkpointing ──────────────────────────────────────────────

    def save_checkpoint(self, path: Optional[Union[str, Path]] = None) -> Path:
        target = Path(path or self.config.checkpoint_path or "dual_state.json")
        with self._lock:
            payload = {
                "state": self._state.model_dump(mode="json"),
                "window": list(self._window),
                "accepted": self.accepted,
                "skipped": self.skipped,
            }
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(payload, f, indent=2)
        tmp.replace(target)
        logger.info(f"DualState checkpoint saved to {target} (v{payload['state']['version']})")
        return target

    @classmethod
    def load_checkpoint(
        cls,
        path: Union[str, Path],
        config: Optional[CalibratorConfig] = None,
    ) -> "Calibrator":
        with open(path) as f:
            payload = json.load(f)
        calibrator = cls(config=config, initial=DualState.model_validate(payload["state"]))
        for score in payload.get("window", []):
            if is_finite(score):
                calibrator._window.append(float(score))
        calibrator.accepted = int(payload.get("accepted", 0))
        calibrator.skipped = int(payload.get("skipped", 0))
        logger.info(f"DualState restored from {path} (v{calibrator.snapshot().version})")
        return calibrator


class CalibrationWorker:
    """
    Single owning task that applies queued outcomes sequentially.

    Usage:
        worker = CalibrationWorker(calibrator)
        await worker.start()
        await worker.submit(outcome)
        await worker.stop()      # drains the queue first
    """

    def __init__(self, calibrator: Calibrator, maxsize: int = 0):
        self.calibrator = calibrator
        self._queue: asyncio.Queue[OutcomeLike] = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task[None]] = None
        self.processed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Calibration worker started")

    async def submit(self, outcome: OutcomeLike) -> None:
        await self._queue.put(outcome)

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info(f"Calibration worker stopped after {self.processed} outcomes")

    async def _run(self) -> None:
        while True:
            outcome = await self._queue.get()
            try:
                self.calibrator.update(outcome)
                self.processed += 1
            finally:
                self._queue.task_done()
