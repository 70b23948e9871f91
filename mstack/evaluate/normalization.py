"""
Score Normalization & Calibration
===================================

Every scorer output is clipped to [0, 1] before it reaches the
controller. Raw scorer confidences are often miscalibrated: a judge
that says 0.85 may be right only 70% of the time at that level.
A ScoreCalibrator fitted on labelled outcomes remaps them.

Methods:
    - "temperature": learns T in sigmoid(logit(s) / T) by minimizing NLL
    - "isotonic":    non-parametric monotone mapping
    - "none":        identity

Data Flow:
    raw score → clip01 → ScoreCalibrator.calibrate_single → Scores
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

logger = logging.getLogger("mstack.evaluate.normalization")

CALIBRATION_METHODS = ("none", "temperature", "isotonic")
_EPS = 1e-7


def expected_calibration_error(scores, labels, n_bins: int = 10) -> float:
    """
    ECE = Σ (|B_k| / N) · |accuracy(B_k) − confidence(B_k)|

    Lower is better; 0 for a perfectly calibrated scorer.
    """
    scores = np.asarray(scores, dtype=np.float64)
    labels = np.asarray(labels, dtype=np.float64)
    if len(scores) == 0:
        return 0.0

    edges = np.linspace(0, 1, n_bins + 1)
    ece = 0.0
    for i in range(n_bins):
        if i == 0:
            mask = (scores >= edges[0]) & (scores <= edges[1])
        else:
            mask = (scores > edges[i]) & (scores <= edges[i + 1])
        count = mask.sum()
        if count > 0:
            ece += (count / len(scores)) * abs(labels[mask].mean() - scores[mask].mean())
    return float(ece)


class ScoreCalibrator:
    """
    Maps raw scorer outputs to calibrated probabilities.

    Usage:
        calibrator = ScoreCalibrator(method="isotonic")
        calibrator.fit(raw_scores, correct_labels)
        judge = calibrator.calibrate_single(0.8)

    Args:
        method: "temperature", "isotonic" or "none".
        n_bins: Bins used for ECE.
    """

    def __init__(self, method: str = "none", n_bins: int = 10):
        if method not in CALIBRATION_METHODS:
            raise ValueError(f"Unknown calibration method: {method}")
        self.method = method
        self.n_bins = n_bins
        self._isotonic = None
        self._temperature: float = 1.0
        self._is_fitted: bool = False

    @property
    def is_fitted(self) -> bool:
        return self._is_fitted

    @property
    def temperature(self) -> float:
        return self._temperature

    def fit(self, raw_scores, labels) -> "ScoreCalibrator":
        raw_scores = np.asarray(raw_scores, dtype=np.float64)
        labels = np.asarray(labels, dtype=np.float64)
        if len(raw_scores) != len(labels):
            raise ValueError("raw_scores and labels must have same length")
        if len(raw_scores) == 0:
            raise ValueError("Cannot fit a calibrator on zero samples")

        if self.method == "temperature":
            self._fit_temperature(raw_scores, labels)
        elif self.method == "isotonic":
            self._fit_isotonic(raw_scores, labels)

        self._is_fitted = True
        logger.info(f"Score calibrator fitted ({self.method}) on {len(raw_scores)} samples")
        return self

    def _fit_temperature(self, scores: np.ndarray, labels: np.ndarray) -> None:
        from scipy.optimize import minimize_scalar

        clipped = np.clip(scores, _EPS, 1 - _EPS)
        logits = np.log(clipped / (1 - clipped))

        def nll(t):
            p = np.clip(1 / (1 + np.exp(-logits / max(t, _EPS))), _EPS, 1 - _EPS)
            return float(np.mean(-(labels * np.log(p) + (1 - labels) * np.log(1 - p))))

        result = minimize_scalar(nll, bounds=(0.1, 10.0), method="bounded")
        self._temperature = float(result.x)
        logger.info(f"Temperature scaling: T = {self._temperature:.4f}")

    def _fit_isotonic(self, scores: np.ndarray, labels: np.ndarray) -> None:
        from sklearn.isotonic import IsotonicRegression

        self._isotonic = IsotonicRegression(y_min=0.0, y_max=1.0, out_of_bounds="clip")
        self._isotonic.fit(scores, labels)

    def calibrate(self, raw_scores) -> np.ndarray:
        raw_scores = np.clip(np.asarray(raw_scores, dtype=np.float64), 0.0, 1.0)
        if self.method == "none" or not self._is_fitted:
            return raw_scores
        if self.method == "temperature":
            clipped = np.clip(raw_scores, _EPS, 1 - _EPS)
            logits = np.log(clipped / (1 - clipped))
            return 1 / (1 + np.exp(-logits / self._temperature))
        return np.asarray(self._isotonic.predict(raw_scores), dtype=np.float64)

    def calibrate_single(self, raw_score: float) -> float:
        return float(self.calibrate(np.array([raw_score]))[0])

    def compute_ece(self, scores, labels, n_bins: Optional[int] = None) -> float:
        return expected_calibration_error(scores, labels, n_bins or self.n_bins)
