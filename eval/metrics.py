"""
Evaluation Metrics
===================

Shared metric functions for the offline benchmark kit.
Categorized into:
    - Hallucination metrics: wrong answers emitted, answer coverage
    - Calibration metrics: ECE, reliability curves
    - Selective-prediction metrics: risk-coverage curve, AURC, risk at coverage
    - Latency metrics: per-stage and end-to-end timing

Every function takes per-request lists (one entry per benchmark item),
so the same code scores the baselines and the M-Stack pipeline.
"""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger("mstack.eval.metrics")


# ───────────────────── Hallucination Metrics ────────────────────

def hallucination_rate(emitted: list[bool], correct: list[bool]) -> float:
    """
    Fraction of requests answered with a wrong answer.

    Abstentions are not hallucinations: they count in the denominator
    but never in the numerator.
    """
    if len(emitted) != len(correct):
        raise ValueError("emitted and correct must have same length")
    if not emitted:
        return 0.0
    wrong = sum(1 for e, c in zip(emitted, correct) if e and not c)
    return wrong / len(emitted)


def answer_coverage(emitted: list[bool]) -> float:
    """Fraction of requests that received an answer."""
    if not emitted:
        return 0.0
    return sum(emitted) / len(emitted)


def selective_risk(emitted: list[bool], correct: list[bool]) -> float:
    """Error rate among emitted answers (0 when nothing was emitted)."""
    answered = [c for e, c in zip(emitted, correct) if e]
    if not answered:
        return 0.0
    return 1.0 - sum(answered) / len(answered)


# ───────────────────── Calibration Metrics ──────────────────────

def compute_ece(
    confidences: list[float],
    correct: list[bool],
    n_bins: int = 15,
) -> float:
    """
    Expected Calibration Error (Naeini et al., 2015).

    ECE = Σ (|B_m| / n) * |acc(B_m) - conf(B_m)|

    The first bin is closed on the left so confidence 0.0 is counted.

    Returns:
        ECE in [0, 1]. Lower = better calibrated.
    """
    if not confidences:
        return 0.0

    confs = np.array(confidences, dtype=float)
    accs = np.array(correct, dtype=float)
    bin_boundaries = np.linspace(0.0, 1.0, n_bins + 1)

    ece = 0.0
    for i in range(n_bins):
        lower, upper = bin_boundaries[i], bin_boundaries[i + 1]
        if i == 0:
            mask = (confs >= lower) & (confs <= upper)
        else:
            mask = (confs > lower) & (confs <= upper)
        if mask.sum() == 0:
            continue
        ece += (mask.sum() / len(confs)) * abs(accs[mask].mean() - confs[mask].mean())

    return float(ece)


def reliability_diagram_data(
    confidences: list[float],
    correct: list[bool],
    n_bins: int = 10,
) -> dict[str, list[float]]:
    """
    Data for a reliability diagram.

    Returns:
        Dict with bin_centers, bin_accuracies, bin_counts, bin_confidences.
    """
    confs = np.array(confidences, dtype=float)
    accs = np.array(correct, dtype=float)
    bin_boundaries = np.linspace(0.0, 1.0, n_bins + 1)

    centers, accuracies, counts, avg_confs = [], [], [], []
    for i in range(n_bins):
        lower, upper = bin_boundaries[i], bin_boundaries[i + 1]
        mask = (confs >= lower) & (confs <= upper) if i == 0 else (confs > lower) & (confs <= upper)
        centers.append(float((lower + upper) / 2))
        counts.append(int(mask.sum()))
        if mask.sum() > 0:
            accuracies.append(float(accs[mask].mean()))
            avg_confs.append(float(confs[mask].mean()))
        else:
            accuracies.append(0.0)
            avg_confs.append(0.0)

    return {
        "bin_centers": centers,
        "bin_accuracies": accuracies,
        "bin_counts": counts,
        "bin_confidences": avg_confs,
    }


# ───────────────────── Selective Prediction ─────────────────────

def risk_coverage_curve(
    confidences: list[float],
    correct: list[bool],
) -> dict[str, list[float]]:
    """
    Risk-coverage curve: answer the top-i most confident requests.

    Point i has coverage i/n and risk = error rate among those i.
    Ties in confidence keep the input order.

    Returns:
        Dict with 'coverage' and 'risk' lists of length n.
    """
    if len(confidences) != len(correct):
        raise ValueError("confidences and correct must have same length")
    n = len(confidences)
    if n == 0:
        return {"coverage": [], "risk": []}

    order = np.argsort(-np.asarray(confidences, dtype=float), kind="stable")
    errors = 1.0 - np.asarray(correct, dtype=float)[order]
    answered = np.arange(1, n + 1)
    risk = np.cumsum(errors) / answered
    return {
        "coverage": (answered / n).tolist(),
        "risk": risk.tolist(),
    }


def aurc(confidences: list[float], correct: list[bool]) -> float:
    """Area under the risk-coverage curve (mean risk over coverage points). Lower is better."""
    curve = risk_coverage_curve(confidences, correct)
    if not curve["risk"]:
        return 0.0
    return float(np.mean(curve["risk"]))


def risk_at_coverage(
    confidences: list[float],
    correct: list[bool],
    coverage: float,
) -> float:
    """Risk when answering the smallest top-confidence fraction ≥ `coverage`."""
    if not 0.0 < coverage <= 1.0:
        raise ValueError(f"coverage must be in (0, 1], got {coverage}")
    curve = risk_coverage_curve(confidences, correct)
    if not curve["risk"]:
        return 0.0
    for cov, risk in zip(curve["coverage"], curve["risk"]):
        if cov >= coverage - 1e-12:
            return float(risk)
    return float(curve["risk"][-1])


def downsample_curve(curve: dict[str, list[float]], points: int = 50) -> dict[str, list[float]]:
    """Keep at most `points` evenly spaced points (always including the last)."""
    n = len(curve["coverage"])
    if n <= points:
        return curve
    idx = np.unique(np.linspace(0, n - 1, points).round().astype(int))
    return {
        "coverage": [round(curve["coverage"][i], 4) for i in idx],
        "risk": [round(curve["risk"][i], 4) for i in idx],
    }


# ───────────────────── Latency Metrics ──────────────────────

def latency_stats(
    timings: list[dict[str, float]],
) -> dict[str, dict[str, float]]:
    """
    Aggregate latency statistics across runs.

    Args:
        timings: List of timing dicts (from PipelineResult.timings).

    Returns:
        Dict mapping stage → {mean, p50, p95, p99}.
    """
    if not timings:
        return {}

    keys = set()
    for t in timings:
        keys.update(t.keys())

    result = {}
    for key in sorted(keys):
        values = [t[key] for t in timings if key in t]
        if values:
            arr = np.array(values)
            result[key] = {
                "mean": float(arr.mean()),
                "p50": float(np.percentile(arr, 50)),
                "p95": float(np.percentile(arr, 95)),
                "p99": float(np.percentile(arr, 99)),
            }
    return result
