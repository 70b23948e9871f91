"""
M-Stack Configuration System
=============================

Central configuration using Pydantic Settings. Supports:
- Environment variables (MSTACK_ prefix)
- .env file loading
- YAML config file overrides
- Two execution modes: "lite" (heuristic adapters, CPU) and "full" (API-backed models)

The config produces a deterministic hash for reproducibility tracking.
The pipeline logs this hash when it is built; the benchmark records it in results.json.

Usage:
    from mstack.config import get_config
    cfg = get_config()                       # loads from env / .env
    cfg = get_config("configs/strict.yaml")  # loads with YAML overrides
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ── Execution Mode ─────────────────────────────────────────────────
class ExecutionMode(str, Enum):
    """
    Controls which adapter backends the pipeline is wired with.

    - LITE: heuristic word-overlap adapters, no network calls.
            Generation must be supplied (scripted candidates or a custom adapter).
    - FULL: OpenAI-backed generator and judge, heuristic NLI/coverage.
    """
    LITE = "lite"
    FULL = "full"


# ── Sub-configs ────────────────────────────────────────────────────
class DynamicKConfig(BaseModel):
    """Risk estimate → number of sampled candidates."""
    w_length: float = Field(default=0.3, ge=0.0, le=1.0, description="Weight of the query length proxy")
    w_thinness: float = Field(default=0.4, ge=0.0, le=1.0, description="Weight of retrieval thinness")
    w_domain: float = Field(default=0.3, ge=0.0, le=1.0, description="Weight of the route's domain risk")
    low_cut: float = Field(default=0.33, description="r below this → K=1")
    high_cut: float = Field(default=0.66, description="r below this → K=3, else K=5")
    max_query_words: int = Field(default=60, gt=0, description="Query length at which the proxy saturates")
    target_context_spans: int = Field(default=5, gt=0, description="Span count considered 'thick' context")
    route_risk: dict[str, float] = Field(
        default_factory=lambda: {
            "medical": 0.9,
            "legal": 0.85,
            "finance": 0.7,
            "science": 0.5,
            "general": 0.3,
            "chitchat": 0.1,
        },
        description="Domain risk per route tag, each in [0, 1]",
    )
    default_route_risk: float = Field(default=0.5, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_weights(self) -> "DynamicKConfig":
        total = self.w_length + self.w_thinness + self.w_domain
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Dynamic-K weights must sum to 1, got {total:.4f}")
        if not 0.0 < self.low_cut < self.high_cut < 1.0:
            raise ValueError("Cut points must satisfy 0 < low_cut < high_cut < 1")
        return self


class ClaimGraphConfig(BaseModel):
    """Configuration for claim extraction and the pairwise entailment graph."""
    max_claims_per_candidate: int = Field(
        default=8, gt=0,
        description="Cap on claims kept per candidate (earliest-extracted kept)"
    )
    min_claim_words: int = Field(default=3, ge=1, description="Shorter fragments are not claims")
    contradiction_threshold: float = Field(
        default=0.5, ge=0.0, le=1.0,
        description="Contradict edges at or above this weight count for the consistency step"
    )
    max_concurrency: int = Field(default=8, gt=0, description="Concurrent entailment adapter calls")
    split_conjunctions: bool = Field(default=True, description="Split compound sentences into atomic claims")


class SignalConfig(BaseModel):
    """Configuration for the Monitor signals."""
    entropy_prefix_tokens: int = Field(default=32, ge=2, description="N tokens used for the entropy slope")
    entropy_gain: float = Field(default=4.0, gt=0.0, description="Sigmoid gain applied to the slope")
    entropy_bias: float = Field(default=0.0, description="Sigmoid offset applied to the slope")
    coverage_min_overlap: float = Field(
        default=0.5, ge=0.0, le=1.0,
        description="Minimum retrieval coverage for a span to support a claim"
    )
    max_spans_per_claim: int = Field(default=20, gt=0, description="Spans checked per claim")
    max_concurrency: int = Field(default=16, gt=0, description="Concurrent retrieval adapter calls")


class EvaluatorConfig(BaseModel):
    """Configuration for the judge / PRM / citation scorers."""
    scorer_timeout_s: float = Field(default=10.0, gt=0.0, description="Per-scorer deadline")
    calibration_method: str = Field(
        default="none",
        description="Score calibration: 'none', 'temperature' or 'isotonic'"
    )


class ControllerConfig(BaseModel):
    """Constrained-optimization decision policy."""
    w_judge: float = Field(default=0.4, ge=0.0, description="Risk weight of (1 - judge)")
    w_contradiction: float = Field(default=0.3, ge=0.0, description="Risk weight of contradiction_mass")
    w_coverage: float = Field(default=0.3, ge=0.0, description="Risk weight of (1 - rag_coverage)")
    contradiction_high_water: float = Field(default=0.6, ge=0.0, le=1.0)
    fail_safe_risk: float = Field(
        default=0.95, ge=0.0, le=1.0,
        description="Risk at or above which the request abstains unconditionally"
    )
    abstain_utility: float = Field(default=0.3, description="Base utility of abstaining")
    revise_overhead: float = Field(default=0.15, ge=0.0, description="Utility cost of a revision round")
    verify_overhead: float = Field(default=0.2, ge=0.0, description="Utility cost of a verification round")
    revise_risk_reduction: float = Field(default=0.4, ge=0.0, le=1.0)
    verify_risk_reduction: float = Field(default=0.5, ge=0.0, le=1.0)
    soft_cost_budget: float = Field(
        default=0.1, ge=0.0,
        description="Incremental normalized cost an action may spend before λ applies"
    )
    default_tokens_per_candidate: int = Field(default=256, gt=0)
    default_latency_ms: float = Field(default=1500.0, gt=0.0, description="Round latency before any is observed")
    policy_version: str = Field(default="cmdp-v1.0")

    @model_validator(mode="after")
    def check_risk_weights(self) -> "ControllerConfig":
        total = self.w_judge + self.w_contradiction + self.w_coverage
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Risk weights must sum to 1, got {total:.4f}")
        return self


class LoopConfig(BaseModel):
    """Bounds on verify/revise re-entry."""
    max_verify: int = Field(default=1, ge=0, description="Verification rounds per request")
    max_revise: int = Field(default=1, ge=0, description="Revision rounds per request")
    verify_k: int = Field(default=5, description="Samples drawn on a verification round")
    generation_share: float = Field(
        default=0.5, gt=0.0, le=1.0,
        description="Share of the remaining latency budget a generation round may use"
    )


class CalibratorConfig(BaseModel):
    """Dual ascent + conformal threshold calibration."""
    eta: float = Field(default=0.05, gt=0.0, le=1.0, description="Dual ascent step size")
    alpha: float = Field(default=0.1, gt=0.0, lt=1.0, description="Target miscoverage level")
    window_size: int = Field(default=500, gt=0, description="Sliding outcome window for τ")
    recompute_every: int = Field(default=20, gt=0, description="Recompute τ every N accepted updates")
    min_window: int = Field(default=20, gt=0, description="Outcomes required before τ is recomputed")
    cost_target: float = Field(
        default=0.5, ge=0.0,
        description="Target normalized cost (tokens spent / token_cap) for λ"
    )
    checkpoint_path: Optional[Path] = Field(default=None, description="DualState checkpoint file")
    checkpoint_every: int = Field(default=50, gt=0, description="Checkpoint every N accepted updates")
    max_pending_outcomes: int = Field(default=10_000, gt=0, description="Requests remembered for late outcomes")


class AuditConfig(BaseModel):
    """Hash-chained audit log."""
    log_path: Path = Field(default=Path("./outputs/audit.jsonl"), description="JSONL audit log")
    max_retries: int = Field(default=3, ge=0)
    base_delay_s: float = Field(default=0.1, ge=0.0)
    max_delay_s: float = Field(default=2.0, ge=0.0)
    jitter: float = Field(default=0.2, ge=0.0, le=1.0)
    blocking: bool = Field(default=False, description="Await audit writes before returning")


# ── Main Config ────────────────────────────────────────────────────
class MStackConfig(BaseSettings):
    """
    Root configuration for M-Stack.

    Loads from environment variables (MSTACK_ prefix) and .env file.
    Can be extended with YAML overrides via `get_config(yaml_path)`.

    Example:
        export MSTACK_MODE=full
        export MSTACK_OPENAI_API_KEY=sk-...
    """
    model_config = SettingsConfigDict(
        env_prefix="MSTACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ── Top-level settings ─────────────────────────────────────────
    mode: ExecutionMode = Field(
        default=ExecutionMode.LITE,
        description="Execution mode: 'lite' (heuristic) or 'full' (API-backed)"
    )
    output_dir: Path = Field(default=Path("./outputs"), description="Output directory")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: 'json' or 'text'")

    # ── OpenAI API (for full mode) ─────────────────────────────────
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI model for generation")
    judge_model: str = Field(default="gpt-4o-mini", description="OpenAI model for the judge scorer")
    generation_temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    # ── Sub-configs ────────────────────────────────────────────────
    dynamic_k: DynamicKConfig = Field(default_factory=DynamicKConfig)
    claims: ClaimGraphConfig = Field(default_factory=ClaimGraphConfig)
    signals: SignalConfig = Field(default_factory=SignalConfig)
    evaluator: EvaluatorConfig = Field(default_factory=EvaluatorConfig)
    controller: ControllerConfig = Field(default_factory=ControllerConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    calibrator: CalibratorConfig = Field(default_factory=CalibratorConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @property
    def is_lite(self) -> bool:
        """Check if running in lite (heuristic) mode."""
        return self.mode == ExecutionMode.LITE

    @property
    def is_full(self) -> bool:
        """Check if running in full (API-backed) mode."""
        return self.mode == ExecutionMode.FULL

    def config_hash(self) -> str:
        """
        Produce a deterministic SHA-256 hash of the configuration.

        Two runs are comparable only when they were made under the
        same hash.
        """
        config_dict = self.model_dump(mode="json", exclude={"openai_api_key"})
        canonical = json.dumps(config_dict, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]

    def ensure_dirs(self) -> None:
        """Create the output and audit log directories if they don't exist."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.audit.log_path.parent.mkdir(parents=True, exist_ok=True)


# ── Config Loading ─────────────────────────────────────────────────
def get_config(yaml_path: Optional[str] = None) -> MStackConfig:
    """
    Load M-Stack configuration.

    Priority (highest to lowest):
        1. YAML config file (if provided)
        2. Environment variables (MSTACK_ prefix)
        3. .env file
        4. Default values

    Args:
        yaml_path: Optional path to a YAML config file for overrides.

    Returns:
        Fully resolved MStackConfig instance.
    """
    if yaml_path:
        import yaml
        with open(yaml_path) as f:
            overrides = yaml.safe_load(f) or {}
        return MStackConfig(**overrides)
    return MStackConfig()
