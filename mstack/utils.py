"""
M-Stack Utilities
==================

Shared helper functions for logging, reproducibility, hashing,
retries and text processing used across all modules.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import random
import re
import sys
import time
import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Awaitable, Callable, TypeVar

import numpy as np

T = TypeVar("T")

logger = logging.getLogger("mstack.utils")


# ── Reproducibility ────────────────────────────────────────────────

def set_all_seeds(seed: int = 42) -> None:
    """
    Set random seeds for Python and NumPy.

    Must be called before any random operations for the offline
    benchmark to be reproducible.
    """
    random.seed(seed)
    np.random.seed(seed)


def generate_run_id(prefix: str = "mstack") -> str:
    """
    Generate a unique identifier for a run or a request.

    Format: {prefix}-{timestamp}-{short_uuid}
    Example: mstack-20250209-143022-a1b2c3d4
    """
    timestamp = time.strftime("%Y%m%d-%H%M%S")
    short_id = uuid.uuid4().hex[:8]
    return f"{prefix}-{timestamp}-{short_id}"


# ── Hashing ────────────────────────────────────────────────────────

def compute_hash(data: str | bytes | dict, length: int = 16) -> str:
    """
    Compute a truncated SHA-256 hash.

    Used for config stamps, input hashes and candidate redaction.

    Args:
        data: String, bytes, or dict to hash.
        length: Number of hex characters to return (max 64).

    Returns:
        Hex digest string of specified length.
    """
    if isinstance(data, dict):
        data = json.dumps(data, sort_keys=True, default=str)
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()[:length]


def canonical_json(obj: Any) -> str:
    """Canonical serialization: sorted keys, no whitespace variance."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def compute_content_hash(obj: Any) -> str:
    """
    Compute a content-addressable hash for any JSON-serializable object.

    This is the hash the audit chain links on: a record's successor
    stores this value as its prev_hash.
    """
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


# ── Logging ────────────────────────────────────────────────────────

def setup_logging(
    level: str = "INFO",
    format_style: str = "text",
    run_id: str | None = None
) -> logging.Logger:
    """
    Configure structured logging for M-Stack.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        format_style: "json" for structured logs, "text" for human-readable.
        run_id: Optional run ID to include in all log entries.

    Returns:
        Configured Logger instance.
    """
    root = logging.getLogger("mstack")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if format_style == "json":
        class JsonFormatter(logging.Formatter):
            def format(self, record):
                log_entry = {
                    "timestamp": self.formatTime(record),
                    "level": record.levelname,
                    "module": record.module,
                    "message": record.getMessage(),
                }
                if run_id:
                    log_entry["run_id"] = run_id
                if record.exc_info:
                    log_entry["exception"] = self.formatException(record.exc_info)
                return json.dumps(log_entry)

        handler.setFormatter(JsonFormatter())
    else:
        fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        if run_id:
            fmt = f"%(asctime)s | %(levelname)-8s | {run_id} | %(name)s | %(message)s"
        handler.setFormatter(logging.Formatter(fmt, datefmt="%H:%M:%S"))

    root.addHandler(handler)
    return root


# ── Retries ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_s: float = 0.1
    max_delay_s: float = 2.0
    jitter: float = 0.2


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Exponential backoff with symmetric jitter."""
    base = min(policy.max_delay_s, policy.base_delay_s * (2 ** attempt))
    jitter = base * policy.jitter
    return max(0.0, base + random.uniform(-jitter, jitter))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    is_retryable: Callable[[Exception], bool] = lambda exc: True,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """
    Await ``fn()`` until it succeeds or the retry policy is exhausted.

    The last exception is re-raised once ``policy.max_retries`` retries
    have failed or the exception is not retryable.
    """
    last_exc: Exception | None = None
    for attempt in range(policy.max_retries + 1):
        try:
            return await fn()
        except Exception as exc:
            last_exc = exc
            if attempt >= policy.max_retries or not is_retryable(exc):
                raise
            if on_retry is not None:
                on_retry(attempt, exc)
            await asyncio.sleep(compute_delay(policy, attempt))
    if last_exc:
        raise last_exc
    raise RuntimeError("retry_async failed without exception")


# ── Text Processing Helpers ────────────────────────────────────────

_WORD_RE = re.compile(r"[a-z0-9]+(?:'[a-z]+)?")


def tokenize(text: str) -> list[str]:
    """Lower-cased word tokens, punctuation dropped."""
    return _WORD_RE.findall(text.lower())


@lru_cache(maxsize=8)
def _encoding(model: str):
    import tiktoken
    return tiktoken.encoding_for_model(model)


def count_tokens(text: str, model: str = "gpt-4o-mini") -> int:
    """
    Count the number of tokens in a text string.

    Args:
        text: Input text.
        model: Model name for tiktoken encoding.

    Returns:
        Token count.
    """
    return len(_encoding(model).encode(text))


def normalize_whitespace(text: str) -> str:
    """Collapse multiple whitespace characters into single spaces and strip."""
    return " ".join(text.split())


def jaccard(a: set[str], b: set[str]) -> float:
    """Jaccard similarity of two token sets (1.0 for two empty sets)."""
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def clip01(value: float) -> float:
    """Clamp to [0, 1]; NaN maps to 0.0."""
    if value != value:  # NaN
        return 0.0
    return min(1.0, max(0.0, float(value)))
