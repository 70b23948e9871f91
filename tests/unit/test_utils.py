"""
Utility and Config Tests
==========================
"""

from __future__ import annotations

import pytest

from mstack.config import MStackConfig, get_config
from mstack.utils import (
    RetryPolicy,
    canonical_json,
    clip01,
    compute_content_hash,
    compute_delay,
    compute_hash,
    count_tokens,
    jaccard,
    retry_async,
    tokenize,
)

pytestmark = pytest.mark.unit


class TestHashing:

    def test_dict_hash_ignores_key_order(self):
        assert compute_hash({"a": 1, "b": 2}) == compute_hash({"b": 2, "a": 1})
        assert len(compute_hash("x", length=64)) == 64

    def test_canonical_json_is_compact_and_sorted(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
        assert compute_content_hash({"b": 1, "a": 2}) == compute_content_hash({"a": 2, "b": 1})


class TestText:

    def test_tokenize(self):
        assert tokenize("Paris isn't 2.1 km!") == ["paris", "isn't", "2", "1", "km"]

    def test_count_tokens_uses_model_encoding(self):
        assert count_tokens("") == 0
        assert count_tokens("Paris is the capital of France.") == 7
        assert count_tokens("one two three") == 3
        assert count_tokens("Paris is the capital of France.", model="gpt-4") == 7

    def test_jaccard(self):
        assert jaccard(set(), set()) == 1.0
        assert jaccard({"a"}, {"b"}) == 0.0
        assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)

    def test_clip01(self):
        assert clip01(1.5) == 1.0
        assert clip01(-2) == 0.0
        assert clip01(float("nan")) == 0.0


class TestRetry:

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=2.0, jitter=0.0)
        assert compute_delay(policy, 0) == 1.0
        assert compute_delay(policy, 5) == 2.0

    async def test_retries_until_success(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OSError("down")
            return "ok"

        retried = []
        result = await retry_async(
            flaky,
            policy=RetryPolicy(max_retries=3, base_delay_s=0.0, jitter=0.0),
            on_retry=lambda attempt, exc: retried.append(attempt),
        )
        assert result == "ok"
        assert retried == [0, 1]

    async def test_non_retryable_raises_immediately(self):
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await retry_async(
                broken,
                policy=RetryPolicy(max_retries=3, base_delay_s=0.0),
                is_retryable=lambda exc: not isinstance(exc, ValueError),
            )
        assert len(calls) == 1


class TestConfig:

    def test_hash_is_deterministic(self):
        assert MStackConfig().config_hash() == MStackConfig().config_hash()
        assert len(MStackConfig().config_hash()) == 16

    def test_hash_tracks_changes(self):
        changed = MStackConfig(controller={"contradiction_high_water": 0.7})
        assert changed.config_hash() != MStackConfig().config_hash()

    def test_api_key_not_in_hash(self):
        assert MStackConfig(openai_api_key="sk-a").config_hash() == MStackConfig(openai_api_key="sk-b").config_hash()

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "strict.yaml"
        path.write_text("loop:\n  max_verify: 2\ncalibrator:\n  alpha: 0.05\n")
        config = get_config(str(path))
        assert config.loop.max_verify == 2
        assert config.calibrator.alpha == 0.05
        assert config.is_lite

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MSTACK_LOOP__MAX_REVISE", "3")
        assert MStackConfig().loop.max_revise == 3
