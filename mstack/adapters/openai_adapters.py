"""
OpenAI Adapters (FULL mode)
============================

Generator and judge backed by the OpenAI chat completions API.

The generator requests token log-probabilities so the Monitor can
compute the entropy-prefix slope; the judge asks the model for a JSON
verdict and a score in [0, 1].

Each API call is one sample / one score. Timeouts are mapped to
GenerationTimeout (generator) or AdapterError (judge) so the pipeline
applies its drop / fail-safe rules.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from mstack.adapters.base import AdapterError, Generator, GenerationTimeout, Scorer
from mstack.schemas.request import Candidate, ContextBundle

logger = logging.getLogger("mstack.adapters.openai")


SYSTEM_PROMPT = """You are a careful assistant. Answer the question concisely.
If evidence passages are provided, use only facts stated in them.
End with a line of the form "Answer: <final answer>"."""

JUDGE_PROMPT = """You are a precise answer quality judge. Given a QUESTION-FREE ANSWER and EVIDENCE, rate how well the evidence supports the answer and whether the answer is factually sound.

ANSWER: {answer}

EVIDENCE: {evidence}

Instructions:
1. If every statement is supported by the evidence → score: 0.9-1.0
2. If some statements are unsupported but none contradicted → score: 0.4-0.8
3. If any statement is contradicted or fabricated → score: 0.0-0.3

Respond with ONLY a JSON object:
{{"score": 0.0-1.0, "reasoning": "brief explanation"}}"""


def format_context(context: Optional[ContextBundle]) -> str:
    if context is None or not context.spans:
        return "(no evidence provided)"
    return "\n".join(f"[{s.span_id}] {s.text}" for s in context.spans)


class OpenAIGenerator(Generator):
    """
    Samples candidates with token log-probabilities.

    Usage:
        gen = OpenAIGenerator(api_key="sk-...", model="gpt-4o-mini")
        candidates = await gen.generate("What is X?", context, k=3)

    Args:
        api_key: OpenAI API key.
        model: Chat model name.
        temperature: Sampling temperature (must be > 0 for diverse samples).
        timeout_s: Per-request client timeout.
        max_tokens: Max completion tokens per sample.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        timeout_s: float = 30.0,
        max_tokens: int = 512,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout_s)
        return self._client

    async def generate(
        self,
        query: str,
        context: Optional[ContextBundle],
        k: int,
    ) -> list[Candidate]:
        import openai

        client = self._get_client()
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": f"EVIDENCE:\n{format_context(context)}\n\nQUESTION: {query}"},
        ]
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                logprobs=True,
                n=k,
            )
        except openai.APITimeoutError as e:
            raise GenerationTimeout(str(e)) from e
        except openai.OpenAIError as e:
            raise AdapterError(f"OpenAI generation failed: {e}") from e

        candidates = []
        for choice in response.choices:
            log_probs: tuple[float, ...] = ()
            if choice.logprobs is not None and choice.logprobs.content:
                log_probs = tuple(float(t.logprob) for t in choice.logprobs.content)
            candidates.append(Candidate(
                text=choice.message.content or "",
                token_log_probs=log_probs,
            ))
        if len(candidates) != k:
            raise GenerationTimeout(f"expected {k} samples, received {len(candidates)}")
        return candidates


class OpenAIJudge(Scorer):
    """
    LLM-as-judge scorer.

    One API call per scored candidate; the score is clipped to [0, 1]
    by the Evaluator.
    """

    name = "judge"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout_s: float = 30.0):
        self.api_key = api_key
        self.model = model
        self.timeout_s = timeout_s
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout_s)
        return self._client

    async def score(self, candidate: Candidate, context: Optional[ContextBundle]) -> float:
        import openai

        prompt = JUDGE_PROMPT.format(answer=candidate.text, evidence=format_context(context))
        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0.0,
                response_format={"type": "json_object"},
                max_tokens=200,
            )
            result = json.loads(response.choices[0].message.content)
            return float(result["score"])
        except (openai.OpenAIError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise AdapterError(f"LLM judge failed: {e}") from e
