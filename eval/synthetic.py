"""
Synthetic Benchmark Data
=========================

Seeded, fully offline question sets for the benchmark kit. Every item
asks for one numeric attribute of a made-up entity, so correctness of
an answer is mechanical (the final answer must equal the value).

Per domain:
    - error_rate: probability that a sampled candidate states a wrong value
    - thin_rate:  probability that the context omits the supporting span

Candidates come from a ScriptedGenerator whose factory draws each sample
from a per-(query, call) seeded RNG, so two systems asking the same
question see the same sample distribution and reruns are identical.
A revision query that carries the correct value among the agreed
statements halves the error rate, mimicking a generator that follows
the guidance it was given.
"""

from __future__ import annotations

import math
import random
import re
import zlib
from dataclasses import dataclass, field
from typing import Optional

from mstack.adapters.scripted import ScriptedGenerator
from mstack.monitor.signals import final_answer
from mstack.schemas.request import Candidate, ContextBundle, EvidenceSpan, SourceInfo
from mstack.utils import tokenize

_SYLLABLES = ["zor", "vex", "qua", "lin", "dra", "mor", "tel", "pha", "ris", "kon", "bel", "tar", "nyx", "sol"]

REVISION_MARKER = "Statements the previous drafts agreed on"


@dataclass(frozen=True)
class DomainSpec:
    route: str
    error_rate: float
    thin_rate: float
    attributes: tuple[str, ...]
    value_range: tuple[int, int] = (10, 990)


DOMAINS: dict[str, DomainSpec] = {
    "general": DomainSpec(
        route="general", error_rate=0.15, thin_rate=0.10,
        attributes=("population in thousands", "height in meters", "founding year"),
        value_range=(100, 1990),
    ),
    "science": DomainSpec(
        route="science", error_rate=0.25, thin_rate=0.15,
        attributes=("boiling point", "atomic mass", "half life in days"),
    ),
    "finance": DomainSpec(
        route="finance", error_rate=0.30, thin_rate=0.20,
        attributes=("annual revenue in millions", "interest rate in basis points", "share price"),
    ),
    "medical": DomainSpec(
        route="medical", error_rate=0.40, thin_rate=0.25,
        attributes=("recommended dose in milligrams", "incubation period in days", "resting heart rate"),
        value_range=(5, 400),
    ),
}


@dataclass
class BenchItem:
    """One benchmark question with its ground truth."""
    item_id: str
    domain: str
    route: str
    subject: str
    attribute: str
    value: int
    error_rate: float
    context: Optional[ContextBundle] = None
    supported: bool = True
    tags: list[str] = field(default_factory=list)

    @property
    def query(self) -> str:
        return f"What is the {self.attribute} of {self.subject}?"

    @property
    def truth_text(self) -> str:
        return f"The {self.attribute} of {self.subject} is {self.value}."

    def is_correct(self, text: Optional[str]) -> bool:
        if not text:
            return False
        return tokenize(final_answer(text)) == [str(self.value)]


def _name(rng: random.Random) -> str:
    return "".join(rng.choice(_SYLLABLES) for _ in range(rng.randint(2, 3))).capitalize()


def _wrong_value(value: int, rng: random.Random) -> int:
    delta = rng.choice([-3, -2, -1, 1, 2, 3]) * max(1, value // 10)
    wrong = value + delta
    return wrong if wrong > 0 and wrong != value else value + max(1, value // 10)


def make_items(domain: str, n: int, seed: int = 42) -> list[BenchItem]:
    """Generate n items for a domain; deterministic in (domain, n, seed)."""
    profile = DOMAINS[domain]
    rng = random.Random(seed * 1009 + zlib.crc32(domain.encode("utf-8")))
    items: list[BenchItem] = []
    used: set[str] = set()

    while len(items) < n:
        subject = _name(rng)
        if subject in used:
            continue
        used.add(subject)
        attribute = rng.choice(profile.attributes)
        value = rng.randint(*profile.value_range)
        item = BenchItem(
            item_id=f"{domain}-{len(items):04d}",
            domain=domain,
            route=profile.route,
            subject=subject,
            attribute=attribute,
            value=value,
            error_rate=profile.error_rate,
        )

        spans = []
        item.supported = rng.random() >= profile.thin_rate
        if item.supported:
            spans.append(EvidenceSpan(
                span_id=f"{item.item_id}-s0",
                text=item.truth_text,
                source=SourceInfo(title=f"{subject} reference"),
            ))
        for j in range(2):
            other = _name(rng)
            spans.append(EvidenceSpan(
                span_id=f"{item.item_id}-d{j}",
                text=f"The {rng.choice(profile.attributes)} of {other} is {rng.randint(*profile.value_range)}.",
                source=SourceInfo(title=f"{other} reference"),
            ))
        rng.shuffle(spans)
        item.context = ContextBundle(spans=tuple(spans))
        items.append(item)

    return items


def make_benchmark(per_domain: int, seed: int = 42) -> list[BenchItem]:
    items = []
    for domain in DOMAINS:
        items.extend(make_items(domain, per_domain, seed))
    return items


def _log_probs(n_tokens: int, correct: bool, rng: random.Random) -> tuple[float, ...]:
    """Surprisal falls along the prefix for correct samples and stays flat otherwise."""
    shift = rng.gauss(0.0, 0.25)
    start = (0.7 if correct else 0.9) + shift
    slope = 0.04 if correct else 0.0
    out = []
    for t in range(n_tokens):
        surprisal = max(0.01, start - slope * t + rng.gauss(0.0, 0.1))
        out.append(-surprisal)
    return tuple(out)


def sample_candidate(item: BenchItem, rng: random.Random, error_rate: Optional[float] = None) -> Candidate:
    rate = item.error_rate if error_rate is None else error_rate
    correct = rng.random() >= rate
    value = item.value if correct else _wrong_value(item.value, rng)
    hedge = rng.random() < (0.05 if correct else 0.3)
    verb = "might be" if hedge else "is"
    text = f"The {item.attribute} of {item.subject} {verb} {value}. Answer: {value}"
    return Candidate(text=text, token_log_probs=_log_probs(len(text.split()) + 2, correct, rng))


def make_generator(items: list[BenchItem], seed: int = 42) -> ScriptedGenerator:
    """Scripted generator answering every benchmark query."""
    by_query = {item.query: item for item in items}

    def factory(query: str, index: int) -> Candidate:
        base, _, guidance = query.partition("\n\n")
        item = by_query[base]
        rng = random.Random(seed * 7919 + zlib.crc32(query.encode("utf-8")) + index)
        rate = item.error_rate
        if REVISION_MARKER in guidance and re.search(rf"\b{item.value}\b", guidance):
            rate = rate / 2
        return sample_candidate(item, rng, error_rate=rate)

    return ScriptedGenerator(factory=factory)


def expected_accuracy(item: BenchItem) -> float:
    """Probability that one sample is correct."""
    return 1.0 - item.error_rate


def majority_accuracy(p_correct: float, k: int) -> float:
    """Probability that a strict majority of k samples is correct (independent samples)."""
    need = k // 2 + 1
    return sum(
        math.comb(k, i) * p_correct ** i * (1 - p_correct) ** (k - i)
        for i in range(need, k + 1)
    )
