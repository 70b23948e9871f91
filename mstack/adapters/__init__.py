"""
M-Stack Adapters
=================

Capability interfaces for the external collaborators and their
implementations.

Components:
    - base.py:            Interfaces + AdapterError / GenerationTimeout / BudgetExceeded
    - heuristic.py:       Word-overlap NLI, coverage, judge, PRM, citation (LITE)
    - scripted.py:        Scripted generator and fixed-score adapters (tests, benchmark)
    - openai_adapters.py: OpenAI generator and judge (FULL)
"""

from mstack.adapters.base import (
    AdapterError,
    BudgetExceeded,
    EntailmentAdapter,
    GenerationTimeout,
    Generator,
    RetrievalAdapter,
    Scorer,
)

__all__ = [
    "AdapterError",
    "BudgetExceeded",
    "EntailmentAdapter",
    "GenerationTimeout",
    "Generator",
    "RetrievalAdapter",
    "Scorer",
]
