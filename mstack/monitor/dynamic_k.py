"""
Dynamic-K Selector
===================

Chooses how many candidates to sample for a request from a risk
estimate computed before any generation:

    r = w_length · length_proxy(query)
      + w_thinness · retrieval_thinness(context)
      + w_domain · domain_risk(route)

    r < low_cut  → K = 1
    r < high_cut → K = 3
    otherwise    → K = 5

Every term is in [0, 1] and the weights sum to 1, so r ∈ [0, 1].
The selector is a pure function of the request; it holds no state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from mstack.config import DynamicKConfig
from mstack.schemas.request import ContextBundle, Request

logger = logging.getLogger("mstack.monitor.dynamic_k")

K_CHOICES = (1, 3, 5)


@dataclass(frozen=True)
class KSelection:
    """The chosen K with the terms that produced it."""
    k: int
    risk: float
    length_proxy: float
    thinness: float
    domain_risk: float


class DynamicKSelector:
    """
    Maps a request to K ∈ {1, 3, 5}.

    Usage:
        selector = DynamicKSelector(config.dynamic_k)
        k = selector.select(request).k
    """

    def __init__(self, config: Optional[DynamicKConfig] = None):
        self.config = config or DynamicKConfig()

    def length_proxy(self, query: str) -> float:
        """Query word count, saturating at max_query_words."""
        return min(1.0, len(query.split()) / self.config.max_query_words)

    def retrieval_thinness(self, context: Optional[ContextBundle]) -> float:
        """1 with no evidence, falling to 0 at target_context_spans spans."""
        if context is None:
            return 1.0
        return 1.0 - min(1.0, context.num_spans / self.config.target_context_spans)

    def domain_risk(self, route: str) -> float:
        risk = self.config.route_risk.get(route.lower(), self.config.default_route_risk)
        return min(1.0, max(0.0, risk))

    def risk_to_k(self, risk: float) -> int:
        if risk < self.config.low_cut:
            return K_CHOICES[0]
        if risk < self.config.high_cut:
            return K_CHOICES[1]
        return K_CHOICES[2]

    def select(self, request: Request) -> KSelection:
        cfg = self.config
        length = self.length_proxy(request.query)
        thin = self.retrieval_thinness(request.context)
        domain = self.domain_risk(request.route)
        risk = cfg.w_length * length + cfg.w_thinness * thin + cfg.w_domain * domain
        k = self.risk_to_k(risk)
        logger.debug(
            f"Dynamic-K: r={risk:.3f} (length={length:.2f}, thin={thin:.2f}, "
            f"domain={domain:.2f}) → K={k}"
        )
        return KSelection(k=k, risk=risk, length_proxy=length, thinness=thin, domain_risk=domain)
