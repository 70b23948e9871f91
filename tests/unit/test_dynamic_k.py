"""
Dynamic-K Tests
=================
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from mstack.config import DynamicKConfig
from mstack.monitor.dynamic_k import K_CHOICES, DynamicKSelector

from tests.conftest import make_context, make_request

pytestmark = pytest.mark.unit


@pytest.fixture
def selector() -> DynamicKSelector:
    return DynamicKSelector(DynamicKConfig())


class TestTerms:

    def test_length_proxy_saturates(self, selector):
        assert selector.length_proxy("one two three") == pytest.approx(3 / 60)
        assert selector.length_proxy("word " * 200) == 1.0

    def test_thinness(self, selector):
        assert selector.retrieval_thinness(None) == 1.0
        assert selector.retrieval_thinness(make_context(["a b c"] * 5)) == 0.0
        assert selector.retrieval_thinness(make_context(["a b c", "d e f"])) == pytest.approx(0.6)

    def test_domain_risk_lookup(self, selector):
        assert selector.domain_risk("medical") == 0.9
        assert selector.domain_risk("MEDICAL") == 0.9
        assert selector.domain_risk("astrology") == 0.5


class TestSelection:

    def test_thick_context_low_risk_route_gives_one(self, selector, capital_spans):
        selection = selector.select(make_request(spans=capital_spans, route="chitchat"))
        assert selection.k == 1

    def test_no_context_general_gives_three(self, selector):
        assert selector.select(make_request(route="general")).k == 3

    def test_no_context_medical_gives_five(self, selector):
        assert selector.select(make_request(route="medical")).k == 5

    def test_risk_is_weighted_sum(self, selector):
        selection = selector.select(make_request(route="general"))
        expected = 0.3 * selection.length_proxy + 0.4 * selection.thinness + 0.3 * selection.domain_risk
        assert selection.risk == pytest.approx(expected)
        assert 0.0 <= selection.risk <= 1.0

    def test_cut_points(self, selector):
        assert selector.risk_to_k(0.0) == 1
        assert selector.risk_to_k(0.33) == 3
        assert selector.risk_to_k(0.66) == 5
        assert selector.risk_to_k(1.0) == 5

    def test_monotone_in_risk(self, selector):
        ks = [selector.risk_to_k(r / 100) for r in range(101)]
        assert ks == sorted(ks)
        assert set(ks) == set(K_CHOICES)


class TestConfigValidation:

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValidationError):
            DynamicKConfig(w_length=0.5)

    def test_cut_points_must_be_ordered(self):
        with pytest.raises(ValidationError):
            DynamicKConfig(low_cut=0.7, high_cut=0.5)
