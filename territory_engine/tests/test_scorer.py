"""Conflict resolution and confidence scoring."""

import pytest

from territory_engine.models import SourceDefinition, SourceResult, SourceType
from territory_engine.registry import DataSourceRegistry
from territory_engine.scorer import ConflictScorer


def _defs(*specs):
    return [
        SourceDefinition(id=sid, name=sid, type=SourceType.EXTERNAL_API,
                         priority=priority, reliability=reliability)
        for sid, priority, reliability in specs
    ]


def _candidate(source_id, territory_id, reported=None):
    return SourceResult(source_id=source_id, territory_id=territory_id,
                        territory_name=territory_id.title(), reported_confidence=reported)


@pytest.fixture
def scorer(config, territories):
    registry = DataSourceRegistry(
        config, territories,
        definitions=_defs(("a", 80, 90), ("b", 80, 90), ("c", 80, 90), ("d", 80, 90)),
        build_connectors=False,
    )
    return ConflictScorer(registry)


class TestAgreement:
    def test_single_source(self, scorer):
        result = scorer.score([_candidate("a", "ONCOR")])
        assert result.winner.territory_id == "ONCOR"
        assert result.confidence == 95
        assert not result.conflict

    def test_full_reliability_scores_100(self, config, territories):
        registry = DataSourceRegistry(config, territories,
                                      definitions=_defs(("x", 90, 100), ("y", 80, 100)),
                                      build_connectors=False)
        result = ConflictScorer(registry).score([_candidate("x", "TNMP"), _candidate("y", "TNMP")])
        assert result.confidence == 100

    def test_priority_weighted_reliability(self, config, territories):
        registry = DataSourceRegistry(config, territories,
                                      definitions=_defs(("hi", 90, 100), ("lo", 10, 60)),
                                      build_connectors=False)
        result = ConflictScorer(registry).score([_candidate("hi", "ONCOR"), _candidate("lo", "ONCOR")])
        # weighted reliability (90*100 + 10*60) / 100 = 96 -> 100 - 4*0.5
        assert result.confidence == 98

    def test_reported_confidence_lowers_reliability(self, scorer):
        result = scorer.score([_candidate("a", "ONCOR", reported=60)])
        assert result.confidence == 80

    def test_empty(self, scorer):
        assert scorer.score([]) is None


class TestDisagreement:
    def test_three_versus_one(self, scorer):
        three_v_one = scorer.score([
            _candidate("a", "ONCOR"), _candidate("b", "ONCOR"),
            _candidate("c", "ONCOR"), _candidate("d", "TNMP"),
        ])
        two_agree = scorer.score([_candidate("a", "ONCOR"), _candidate("b", "ONCOR")])
        penalty = scorer.dissent_penalty(_candidate("d", "TNMP"))

        assert three_v_one.winner.territory_id == "ONCOR"
        assert three_v_one.conflict
        assert three_v_one.dissenting == ["d"]
        assert three_v_one.confidence < 100
        assert three_v_one.confidence > two_agree.confidence - penalty

    def test_more_dissent_means_lower_confidence(self, scorer):
        one_dissent = scorer.score([
            _candidate("a", "ONCOR"), _candidate("b", "ONCOR"),
            _candidate("c", "ONCOR"), _candidate("d", "TNMP"),
        ])
        two_v_one = scorer.score([
            _candidate("a", "ONCOR"), _candidate("b", "ONCOR"), _candidate("d", "TNMP"),
        ])
        assert two_v_one.confidence < one_dissent.confidence

    def test_plurality_capped_at_60(self, config, territories):
        registry = DataSourceRegistry(config, territories,
                                      definitions=_defs(("a", 95, 100), ("b", 50, 100)),
                                      build_connectors=False)
        result = ConflictScorer(registry).score([_candidate("a", "ONCOR"), _candidate("b", "TNMP")])
        assert result.winner.territory_id == "ONCOR"
        assert result.confidence == 30  # min(60, 100) * 1/2

    def test_highest_priority_times_health_wins_without_majority(self, config, territories):
        registry = DataSourceRegistry(config, territories,
                                      definitions=_defs(("low", 40, 95), ("high", 90, 70)),
                                      build_connectors=False)
        result = ConflictScorer(registry).score([_candidate("low", "ONCOR"), _candidate("high", "TNMP")])
        # 90*70 > 40*95
        assert result.winner.territory_id == "TNMP"
        assert result.confidence <= 60

    def test_tie_broken_by_most_recent_success(self, config, territories):
        now = [1000.0]
        registry = DataSourceRegistry(config, territories,
                                      definitions=_defs(("a", 80, 90), ("b", 80, 90)),
                                      build_connectors=False, clock=lambda: now[0])
        registry.health("a").record_success(100)
        now[0] = 2000.0
        registry.health("b").record_success(100)
        now[0] = 2500.0
        assert registry.health("a").rank() == registry.health("b").rank()

        result = ConflictScorer(registry).score([_candidate("a", "ONCOR"), _candidate("b", "TNMP")])
        assert result.winner.territory_id == "TNMP"

    def test_groups_report_every_territory(self, scorer):
        result = scorer.score([_candidate("a", "ONCOR"), _candidate("b", "TNMP"), _candidate("c", "ONCOR")])
        assert result.groups == {"ONCOR": ["a", "c"], "TNMP": ["b"]}
