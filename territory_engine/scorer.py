"""Conflict resolution and confidence scoring for live source candidates."""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from .models import SourceResult
from .registry import DataSourceRegistry

logger = logging.getLogger(__name__)

# Used when a candidate's source has no health record
_DEFAULT_PRIORITY = 50
_DEFAULT_RELIABILITY = 50

# Share of the gap to full reliability that is taken off agreed answers
_AGREEMENT_PENALTY = 0.5
# Fraction of a dissenting source's reliability charged against the winner
_DISSENT_WEIGHT = 0.4
# Ceiling when the winner is only a plurality (no strict majority)
_DISAGREEMENT_CAP = 60
# A disputed answer never reaches full confidence
_DISPUTED_MAX = 99


@dataclass
class ScoredResult:
    winner: SourceResult
    confidence: int
    agreeing: List[str] = field(default_factory=list)
    dissenting: List[str] = field(default_factory=list)
    # territory_id -> source ids, for every territory proposed
    groups: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def conflict(self) -> bool:
        return bool(self.dissenting)


class ConflictScorer:
    """Picks a winning territory among candidates and scores it 0-100.

    All agree:           100 minus half the gap between full reliability and
                         the priority-weighted reliability of the sources.
    Strict majority:     the agreed score of the majority, less each dissenter's
                         penalty (reliability * 0.4) scaled by dissenters/total.
    No strict majority:  the territory of the best priority * health source
                         (ties: most recent success), capped at 60 and scaled
                         by the share of sources backing it.
    """

    def __init__(self, registry: DataSourceRegistry):
        self.registry = registry

    def _priority(self, source_id: str) -> int:
        health = self.registry.health(source_id)
        return health.priority if health else _DEFAULT_PRIORITY

    def _reliability(self, candidate: SourceResult) -> int:
        health = self.registry.health(candidate.source_id)
        rel = health.reliability if health else _DEFAULT_RELIABILITY
        if candidate.reported_confidence is not None:
            rel = min(rel, candidate.reported_confidence)
        return rel

    def _rank(self, source_id: str) -> tuple:
        health = self.registry.health(source_id)
        if not health:
            return (_DEFAULT_PRIORITY * _DEFAULT_RELIABILITY, 0.0)
        return (health.rank(), health.last_success or 0.0)

    def agreement_confidence(self, candidates: List[SourceResult]) -> int:
        total_weight = sum(self._priority(c.source_id) for c in candidates)
        if total_weight <= 0:
            return 0
        weighted = sum(self._priority(c.source_id) * self._reliability(c) for c in candidates)
        avg = weighted / total_weight
        return int(round(100 - (100 - avg) * _AGREEMENT_PENALTY))

    def dissent_penalty(self, candidate: SourceResult) -> float:
        return self._reliability(candidate) * _DISSENT_WEIGHT

    def score(self, candidates: List[SourceResult]) -> Optional[ScoredResult]:
        if not candidates:
            return None

        groups: "OrderedDict[str, List[SourceResult]]" = OrderedDict()
        for c in candidates:
            groups.setdefault(c.territory_id, []).append(c)
        group_ids = {tid: [c.source_id for c in members] for tid, members in groups.items()}
        total = len(candidates)

        if len(groups) == 1:
            return ScoredResult(
                winner=self._representative(candidates),
                confidence=self.agreement_confidence(candidates),
                agreeing=[c.source_id for c in candidates],
                groups=group_ids,
            )

        largest_tid, largest = max(groups.items(), key=lambda kv: len(kv[1]))
        if len(largest) * 2 > total:
            winners = largest
            dissenters = [c for c in candidates if c.territory_id != largest_tid]
            penalty = sum(self.dissent_penalty(d) for d in dissenters) * len(dissenters) / total
            confidence = self.agreement_confidence(winners) - penalty
            confidence = min(_DISPUTED_MAX, int(round(confidence)))
        else:
            best = max(candidates, key=lambda c: self._rank(c.source_id))
            winners = groups[best.territory_id]
            dissenters = [c for c in candidates if c.territory_id != best.territory_id]
            capped = min(_DISAGREEMENT_CAP, self.agreement_confidence(winners))
            confidence = int(round(capped * len(winners) / total))

        confidence = max(0, confidence)
        winner = self._representative(winners)
        logger.debug(
            f"Scorer: {winner.territory_id} wins {len(winners)}/{total} "
            f"(dissent: {[d.source_id for d in dissenters]}), confidence={confidence}"
        )
        return ScoredResult(
            winner=winner,
            confidence=confidence,
            agreeing=[c.source_id for c in winners],
            dissenting=[d.source_id for d in dissenters],
            groups=group_ids,
        )

    def _representative(self, members: List[SourceResult]) -> SourceResult:
        """Best-ranked member; city fields borrowed from any member that has them."""
        best = max(members, key=lambda c: self._rank(c.source_id))
        if not best.city_slug:
            for m in members:
                if m.city_slug:
                    best = replace(best, city_slug=m.city_slug,
                                   city_display_name=m.city_display_name)
                    break
        return best
