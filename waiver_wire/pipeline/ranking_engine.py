"""
Composite ranking of merged players.

Leagues are not counted anywhere, so addition_percentage is an estimate: the
implied league total is taken as five times the largest observed count, with
a floor of 1000. Treat it as a relative signal, not a measured share.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from waiver_wire.models.config import RankingConfig
from waiver_wire.models.player import MergedPlayerRecord, RankedSummary, TrendingStatus


class ValidationError(Exception):
    """A merged record is not fit to be ranked"""

    def __init__(self, canonical_key: str, reason: str):
        super().__init__(f"{canonical_key or '<unnamed>'}: {reason}")
        self.canonical_key = canonical_key
        self.reason = reason


@dataclass
class _Scored:
    record: MergedPlayerRecord
    percentage: float
    score: float


class RankingEngine:

    def __init__(self, config: Optional[RankingConfig] = None):
        self.config = config or RankingConfig()
        self.last_warnings: List[ValidationError] = []
        self.last_statistics: Dict[str, Any] = {}
        self.logger = logging.getLogger(__name__)

    def validate(self, record: MergedPlayerRecord) -> None:
        """Raise ValidationError if the record cannot be ranked."""
        if not record.display_name or not record.display_name.strip():
            raise ValidationError(record.canonical_key, "missing name")
        if not record.team or not record.team.strip():
            raise ValidationError(record.canonical_key, "missing team")
        if not record.position or not record.position.strip():
            raise ValidationError(record.canonical_key, "missing position")
        if record.total_added_count < 0:
            raise ValidationError(record.canonical_key, "negative addition count")
        if not record.contributing_sources:
            raise ValidationError(record.canonical_key, "no contributing sources")

    def league_estimate(self, records: List[MergedPlayerRecord]) -> int:
        max_added = max((r.total_added_count for r in records), default=0)
        return max(self.config.min_league_estimate, max_added * self.config.league_multiplier)

    def composite_score(self, record: MergedPlayerRecord, percentage: float) -> float:
        cfg = self.config
        normalized_additions = min(record.total_added_count / cfg.addition_cap * 100, 100.0)
        diversity = len(record.contributing_sources) / cfg.total_configured_sources * 100
        return (
            cfg.addition_weight * normalized_additions
            + cfg.percentage_weight * percentage
            + cfg.diversity_weight * diversity
        )

    def trending_status(self, rank: int, source_count: int, percentage: float) -> TrendingStatus:
        if rank <= 3 and source_count >= 2:
            return TrendingStatus.HOT
        if rank <= 7 and percentage > 5:
            return TrendingStatus.RISING
        return TrendingStatus.STEADY

    def select_top_n(self, records: List[MergedPlayerRecord], n: Optional[int] = None) -> List[RankedSummary]:
        """
        Rank merged players and return the best n.

        Invalid records are dropped and collected in last_warnings. Equal
        scores keep their input order.
        """
        limit = self.config.top_n if n is None else n
        self.last_warnings = []

        valid: List[MergedPlayerRecord] = []
        for record in records:
            try:
                self.validate(record)
            except ValidationError as e:
                self.last_warnings.append(e)
                continue
            valid.append(record)

        if self.last_warnings:
            self.logger.warning(f"Dropped {len(self.last_warnings)} invalid players from ranking")
        if not valid or limit <= 0:
            self.last_statistics = self.ranking_statistics(valid, [])
            return []

        denominator = self.league_estimate(valid)
        scored = []
        for record in valid:
            percentage = record.total_added_count / denominator * 100
            scored.append(_Scored(record, percentage, self.composite_score(record, percentage)))

        scored.sort(key=lambda s: s.score, reverse=True)
        top = scored[:limit]
        top_count = top[0].record.total_added_count

        summaries: List[RankedSummary] = []
        for rank, item in enumerate(top, start=1):
            record = item.record
            source_count = len(record.contributing_sources)
            summaries.append(RankedSummary(
                canonical_key=record.canonical_key,
                display_name=record.display_name,
                position=record.position,
                team=record.team,
                total_added_count=record.total_added_count,
                contributing_sources=record.contributing_sources,
                most_recent_observed_at=record.most_recent_observed_at,
                addition_percentage=round(item.percentage, 2),
                composite_score=round(item.score, 2),
                rank=rank,
                relative_popularity=round(record.total_added_count / top_count * 100) if top_count else 0,
                trending_status=self.trending_status(rank, source_count, item.percentage),
                platform_coverage=round(source_count / self.config.total_configured_sources * 100, 1),
                external_ids=record.external_ids,
            ))

        self.last_statistics = self.ranking_statistics(valid, summaries)
        self.logger.info(
            f"🏆 Ranked {len(valid)} players; top pick {summaries[0].display_name} "
            f"({summaries[0].total_added_count} adds, score {summaries[0].composite_score})"
        )
        return summaries

    def ranking_statistics(
        self,
        considered: List[MergedPlayerRecord],
        selected: List[RankedSummary],
    ) -> Dict[str, Any]:
        total = len(considered)
        positions = Counter(s.position for s in selected)
        coverage = Counter(source for s in selected for source in s.contributing_sources)
        return {
            'players_considered': total,
            'players_selected': len(selected),
            'dropped_invalid': len(self.last_warnings),
            'average_additions': round(sum(r.total_added_count for r in considered) / total, 1) if total else 0.0,
            'top_n_average_additions': (
                round(sum(s.total_added_count for s in selected) / len(selected), 1) if selected else 0.0
            ),
            'position_breakdown': dict(positions),
            'source_coverage': dict(coverage),
        }
