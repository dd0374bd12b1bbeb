"""
Player models for the waiver wire pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


@dataclass(frozen=True)
class RawAdditionRecord:
    """A single "most added" observation reported by one source."""
    source_id: str
    external_player_id: str
    display_name: str
    position: str
    team: str
    added_count: int
    observed_at: datetime


@dataclass(frozen=True)
class MergedPlayerRecord:
    """All observations of one player folded together across sources."""
    canonical_key: str
    display_name: str
    position: str
    team: str
    total_added_count: int
    contributing_sources: FrozenSet[str] = field(default_factory=frozenset)
    most_recent_observed_at: Optional[datetime] = None
    external_ids: Tuple[Tuple[str, str], ...] = ()

    def source_player_ids(self) -> Dict[str, str]:
        return dict(self.external_ids)


class TrendingStatus(str, Enum):
    """Trending labels attached to ranked players"""
    HOT = "hot"
    RISING = "rising"
    STEADY = "steady"


@dataclass(frozen=True)
class RankedSummary:
    """
    A merged player with its ranking metadata.

    addition_percentage is an estimate derived from the batch itself,
    not a measured share of leagues.
    """
    canonical_key: str
    display_name: str
    position: str
    team: str
    total_added_count: int
    contributing_sources: FrozenSet[str]
    most_recent_observed_at: Optional[datetime]

    addition_percentage: float
    composite_score: float
    rank: int
    relative_popularity: int
    trending_status: TrendingStatus
    platform_coverage: float = 0.0
    external_ids: Tuple[Tuple[str, str], ...] = ()

    @property
    def source_count(self) -> int:
        return len(self.contributing_sources)

    def source_player_ids(self) -> Dict[str, str]:
        """Map of source name to that source's id for this player."""
        return dict(self.external_ids)
