"""
Content passed between the research, analysis, writing and publishing stages.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from waiver_wire.models.player import RankedSummary


@dataclass
class ResearchBundle:
    """Context gathered for one ranked player"""
    summary: RankedSummary
    notes: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlayerAnalysis:
    summary: RankedSummary
    value_score: int
    confidence: int
    recommendation: str  # BUY or PASS
    reasoning: List[str] = field(default_factory=list)
    faab_percentage: Optional[float] = None


@dataclass
class Draft:
    title: str
    content_markdown: str
    content_html: str
    excerpt: str
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PublishResult:
    success: bool
    artifact_id: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None
