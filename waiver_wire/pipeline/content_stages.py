"""
Default research, analysis, writing and publishing stages.

These are deterministic: every recommendation is derived from the ranked
summary plus whatever player info the contributing sources report. The writer renders a Jinja2 markdown template and converts
it to HTML; the publisher writes drafts to a directory.
"""

import asyncio
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import markdown2
import pytz
from jinja2 import Environment, FileSystemLoader, TemplateError

from waiver_wire.models.config import PublishConfig
from waiver_wire.models.content import Draft, PlayerAnalysis, PublishResult, ResearchBundle
from waiver_wire.models.player import RankedSummary, TrendingStatus
from waiver_wire.services.fantasy_client import BaseFantasyClient


DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

POSITION_SCARCITY: Dict[str, float] = {
    "RB": 1.2,
    "WR": 1.1,
    "TE": 1.0,
    "QB": 0.9,
    "DST": 0.6,
    "K": 0.5,
}

BUY_THRESHOLD = 25

HEALTHY_STATUSES = ("ACTIVE", "HEALTHY", "NA")


class CompilationError(Exception):
    """Custom exception for draft rendering failures"""
    pass


class PlayerResearcher:
    """
    Builds a research bundle per ranked player.

    Notes always start from the ranking signals. When source clients are
    given, every contributing source is asked for its player info and the
    reduced details land under details['sources']. A source that fails is
    logged and left out.
    """

    def __init__(self, clients: Optional[List[BaseFantasyClient]] = None):
        self.clients: Dict[str, BaseFantasyClient] = {c.name: c for c in (clients or [])}
        self.logger = logging.getLogger(__name__)

    async def gather_research(self, summaries: List[RankedSummary]) -> List[ResearchBundle]:
        looked_up = await asyncio.gather(*(self.lookup_player(s) for s in summaries))

        bundles = []
        for summary, sources in zip(summaries, looked_up):
            notes = injury_notes(sources) + [
                f"Reported by {summary.source_count} platform(s): {', '.join(sorted(summary.contributing_sources))}",
                f"Estimated to be added in {summary.addition_percentage:.1f}% of leagues",
                f"{summary.relative_popularity}% as popular as this week's top add",
            ]
            if summary.trending_status == TrendingStatus.HOT:
                notes.append("Consensus pickup across platforms")
            bundles.append(ResearchBundle(
                summary=summary,
                notes=notes,
                details={
                    'position_scarcity': POSITION_SCARCITY.get(summary.position, 1.0),
                    'platform_coverage': summary.platform_coverage,
                    'sources': sources,
                },
            ))
        return bundles

    async def lookup_player(self, summary: RankedSummary) -> Dict[str, Dict[str, Any]]:
        """Player details keyed by source name, for sources that answered."""
        lookups = [
            (source, self.clients[source], player_id)
            for source, player_id in sorted(summary.source_player_ids().items())
            if source in self.clients
        ]
        if not lookups:
            return {}

        results = await asyncio.gather(
            *(self._player_details(client, player_id) for _, client, player_id in lookups),
            return_exceptions=True,
        )
        found: Dict[str, Dict[str, Any]] = {}
        for (source, _, player_id), result in zip(lookups, results):
            if isinstance(result, BaseException):
                self.logger.warning(
                    f"⚠️ {source} player info failed for {summary.display_name} ({player_id}): {result}"
                )
                continue
            if result:
                found[source] = result
        return found

    async def _player_details(self, client: BaseFantasyClient, player_id: str) -> Dict[str, Any]:
        info = await client.fetch_player_info(player_id)
        if info is None:
            return {}
        return client.describe_player(info)


def injury_notes(sources: Dict[str, Dict[str, Any]]) -> List[str]:
    notes = []
    for source, details in sorted(sources.items()):
        status = details.get('injury_status')
        if status and str(status).upper() not in HEALTHY_STATUSES:
            notes.append(f"{source} lists injury status {status}")
    return notes


class PlayerAnalyst:
    """Turns a research bundle into a BUY/PASS call with a FAAB suggestion."""

    async def analyze(self, bundle: ResearchBundle) -> PlayerAnalysis:
        summary = bundle.summary
        scarcity = bundle.details.get('position_scarcity', POSITION_SCARCITY.get(summary.position, 1.0))
        value = int(max(0, min(100, round(summary.composite_score * scarcity))))

        confidence = 50 + 10 * (summary.source_count - 1)
        if summary.trending_status == TrendingStatus.HOT:
            confidence += 10
        elif summary.trending_status == TrendingStatus.RISING:
            confidence += 5
        if injury_notes(bundle.details.get('sources') or {}):
            confidence -= 10
        confidence = min(confidence, 95)

        reasoning = list(bundle.notes)
        if value >= BUY_THRESHOLD:
            recommendation = "BUY"
            faab = round((value / 100) * 25 * (confidence / 100) * 2) / 2
            faab_percentage: Optional[float] = min(max(faab, 1.0), 30.0)
            reasoning.insert(0, f"Value score {value} clears the buy threshold")
        else:
            recommendation = "PASS"
            faab_percentage = None
            reasoning.insert(0, f"Value score {value} is below the buy threshold of {BUY_THRESHOLD}")

        return PlayerAnalysis(
            summary=summary,
            value_score=value,
            confidence=confidence,
            recommendation=recommendation,
            reasoning=reasoning[:5],
            faab_percentage=faab_percentage,
        )


class DraftWriter:
    """Renders the weekly post from analyses."""

    def __init__(self, config: PublishConfig, display_timezone: str = "America/New_York"):
        self.config = config
        template_dir = config.template_dir or str(DEFAULT_TEMPLATE_DIR)
        self.env = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["timeformat"] = self._timeformat_filter
        self.display_tz = pytz.timezone(display_timezone)
        self.logger = logging.getLogger(__name__)

    def _timeformat_filter(self, dt: datetime, format: str = "%B %d, %Y") -> str:
        if not isinstance(dt, datetime):
            return str(dt)
        return dt.strftime(format)

    async def compose(self, analyses: List[PlayerAnalysis]) -> Draft:
        if not analyses:
            raise CompilationError("Nothing to write: no player analyses")

        generated_at = datetime.now(self.display_tz)
        buys = [a for a in analyses if a.recommendation == "BUY"]
        passes = [a for a in analyses if a.recommendation != "BUY"]
        top = analyses[0].summary.display_name.title()
        title = f"Week of {generated_at.strftime('%B %d')}: {top} Leads the Waiver Wire"
        intro = (
            f"{len(buys)} of this week's {len(analyses)} most-added players are worth a bid. "
            f"Here is where we would spend FAAB."
        )

        try:
            template = self.env.get_template("weekly_post.md.j2")
            content_markdown = template.render(
                title=title,
                intro=intro,
                generated_at=generated_at,
                buys=buys,
                passes=passes,
            )
        except TemplateError as e:
            raise CompilationError(f"Failed to render weekly post: {e}") from e

        content_html = markdown2.markdown(content_markdown, extras=["smarty-pants", "tables"])
        positions = sorted({a.summary.position.lower() for a in buys})

        self.logger.info(f"📝 Draft ready: {title} ({len(content_markdown.split())} words)")
        return Draft(
            title=title,
            content_markdown=content_markdown,
            content_html=content_html,
            excerpt=intro,
            tags=list(self.config.default_tags) + positions,
            metadata={
                'generated_at': generated_at.isoformat(),
                'blog_name': self.config.blog_name,
                'players': [a.summary.canonical_key for a in analyses],
                'buy_count': len(buys),
            },
        )


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


class DraftPublisher:
    """
    Saves drafts as markdown, HTML and JSON metadata under output_dir.

    With dry_run set nothing is written and a synthetic artifact id is returned.
    """

    def __init__(self, config: PublishConfig):
        self.config = config
        self.output_dir = Path(config.output_dir)
        self.logger = logging.getLogger(__name__)

    async def publish(self, draft: Draft) -> PublishResult:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        artifact_id = f"{stamp}-{slugify(draft.title)[:60]}"

        if self.config.dry_run:
            self.logger.info(f"Dry run: would publish '{draft.title}' as {artifact_id}")
            return PublishResult(success=True, artifact_id=f"dry-run-{artifact_id}")

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            base = self.output_dir / artifact_id
            base.with_suffix(".md").write_text(draft.content_markdown, encoding="utf-8")
            base.with_suffix(".html").write_text(draft.content_html, encoding="utf-8")
            meta = {
                'title': draft.title,
                'excerpt': draft.excerpt,
                'tags': draft.tags,
                'status': 'draft',
                **draft.metadata,
            }
            base.with_suffix(".json").write_text(json.dumps(meta, indent=2), encoding="utf-8")
        except OSError as e:
            return PublishResult(success=False, error=f"Could not write draft: {e}")

        self.logger.info(f"📤 Draft saved to {base.with_suffix('.md')}")
        return PublishResult(success=True, artifact_id=artifact_id, url=str(base.with_suffix(".html")))
