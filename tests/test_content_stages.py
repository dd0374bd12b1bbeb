import json
import logging
from datetime import datetime

import pytest

from conftest import OBSERVED_AT
from waiver_wire.models.config import PublishConfig
from waiver_wire.models.content import Draft, PlayerAnalysis
from waiver_wire.models.player import RankedSummary, TrendingStatus
from waiver_wire.pipeline.content_stages import (
    CompilationError,
    DraftPublisher,
    DraftWriter,
    PlayerAnalyst,
    PlayerResearcher,
    slugify,
)
from waiver_wire.services.espn import ESPNClient
from waiver_wire.services.sleeper import SleeperClient
from waiver_wire.services.transport import TransportResponse


def make_summary(name="JAYLEN WARREN", position="RB", score=50.0, sources=("ESPN", "Sleeper"),
                 trending=TrendingStatus.HOT, rank=1, external_ids=()):
    return RankedSummary(
        canonical_key=f"{name.lower()}_pit_{position}",
        display_name=name,
        position=position,
        team="PIT",
        total_added_count=420,
        contributing_sources=frozenset(sources),
        most_recent_observed_at=OBSERVED_AT,
        addition_percentage=20.0,
        composite_score=score,
        rank=rank,
        relative_popularity=100,
        trending_status=trending,
        platform_coverage=66.7,
        external_ids=external_ids,
    )


async def analyze(summary):
    bundles = await PlayerResearcher().gather_research([summary])
    return await PlayerAnalyst().analyze(bundles[0])


@pytest.mark.asyncio
async def test_research_notes_describe_signals():
    bundles = await PlayerResearcher().gather_research([make_summary()])

    assert len(bundles) == 1
    notes = bundles[0].notes
    assert notes[0] == "Reported by 2 platform(s): ESPN, Sleeper"
    assert "Consensus pickup across platforms" in notes
    assert bundles[0].details['position_scarcity'] == 1.2


NOW = datetime(2024, 10, 8, 10, 0, 0)

WARREN_IDS = (("ESPN", "101"), ("Sleeper", "4034"))

SLEEPER_DIRECTORY = {
    '4034': {'full_name': 'Jaylen Warren', 'team': 'PIT', 'status': 'Active',
             'injury_status': 'Questionable', 'fantasy_positions': ['RB']},
}

ESPN_WARREN = {
    'players': [{'id': 101, 'fullName': 'Jaylen Warren', 'proTeamId': 23,
                 'injuryStatus': 'ACTIVE', 'injured': False}],
}


def source_clients(source_config, transport):
    return [
        ESPNClient(source_config("ESPN"), transport, clock=lambda: NOW),
        SleeperClient(source_config("Sleeper"), transport, clock=lambda: NOW),
    ]


@pytest.mark.asyncio
async def test_research_collects_player_info_from_each_source(source_config, transport):
    transport.add_json("GET", "/leagues/0/players", ESPN_WARREN)
    transport.add_json("GET", "/players/nfl", SLEEPER_DIRECTORY)
    researcher = PlayerResearcher(source_clients(source_config, transport))

    bundles = await researcher.gather_research([make_summary(external_ids=WARREN_IDS)])

    assert bundles[0].details['sources'] == {
        'ESPN': {'injury_status': 'ACTIVE', 'injured': False, 'team': 'PIT'},
        'Sleeper': {'injury_status': 'Questionable', 'status': 'Active', 'team': 'PIT'},
    }
    assert bundles[0].notes[0] == "Sleeper lists injury status Questionable"
    espn_request = next(r for r in transport.requests if r['url'].endswith("/leagues/0/players"))
    assert espn_request['params']['playerId'] == 101


@pytest.mark.asyncio
async def test_research_skips_source_that_fails(source_config, transport, caplog):
    transport.add("GET", "/leagues/0/players", TransportResponse(status=503, body={}))
    transport.add_json("GET", "/players/nfl", SLEEPER_DIRECTORY)
    researcher = PlayerResearcher(source_clients(source_config, transport))

    with caplog.at_level(logging.WARNING, logger="waiver_wire.pipeline.content_stages"):
        bundles = await researcher.gather_research([make_summary(external_ids=WARREN_IDS)])

    assert list(bundles[0].details['sources']) == ['Sleeper']
    assert "Reported by 2 platform(s): ESPN, Sleeper" in bundles[0].notes
    assert any("ESPN player info failed for JAYLEN WARREN" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_research_only_asks_configured_sources(source_config, transport):
    transport.add_json("GET", "/players/nfl", SLEEPER_DIRECTORY)
    sleeper = SleeperClient(source_config("Sleeper"), transport, clock=lambda: NOW)
    summary = make_summary(sources=("Sleeper", "Yahoo"), external_ids=(("Sleeper", "4034"), ("Yahoo", "31002")))

    bundles = await PlayerResearcher([sleeper]).gather_research([summary])

    assert list(bundles[0].details['sources']) == ['Sleeper']
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_injury_report_lowers_confidence(source_config, transport):
    transport.add_json("GET", "/leagues/0/players", ESPN_WARREN)
    transport.add_json("GET", "/players/nfl", SLEEPER_DIRECTORY)
    researcher = PlayerResearcher(source_clients(source_config, transport))
    summary = make_summary(external_ids=WARREN_IDS)

    healthy = await analyze(summary)
    bundles = await researcher.gather_research([summary])
    injured = await PlayerAnalyst().analyze(bundles[0])

    assert injured.confidence == healthy.confidence - 10
    assert "Sleeper lists injury status Questionable" in injured.reasoning


@pytest.mark.asyncio
async def test_strong_player_is_a_buy():
    analysis = await analyze(make_summary(score=50.0))

    assert analysis.recommendation == "BUY"
    assert analysis.value_score == 60
    assert analysis.confidence == 70
    assert analysis.faab_percentage == 10.5
    assert analysis.reasoning[0].startswith("Value score 60 clears")


@pytest.mark.asyncio
async def test_weak_player_is_a_pass():
    summary = make_summary(position="WR", score=10.0, sources=("ESPN",), trending=TrendingStatus.STEADY)

    analysis = await analyze(summary)

    assert analysis.recommendation == "PASS"
    assert analysis.value_score == 11
    assert analysis.confidence == 50
    assert analysis.faab_percentage is None


@pytest.mark.asyncio
async def test_value_and_confidence_are_capped():
    summary = make_summary(score=95.0, sources=("A", "B", "C", "D", "E"))

    analysis = await analyze(summary)

    assert analysis.value_score == 100
    assert analysis.confidence == 95
    assert analysis.faab_percentage == pytest.approx(24.0, abs=0.5)


@pytest.fixture
def publish_config(tmp_path):
    return PublishConfig(output_dir=str(tmp_path / "drafts"))


def make_analyses():
    buy = PlayerAnalysis(
        summary=make_summary(),
        value_score=60,
        confidence=70,
        recommendation="BUY",
        reasoning=["Value score 60 clears the buy threshold"],
        faab_percentage=10.5,
    )
    skip = PlayerAnalysis(
        summary=make_summary(name="GREG DORTCH", position="WR", rank=2, trending=TrendingStatus.STEADY),
        value_score=12,
        confidence=50,
        recommendation="PASS",
        reasoning=["Value score 12 is below the buy threshold of 25"],
    )
    return [buy, skip]


@pytest.mark.asyncio
async def test_writer_renders_markdown_and_html(publish_config):
    draft = await DraftWriter(publish_config).compose(make_analyses())

    assert "Jaylen Warren Leads the Waiver Wire" in draft.title
    assert "## 1. Jaylen Warren (RB, PIT)" in draft.content_markdown
    assert "10.5% of FAAB" in draft.content_markdown
    assert "Names you can skip" in draft.content_markdown
    assert "Greg Dortch" in draft.content_markdown
    assert "<h1>" in draft.content_html
    assert draft.tags == ["fantasy-football", "faab", "waiver-wire", "rb"]
    assert draft.metadata['buy_count'] == 1
    assert draft.metadata['players'] == ["jaylen warren_pit_RB", "greg dortch_pit_WR"]


@pytest.mark.asyncio
async def test_writer_refuses_empty_input(publish_config):
    with pytest.raises(CompilationError):
        await DraftWriter(publish_config).compose([])


def sample_draft():
    return Draft(
        title="Week of October 01: Jaylen Warren Leads the Waiver Wire",
        content_markdown="# Week",
        content_html="<h1>Week</h1>",
        excerpt="1 of 2",
        tags=["faab"],
        metadata={'buy_count': 1},
    )


@pytest.mark.asyncio
async def test_publisher_writes_draft_files(publish_config, tmp_path):
    result = await DraftPublisher(publish_config).publish(sample_draft())

    assert result.success
    assert result.artifact_id.endswith("week-of-october-01-jaylen-warren-leads-the-waiver-wire")
    out = tmp_path / "drafts"
    assert (out / f"{result.artifact_id}.md").read_text(encoding="utf-8") == "# Week"
    assert (out / f"{result.artifact_id}.html").exists()
    meta = json.loads((out / f"{result.artifact_id}.json").read_text(encoding="utf-8"))
    assert meta['status'] == 'draft'
    assert meta['buy_count'] == 1


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(tmp_path):
    config = PublishConfig(output_dir=str(tmp_path / "drafts"), dry_run=True)

    result = await DraftPublisher(config).publish(sample_draft())

    assert result.success
    assert result.artifact_id.startswith("dry-run-")
    assert not (tmp_path / "drafts").exists()


def test_slugify():
    assert slugify("  Week 5: Who's Hot? ") == "week-5-who-s-hot"
